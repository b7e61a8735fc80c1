import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["PUBLISH_EVENTS"] = "false"
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["SHIPROCKET_EMAIL"] = "ops@example.com"
os.environ["SHIPROCKET_PASSWORD"] = "secret"

import pytest
import pytest_asyncio
from decimal import Decimal
from unittest.mock import AsyncMock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from order_pipeline.database import Base
from order_pipeline import models  # noqa: F401
from order_pipeline.models import Order, PaymentAttempt, Product, User
from order_pipeline.status import AttemptStatus, OrderStatus, PaymentType

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_message_context():
    """Async context manager standing in for message.process()"""
    class AsyncContextManager:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    return AsyncContextManager()


def cart_item(product_id="prod-1", manufacturer_id="mfr-1", quantity=10, unit_price="100",
              base_price="80", your_margin="20", ship_cost="0", **extra):
    item = {
        "product_id": product_id,
        "manufacturer_id": manufacturer_id,
        "quantity": quantity,
        "unit_price": unit_price,
        "base_price": base_price,
        "your_margin": your_margin,
        "ship_cost": ship_cost,
        "tax_rate": 18,
    }
    item.update(extra)
    return item


SHIPPING_ADDRESS = {"address": "12 Market Road", "city": "Jaipur", "state": "Rajasthan", "pincode": "302001"}


def breakdown(total_product_amount="1000", remaining_balance="0"):
    return {"total_product_amount": total_product_amount, "remaining_balance": remaining_balance}


async def seed_attempt(session, gateway_order_id="order_RZP1", user_id="retailer-1", cart=None,
                       price_breakdown=None, status=AttemptStatus.PENDING):
    attempt = PaymentAttempt(
        gateway_order_id=gateway_order_id,
        user_id=user_id,
        cart_payload=cart if cart is not None else [cart_item()],
        payment_breakdown=price_breakdown or breakdown(),
        shipping_address=SHIPPING_ADDRESS,
        status=status,
    )
    session.add(attempt)
    await session.commit()
    return attempt


async def seed_profiles(session, manufacturer_overrides=None):
    manufacturer = User(
        id="7f3c2a1b-4d5e-6f70-8192-a3b4c5d6e7f8",
        role="manufacturer",
        business_name="Kota Textiles",
        email="mfr@example.com",
        phone="9876543210",
        address="Plot 44, Industrial Area",
        city="Kota",
        state="Rajasthan",
        pincode="324005",
    )
    for key, value in (manufacturer_overrides or {}).items():
        setattr(manufacturer, key, value)
    retailer = User(
        id="retailer-1",
        role="retailer",
        business_name="Sharma Stores",
        email="shop@example.com",
        phone="9123456780",
        address="12 Market Road",
        city="Jaipur",
        state="Rajasthan",
        pincode="302001",
    )
    product = Product(id="prod-1", name="Cotton Saree", moq=10, weight=2.0, length=30, breadth=20, height=10)
    session.add_all([manufacturer, retailer, product])
    await session.commit()
    return manufacturer, retailer, product


async def seed_order(session, **overrides):
    values = dict(
        order_number="D2B-TEST-001",
        retailer_id="retailer-1",
        manufacturer_id="7f3c2a1b-4d5e-6f70-8192-a3b4c5d6e7f8",
        product_id="prod-1",
        quantity=20,
        unit_price=Decimal("100.00"),
        total_amount=Decimal("2000.00"),
        manufacturer_payout=Decimal("1600.00"),
        platform_profit=Decimal("400.00"),
        shipping_cost=Decimal("0.00"),
        payment_id="pay_1",
        payment_type=PaymentType.FULL,
        paid_amount=Decimal("2000.00"),
        pending_amount=Decimal("0.00"),
        status=OrderStatus.PAID,
    )
    values.update(overrides)
    order = Order(**values)
    session.add(order)
    await session.commit()
    return order


@pytest.fixture
def courier_client():
    client = AsyncMock()
    client.configured = True
    client.authenticate.return_value = "token"
    client.register_pickup_location.return_value = {"success": True}
    client.create_shipment.return_value = {"order_id": 5551, "shipment_id": 7771, "status": "NEW"}
    client.assign_awb.return_value = {
        "awb_assign_status": 1,
        "response": {"data": {"awb_code": "AWB123456", "courier_name": "Delhivery Surface"}},
    }
    client.schedule_pickup.return_value = {"pickup_status": 1}
    client.generate_manifest.return_value = {"status": 1}
    client.search_orders.return_value = []
    client.fetch_order.return_value = {}
    return client
