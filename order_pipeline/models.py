from sqlalchemy import Boolean, Column, DateTime, Enum, Float, Integer, JSON, Numeric, String
from datetime import datetime, timezone
from uuid import uuid4

from order_pipeline.database import Base
from order_pipeline.status import AttemptStatus, OrderStatus, PaymentType


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid4())


def _enum(enum_cls):
    # Store the lowercase values ("paid"), not the member names ("PAID")
    return Enum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32)


Money = Numeric(12, 2, asdecimal=True)


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id = Column(String, primary_key=True, default=new_id)
    gateway_order_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    cart_payload = Column(JSON, nullable=False)
    payment_breakdown = Column(JSON, nullable=False)
    shipping_address = Column(JSON, nullable=False)
    status = Column(_enum(AttemptStatus), default=AttemptStatus.PENDING, nullable=False)
    payment_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    order_number = Column(String, index=True, nullable=False)
    retailer_id = Column(String, index=True, nullable=False)
    manufacturer_id = Column(String, index=True, nullable=False)
    product_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    total_amount = Column(Money, nullable=False)
    tax_amount = Column(Money, default=0, nullable=False)
    tax_rate_snapshot = Column(Float, nullable=True)
    manufacturer_payout = Column(Money, nullable=False)
    platform_profit = Column(Money, nullable=False)
    shipping_cost = Column(Money, default=0, nullable=False)
    shipping_address = Column(String, nullable=True)

    payment_id = Column(String, index=True, nullable=False)
    payment_type = Column(_enum(PaymentType), nullable=False)
    paid_amount = Column(Money, nullable=False)
    pending_amount = Column(Money, default=0, nullable=False)
    recovered = Column(Boolean, default=False, nullable=False)
    attribution = Column(JSON, nullable=True)

    status = Column(_enum(OrderStatus), default=OrderStatus.PAID, nullable=False)
    shipment_id = Column(String, index=True, nullable=True)
    awb_code = Column(String, index=True, nullable=True)
    courier_name = Column(String, nullable=True)
    courier_company_id = Column(Integer, nullable=True)
    shipping_label_url = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)


# Profile and catalog rows are owned by other parts of the marketplace;
# the pipeline reads them and only ever writes shiprocket_pickup_code.
class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    role = Column(String, nullable=False)
    business_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    pincode = Column(String, nullable=True)
    shiprocket_pickup_code = Column(String, nullable=True)


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    moq = Column(Integer, default=1, nullable=False)
    weight = Column(Float, nullable=True)
    length = Column(Float, nullable=True)
    breadth = Column(Float, nullable=True)
    height = Column(Float, nullable=True)
