"""Turns a verified payment and its cart snapshot into Order rows.

A payment fans out into one row per cart line item. Items that go to the
same manufacturer share one order-group number so they can later be
shipped together.
"""

import math
import secrets
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_pipeline import config
from order_pipeline.errors import MaterializationError, RejectionError
from order_pipeline.messaging import build_event, publish_event
from order_pipeline.models import Order, utcnow
from order_pipeline.schemas import Attribution, CartItem, PriceBreakdown, ShippingAddress
from order_pipeline.status import OrderStatus, PaymentType

logger = structlog.get_logger(__name__)

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_CENT = Decimal("0.01")
_SHIPPING_PROFIT_SHARE = Decimal("0.1")

_cart_adapter = TypeAdapter(List[CartItem])


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_number() -> str:
    stamp = to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(3))
    return f"D2B-{stamp}-{suffix}"


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass
class MaterializationResult:
    created: bool
    orders: List[Order] = field(default_factory=list)

    @property
    def order_numbers(self) -> List[str]:
        return sorted({o.order_number for o in self.orders})

    @property
    def order_ids(self) -> List[str]:
        return [o.id for o in self.orders]


def build_orders(
    payment_id: str,
    items: Iterable[CartItem],
    breakdown: PriceBreakdown,
    shipping_address: ShippingAddress,
    retailer_id: str,
    attribution: Optional[Attribution] = None,
    recovered: bool = False,
    order_number_factory=generate_order_number,
) -> List[Order]:
    """Compute the Order rows for one payment without touching the database."""
    group_numbers = {}
    subtotal = breakdown.total_product_amount
    remaining = breakdown.remaining_balance
    payment_type = PaymentType.ADVANCE if remaining > 0 else PaymentType.FULL
    address_text = shipping_address.flatten()
    attribution_data = attribution.model_dump(exclude_none=True) if attribution else None
    paid_at = utcnow()

    orders = []
    for item in items:
        if item.manufacturer_id not in group_numbers:
            number = order_number_factory()
            # Groups minted in the same millisecond differ only by the random suffix
            while number in group_numbers.values():
                number = order_number_factory()
            group_numbers[item.manufacturer_id] = number

        item_total = item.unit_price * item.quantity
        total_amount = _money(item_total + item.ship_cost)

        if subtotal > 0:
            pending = (remaining * item_total / subtotal).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        else:
            pending = Decimal("0")
        pending = min(_money(pending), total_amount)
        paid = total_amount - pending

        if payment_type is PaymentType.ADVANCE:
            upfront = Decimal(math.ceil(item_total * config.ADVANCE_PAYMENT_PERCENT / 100)) + item.ship_cost
            if _money(upfront) != paid:
                logger.warning(
                    "Advance split differs from configured percentage",
                    payment_id=payment_id,
                    product_id=item.product_id,
                    expected_paid=str(_money(upfront)),
                    paid=str(paid),
                )

        orders.append(Order(
            order_number=group_numbers[item.manufacturer_id],
            retailer_id=retailer_id,
            manufacturer_id=item.manufacturer_id,
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=_money(item.unit_price),
            total_amount=total_amount,
            tax_amount=Decimal("0.00"),
            tax_rate_snapshot=item.tax_rate,
            manufacturer_payout=_money(item.base_price * item.quantity),
            platform_profit=_money(item.your_margin * item.quantity + item.ship_cost * _SHIPPING_PROFIT_SHARE),
            shipping_cost=_money(item.ship_cost),
            shipping_address=address_text,
            payment_id=payment_id,
            payment_type=payment_type,
            paid_amount=paid,
            pending_amount=pending,
            recovered=recovered,
            attribution=attribution_data,
            status=OrderStatus.PAID,
            courier_name=item.courier_name,
            courier_company_id=item.courier_company_id,
            paid_at=paid_at,
        ))
    return orders


class OrderMaterializer:
    def __init__(self, session: AsyncSession, publish=publish_event):
        self.session = session
        self.publish = publish

    async def existing_orders(self, payment_id: str) -> List[Order]:
        result = await self.session.execute(select(Order).where(Order.payment_id == payment_id))
        return list(result.scalars().all())

    async def materialize(
        self,
        payment_id: str,
        cart_payload,
        price_breakdown,
        shipping_address,
        retailer_id: str,
        attribution=None,
        recovered: bool = False,
    ) -> MaterializationResult:
        if not retailer_id:
            raise RejectionError("Buyer id is required")
        if cart_payload is None:
            raise RejectionError("Cart payload is required")
        if not payment_id:
            raise RejectionError("Payment reference is required")

        try:
            items = _cart_adapter.validate_python(cart_payload)
            breakdown = PriceBreakdown.model_validate(price_breakdown)
            address = ShippingAddress.model_validate(shipping_address)
            attribution = Attribution.model_validate(attribution) if attribution else None
        except ValidationError as e:
            raise RejectionError("Invalid checkout payload", details=e.errors(include_url=False, include_context=False, include_input=False))

        existing = await self.existing_orders(payment_id)
        if existing:
            logger.info("Orders already exist for payment", payment_id=payment_id, count=len(existing))
            return MaterializationResult(created=False, orders=existing)

        orders = build_orders(payment_id, items, breakdown, address, retailer_id, attribution, recovered)
        if not orders:
            raise RejectionError("No orders produced from cart payload")

        self.session.add_all(orders)
        try:
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error("Order insert failed", payment_id=payment_id, error=str(e))
            raise MaterializationError("Failed to record orders for this payment") from e

        result = MaterializationResult(created=True, orders=orders)
        logger.info(
            "Orders materialized",
            payment_id=payment_id,
            count=len(orders),
            order_numbers=result.order_numbers,
            recovered=recovered,
        )
        await self._after_commit(payment_id, result, attribution)
        return result

    async def _after_commit(self, payment_id: str, result: MaterializationResult, attribution):
        try:
            if attribution is not None:
                logger.info("Order attribution", payment_id=payment_id, attribution=attribution.model_dump(exclude_none=True))
            await self.publish("order.materialized", build_event(
                "OrderMaterialized",
                payment_id=payment_id,
                order_numbers=result.order_numbers,
                order_ids=result.order_ids,
                admin_phone=config.ADMIN_PHONE,
            ))
        except Exception as e:
            logger.warning("Post-materialization side effect failed", payment_id=payment_id, error=str(e))
