import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_pipeline.errors import ConflictError
from order_pipeline.models import PaymentAttempt
from order_pipeline.schemas import CheckoutAttemptCreate
from order_pipeline.status import AttemptStatus

logger = structlog.get_logger(__name__)


async def create_attempt(data: CheckoutAttemptCreate, db: AsyncSession) -> PaymentAttempt:
    """Record the checkout intent before the buyer is sent to the gateway.

    The stored cart snapshot is what orders are later materialized from, so
    a checkout must not proceed to payment when this write fails.
    """
    existing = await db.execute(
        select(PaymentAttempt.id).where(PaymentAttempt.gateway_order_id == data.gateway_order_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise ConflictError(f"Checkout attempt already exists for {data.gateway_order_id}")

    attempt = PaymentAttempt(
        gateway_order_id=data.gateway_order_id,
        user_id=data.user_id,
        cart_payload=[item.model_dump(mode="json") for item in data.cart_payload],
        payment_breakdown=data.payment_breakdown.model_dump(mode="json"),
        shipping_address=data.shipping_address.model_dump(mode="json"),
        status=AttemptStatus.PENDING,
    )
    db.add(attempt)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"Checkout attempt already exists for {data.gateway_order_id}")
    await db.refresh(attempt)
    logger.info("Checkout attempt recorded", gateway_order_id=attempt.gateway_order_id, user_id=attempt.user_id)
    return attempt
