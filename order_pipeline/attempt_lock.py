"""Single-winner lock over a checkout intent.

The lock is the PaymentAttempt row itself: whoever flips it from
``pending`` to ``processing`` with a conditional UPDATE owns the right to
materialize orders for that gateway order. No other mutex is involved.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
import enum

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_pipeline.models import PaymentAttempt, utcnow
from order_pipeline.status import AttemptStatus

logger = structlog.get_logger(__name__)


class LockOutcome(str, enum.Enum):
    ACQUIRED = "acquired"
    ALREADY_HANDLED = "already_handled"
    MISSING = "missing"


@dataclass
class LockResult:
    outcome: LockOutcome
    attempt: Optional[PaymentAttempt] = None

    @property
    def acquired(self) -> bool:
        return self.outcome is LockOutcome.ACQUIRED


class AttemptLock(ABC):
    """Compare-and-set on a checkout intent's lifecycle status."""

    @abstractmethod
    async def acquire(self, gateway_order_id: str) -> LockResult:
        ...

    @abstractmethod
    async def release(self, gateway_order_id: str) -> bool:
        """processing -> pending, so a later retry can proceed."""

    @abstractmethod
    async def claim(self, gateway_order_id: str, user_id: str, cart_payload, payment_breakdown, shipping_address) -> LockResult:
        """Create the attempt already in processing, for a checkout that was never recorded."""

    @abstractmethod
    async def discard(self, gateway_order_id: str) -> bool:
        """Drop a claimed attempt that never produced orders."""

    @abstractmethod
    async def complete(self, gateway_order_id: str, payment_id: str) -> bool:
        """processing -> completed, recording the payment reference."""


class SqlAttemptLock(AttemptLock):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _transition(self, gateway_order_id: str, source: AttemptStatus, **values) -> int:
        stmt = (
            update(PaymentAttempt)
            .where(PaymentAttempt.gateway_order_id == gateway_order_id)
            .where(PaymentAttempt.status == source)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount

    async def _load(self, gateway_order_id: str) -> Optional[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.gateway_order_id == gateway_order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def acquire(self, gateway_order_id: str) -> LockResult:
        won = await self._transition(
            gateway_order_id, AttemptStatus.PENDING, status=AttemptStatus.PROCESSING
        )
        attempt = await self._load(gateway_order_id)
        if won == 1:
            logger.info("Checkout attempt locked", gateway_order_id=gateway_order_id)
            return LockResult(LockOutcome.ACQUIRED, attempt)
        if attempt is None:
            logger.warning("Checkout attempt not found", gateway_order_id=gateway_order_id)
            return LockResult(LockOutcome.MISSING)
        logger.info(
            "Checkout attempt already handled",
            gateway_order_id=gateway_order_id,
            status=AttemptStatus(attempt.status).value,
        )
        return LockResult(LockOutcome.ALREADY_HANDLED, attempt)

    async def release(self, gateway_order_id: str) -> bool:
        released = await self._transition(
            gateway_order_id, AttemptStatus.PROCESSING, status=AttemptStatus.PENDING
        )
        logger.warning("Checkout attempt lock released", gateway_order_id=gateway_order_id, released=bool(released))
        return released == 1

    async def complete(self, gateway_order_id: str, payment_id: str) -> bool:
        completed = await self._transition(
            gateway_order_id,
            AttemptStatus.PROCESSING,
            status=AttemptStatus.COMPLETED,
            payment_id=payment_id,
        )
        return completed == 1

    async def claim(self, gateway_order_id: str, user_id: str, cart_payload, payment_breakdown, shipping_address) -> LockResult:
        # The unique gateway_order_id lets exactly one concurrent insert through
        attempt = PaymentAttempt(
            gateway_order_id=gateway_order_id,
            user_id=user_id,
            cart_payload=cart_payload,
            payment_breakdown=payment_breakdown,
            shipping_address=shipping_address,
            status=AttemptStatus.PROCESSING,
        )
        self.session.add(attempt)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("Checkout attempt claimed elsewhere", gateway_order_id=gateway_order_id)
            return LockResult(LockOutcome.ALREADY_HANDLED, await self._load(gateway_order_id))
        logger.warning("Checkout attempt claimed from caller payload", gateway_order_id=gateway_order_id, user_id=user_id)
        return LockResult(LockOutcome.ACQUIRED, attempt)

    async def discard(self, gateway_order_id: str) -> bool:
        result = await self.session.execute(
            delete(PaymentAttempt)
            .where(PaymentAttempt.gateway_order_id == gateway_order_id)
            .where(PaymentAttempt.status == AttemptStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        logger.warning("Claimed checkout attempt discarded", gateway_order_id=gateway_order_id, discarded=bool(result.rowcount))
        return result.rowcount == 1
