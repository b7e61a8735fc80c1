"""Payment confirmation: signature check, attempt lock, order materialization.

Two independent triggers confirm the same checkout intent: the buyer's
browser right after payment and the gateway's asynchronous webhook. Either
may arrive first, both may arrive, and either may be retried. The attempt
lock decides which one materializes orders; the other gets an idempotent
success.
"""

import json
from typing import Optional

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from order_pipeline import config
from order_pipeline.attempt_lock import AttemptLock, LockOutcome, SqlAttemptLock
from order_pipeline.errors import ConfigurationError, NotFoundError, RejectionError
from order_pipeline.materializer import MaterializationResult, OrderMaterializer
from order_pipeline.schemas import (
    ConfirmationStatus,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    GatewayEvent,
    OrderPaidEvent,
)
from order_pipeline.signature import verify_payment_signature, verify_webhook_signature

logger = structlog.get_logger(__name__)

WEBHOOK_RECOVERED_PAYMENT_ID = "webhook_recovered"


def webhook_placeholder_payment_id(gateway_order_id: str) -> str:
    # Orders are idempotent per payment id, so the placeholder must be unique per checkout
    return f"{WEBHOOK_RECOVERED_PAYMENT_ID}:{gateway_order_id}"

_gateway_event_adapter = TypeAdapter(GatewayEvent)


def _response(status: ConfirmationStatus, payment_id: str, result: Optional[MaterializationResult] = None):
    return ConfirmPaymentResponse(
        status=status,
        payment_id=payment_id,
        order_numbers=result.order_numbers if result else [],
        order_ids=result.order_ids if result else [],
    )


class PaymentConfirmationService:
    def __init__(
        self,
        session: AsyncSession,
        lock: AttemptLock = None,
        materializer: OrderMaterializer = None,
        key_secret: str = None,
        webhook_secret: str = None,
    ):
        self.session = session
        self.lock = lock or SqlAttemptLock(session)
        self.materializer = materializer or OrderMaterializer(session)
        self.key_secret = config.RAZORPAY_KEY_SECRET if key_secret is None else key_secret
        self.webhook_secret = config.RAZORPAY_WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    async def confirm_payment(self, request: ConfirmPaymentRequest) -> ConfirmPaymentResponse:
        if not self.key_secret:
            raise ConfigurationError("Payment gateway configuration missing")
        if not verify_payment_signature(
            request.razorpay_order_id,
            request.razorpay_payment_id,
            request.razorpay_signature,
            self.key_secret,
        ):
            logger.warning("Invalid payment signature", gateway_order_id=request.razorpay_order_id)
            raise RejectionError("Invalid Signature")

        return await self._settle(
            request.razorpay_order_id,
            request.razorpay_payment_id,
            recovery=request,
        )

    async def handle_gateway_webhook(self, raw_body: bytes, signature: Optional[str]) -> dict:
        if not signature:
            raise RejectionError("Missing Signature")
        if not self.webhook_secret:
            raise ConfigurationError("Server Configuration Error")
        if not verify_webhook_signature(raw_body, signature, self.webhook_secret):
            logger.warning("Invalid webhook signature")
            raise RejectionError("Invalid Signature")

        try:
            event = _gateway_event_adapter.validate_python(json.loads(raw_body))
        except (ValueError, ValidationError) as e:
            raise RejectionError(f"Malformed webhook payload: {e}")

        if not isinstance(event, OrderPaidEvent):
            return {"status": "ignored", "event": event.event}

        logger.info("Webhook order paid", gateway_order_id=event.gateway_order_id)
        payment_id = event.payment_id or webhook_placeholder_payment_id(event.gateway_order_id)
        result = await self._settle(event.gateway_order_id, payment_id, recovery=None)
        return result.model_dump(mode="json")

    async def _settle(self, gateway_order_id: str, payment_id: str, recovery: Optional[ConfirmPaymentRequest]):
        lock = await self.lock.acquire(gateway_order_id)

        if lock.outcome is LockOutcome.ALREADY_HANDLED:
            return _response(ConfirmationStatus.ALREADY_PROCESSED, payment_id)

        if lock.outcome is LockOutcome.MISSING:
            return await self._recover(gateway_order_id, payment_id, recovery)

        attempt = lock.attempt
        try:
            result = await self.materializer.materialize(
                payment_id,
                attempt.cart_payload,
                attempt.payment_breakdown,
                attempt.shipping_address,
                attempt.user_id,
                attribution=recovery.attribution if recovery else None,
            )
        except Exception:
            await self.lock.release(gateway_order_id)
            raise

        await self.lock.complete(gateway_order_id, payment_id)
        status = ConfirmationStatus.CREATED if result.created else ConfirmationStatus.ALREADY_PROCESSED
        return _response(status, payment_id, result)

    async def _recover(self, gateway_order_id: str, payment_id: str, recovery: Optional[ConfirmPaymentRequest]):
        payload = recovery.recovery_payload() if recovery else None
        if payload is None:
            raise NotFoundError("No order context found")

        lock = await self.lock.claim(
            gateway_order_id,
            payload.user_id,
            [item.model_dump(mode="json") for item in payload.cart_payload],
            payload.payment_breakdown.model_dump(mode="json"),
            payload.shipping_address.model_dump(mode="json"),
        )
        if not lock.acquired:
            return _response(ConfirmationStatus.ALREADY_PROCESSED, payment_id)

        # The caller's cart replaces the stored snapshot as the source of truth here
        logger.warning(
            "Materializing from caller payload without checkout attempt",
            audit=True,
            reason="degraded_recovery",
            gateway_order_id=gateway_order_id,
            payment_id=payment_id,
            user_id=payload.user_id,
            items=len(payload.cart_payload),
        )
        try:
            result = await self.materializer.materialize(
                payment_id,
                payload.cart_payload,
                payload.payment_breakdown,
                payload.shipping_address,
                payload.user_id,
                attribution=payload.attribution,
                recovered=True,
            )
        except Exception:
            # A retry must come back through recovery, not treat the claim as a recorded checkout
            await self.lock.discard(gateway_order_id)
            raise

        await self.lock.complete(gateway_order_id, payment_id)
        status = ConfirmationStatus.RECOVERED if result.created else ConfirmationStatus.ALREADY_PROCESSED
        return _response(status, payment_id, result)
