"""Keeps local order status in line with the courier aggregator.

The aggregator reports status in several places that often disagree: the
numeric tracking code, the tracking free text, and the status of its own
order record. ``STATUS_RULES`` fixes which one wins.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from order_pipeline.courier import CourierClient
from order_pipeline.errors import CourierError, NotFoundError
from order_pipeline.messaging import build_event, publish_event
from order_pipeline.models import Order, utcnow
from order_pipeline.schemas import CourierPush, CourierPushResult, ReconcileResult
from order_pipeline.status import OrderStatus, can_transition

logger = structlog.get_logger(__name__)

# Aggregator tracking codes
CODE_SHIPPED = 6
CODE_DELIVERED = 7
CODE_CANCELLED = 8
CODE_RTO_INITIATED = 9
CODE_RTO_DELIVERED = 10
CODE_CANCELLED_ALT = 18

TRACKING_CODES = {
    CODE_DELIVERED: OrderStatus.DELIVERED,
    CODE_SHIPPED: OrderStatus.SHIPPED,
    CODE_RTO_INITIATED: OrderStatus.RTO_INITIATED,
    CODE_RTO_DELIVERED: OrderStatus.RTO_DELIVERED,
}


@dataclass(frozen=True)
class CourierSignals:
    status_code: Optional[int] = None
    current_status: str = ""
    search_status: str = ""
    detail_status: str = ""

    def texts(self) -> List[str]:
        return [s.upper() for s in (self.current_status, self.search_status, self.detail_status) if s]

    @property
    def free_text(self) -> str:
        # Most specific first: live tracking, then the aggregator's order record
        for text in (self.current_status, self.search_status, self.detail_status):
            if text:
                return text.upper()
        return ""

    @property
    def raw(self) -> str:
        return self.search_status or self.current_status or self.detail_status or (
            str(self.status_code) if self.status_code is not None else ""
        )


def _any_cancel(s: CourierSignals) -> bool:
    return s.status_code in (CODE_CANCELLED, CODE_CANCELLED_ALT) or any("CANCEL" in t for t in s.texts())


def _voided(s: CourierSignals) -> bool:
    # An aggregator order still at NEW was never dispatched; treat it as cancelled
    return s.search_status.strip().upper() == "NEW"


def _code(code: int) -> Callable[[CourierSignals], bool]:
    return lambda s: s.status_code == code


def _text(*needles: str, without: str = None) -> Callable[[CourierSignals], bool]:
    def match(s: CourierSignals) -> bool:
        text = s.free_text
        if without and without in text:
            return False
        return any(n in text for n in needles)
    return match


def _rto_delivered_text(s: CourierSignals) -> bool:
    return "RTO" in s.free_text and "DELIVERED" in s.free_text


STATUS_RULES: List[Tuple[Callable[[CourierSignals], bool], OrderStatus]] = [
    (_any_cancel, OrderStatus.CANCELLED),
    (_voided, OrderStatus.CANCELLED),
    *[(_code(code), target) for code, target in TRACKING_CODES.items()],
    (_rto_delivered_text, OrderStatus.RTO_DELIVERED),
    (_text("DELIVERED", without="RTO"), OrderStatus.DELIVERED),
    (_text("RTO"), OrderStatus.RTO_INITIATED),
    (_text("SHIPPED", "TRANSIT", "PICKED UP"), OrderStatus.SHIPPED),
    (_text("READY TO SHIP"), OrderStatus.CONFIRMED),
]


def resolve_status(signals: CourierSignals) -> Optional[OrderStatus]:
    for predicate, target in STATUS_RULES:
        if predicate(signals):
            return target
    return None


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class StatusReconciler:
    def __init__(self, session: AsyncSession, client: CourierClient = None, publish=publish_event):
        self.session = session
        self.client = client
        self.publish = publish

    async def collect_signals(self, order: Order) -> CourierSignals:
        status_code = None
        current_status = ""
        search_status = ""
        detail_status = ""

        await self.client.authenticate()

        if order.awb_code:
            tracking = (await self.client.track_awb(order.awb_code)).get("tracking_data") or {}
            if tracking:
                status_code = _as_int(tracking.get("shipment_status"))
                track = tracking.get("shipment_track") or []
                if track and isinstance(track[0], dict):
                    current_status = track[0].get("current_status") or ""

            found = await self.client.search_orders(order.awb_code)
            if not found:
                found = await self.client.search_orders(order.order_number)
            if found:
                search_status = found[0].get("status") or ""

        if not (status_code or current_status or search_status) and order.shipment_id:
            detail = await self.client.fetch_order(order.shipment_id)
            detail_status = detail.get("status") or ""

        return CourierSignals(
            status_code=status_code,
            current_status=current_status,
            search_status=search_status,
            detail_status=detail_status,
        )

    async def reconcile(self, order_id: str) -> ReconcileResult:
        order = await self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        current = OrderStatus(order.status)

        if not order.awb_code and not order.shipment_id:
            return ReconcileResult(
                order_id=order_id, updated=False, old_status=current, new_status=current,
                message="Order has no AWB or shipment to sync",
            )

        try:
            signals = await self.collect_signals(order)
        except CourierError as e:
            # Silent for the caller: the order keeps its last known status
            logger.warning("Courier status lookup failed", order_id=order_id, awb=order.awb_code, error=str(e))
            return ReconcileResult(
                order_id=order_id, updated=False, old_status=current, new_status=current,
                message="Courier status unavailable",
            )

        resolved = resolve_status(signals)
        logger.info(
            "Courier status resolved",
            order_id=order_id,
            courier_status=signals.raw,
            status_code=signals.status_code,
            resolved=resolved.value if resolved else None,
            current=current.value,
        )

        if resolved is None or resolved == current:
            return ReconcileResult(
                order_id=order_id, updated=False, old_status=current, new_status=current,
                courier_status=signals.raw, message="Status up to date",
            )
        if not can_transition(current, resolved):
            logger.warning("Ignoring courier status transition", order_id=order_id, old=current.value, new=resolved.value)
            return ReconcileResult(
                order_id=order_id, updated=False, old_status=current, new_status=current,
                courier_status=signals.raw, message=f"Transition {current.value} -> {resolved.value} not allowed",
            )

        if order.shipment_id:
            scope, condition = "shipment", Order.shipment_id == order.shipment_id
        elif order.awb_code:
            scope, condition = "awb", Order.awb_code == order.awb_code
        else:
            scope, condition = "single", Order.id == order.id

        await self._apply(condition, resolved)
        await self._announce(order, current, resolved, scope)
        return ReconcileResult(
            order_id=order_id, updated=True, old_status=current, new_status=resolved,
            scope=scope, courier_status=signals.raw,
        )

    async def apply_courier_push(self, push: CourierPush) -> CourierPushResult:
        """Status pushed by the aggregator's webhook for one AWB."""
        signals = CourierSignals(
            status_code=push.current_status_id or push.shipment_status_id,
            current_status=push.current_status or "",
        )
        resolved = resolve_status(signals)
        if resolved is None:
            return CourierPushResult(awb=push.awb)

        allowed = [s for s in OrderStatus if s != resolved and can_transition(s, resolved)]
        count = await self._apply(Order.awb_code == push.awb, resolved, Order.status.in_(allowed))
        logger.info("Courier push applied", awb=push.awb, status=resolved.value, updated=count)
        return CourierPushResult(awb=push.awb, new_status=resolved, updated=count)

    async def _apply(self, condition, new_status: OrderStatus, *extra) -> int:
        values = {"status": new_status, "updated_at": utcnow()}
        if new_status is OrderStatus.DELIVERED:
            values["delivered_at"] = utcnow()
        if new_status is OrderStatus.SHIPPED:
            values["shipped_at"] = utcnow()
        stmt = update(Order).where(condition, *extra).values(**values).execution_options(synchronize_session="fetch")
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount

    async def _announce(self, order: Order, old: OrderStatus, new: OrderStatus, scope: str):
        await self.publish("order.status_changed", build_event(
            "OrderStatusChanged",
            order_id=order.id,
            order_number=order.order_number,
            shipment_id=order.shipment_id,
            awb=order.awb_code,
            old_status=old.value,
            new_status=new.value,
            scope=scope,
        ))
