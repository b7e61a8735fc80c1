"""Canonical order status and the transitions this service may apply."""

import enum


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RTO_INITIATED = "rto_initiated"
    RTO_DELIVERED = "rto_delivered"


class AttemptStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class PaymentType(str, enum.Enum):
    ADVANCE = "advance"
    FULL = "full"


_COURIER_DRIVEN = frozenset({
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RTO_INITIATED,
    OrderStatus.RTO_DELIVERED,
})

TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: _COURIER_DRIVEN,
    OrderStatus.SHIPPED: _COURIER_DRIVEN - {OrderStatus.SHIPPED},
    OrderStatus.RTO_INITIATED: frozenset({OrderStatus.RTO_DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RTO_DELIVERED: frozenset(),
}

TERMINAL = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[OrderStatus(current)]
