"""Allowed edges for every status field the core mutates.

Services consult these tables before issuing a guarded UPDATE; the UPDATE
itself re-checks the pre-state so a concurrent writer cannot slip past.
"""
from __future__ import annotations

from typing import Dict, FrozenSet

from escrow_market.models_sqlalchemy.models import (
    DisputeStatus,
    EscrowStatus,
    OrderStatus,
    VerificationStatus,
)
from escrow_market.services.errors import InvalidEscrowTransition, InvalidStatus


ESCROW_TRANSITIONS: Dict[EscrowStatus, FrozenSet[EscrowStatus]] = {
    EscrowStatus.pending: frozenset({EscrowStatus.held}),
    EscrowStatus.held: frozenset({EscrowStatus.released_to_seller, EscrowStatus.refunded_to_customer}),
    EscrowStatus.released_to_seller: frozenset(),
    EscrowStatus.refunded_to_customer: frozenset(),
}

ESCROW_TERMINAL = frozenset({EscrowStatus.released_to_seller, EscrowStatus.refunded_to_customer})

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.pending_payment: frozenset({OrderStatus.payment_confirmed, OrderStatus.cancelled}),
    OrderStatus.payment_confirmed: frozenset({
        OrderStatus.processing, OrderStatus.shipped, OrderStatus.cancelled, OrderStatus.refunded,
    }),
    OrderStatus.processing: frozenset({OrderStatus.shipped, OrderStatus.cancelled, OrderStatus.refunded}),
    OrderStatus.shipped: frozenset({
        OrderStatus.out_for_delivery, OrderStatus.delivered, OrderStatus.cancelled, OrderStatus.refunded,
    }),
    OrderStatus.out_for_delivery: frozenset({OrderStatus.delivered, OrderStatus.cancelled, OrderStatus.refunded}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
    OrderStatus.refunded: frozenset(),
}

PRE_DELIVERY_STATUSES = frozenset({
    OrderStatus.pending_payment,
    OrderStatus.payment_confirmed,
    OrderStatus.processing,
    OrderStatus.shipped,
    OrderStatus.out_for_delivery,
})

# Statuses the seller may move an order into through fulfillment updates;
# "delivered" has its own operation because it arms auto-release.
FULFILLMENT_STATUSES = frozenset({OrderStatus.processing, OrderStatus.shipped, OrderStatus.out_for_delivery})

DISPUTE_TRANSITIONS: Dict[DisputeStatus, FrozenSet[DisputeStatus]] = {
    DisputeStatus.open: frozenset({DisputeStatus.under_review, DisputeStatus.resolved, DisputeStatus.closed}),
    DisputeStatus.under_review: frozenset({DisputeStatus.resolved, DisputeStatus.closed}),
    DisputeStatus.resolved: frozenset(),
    DisputeStatus.closed: frozenset(),
}

DISPUTE_IN_PROGRESS = frozenset({DisputeStatus.open, DisputeStatus.under_review})

VERIFICATION_TRANSITIONS: Dict[VerificationStatus, FrozenSet[VerificationStatus]] = {
    VerificationStatus.pending: frozenset({VerificationStatus.under_review, VerificationStatus.rejected}),
    VerificationStatus.under_review: frozenset({VerificationStatus.verified, VerificationStatus.rejected}),
    VerificationStatus.rejected: frozenset({VerificationStatus.under_review}),
    VerificationStatus.verified: frozenset(),
}


def check_escrow_transition(current: EscrowStatus, target: EscrowStatus) -> None:
    if target not in ESCROW_TRANSITIONS.get(current, frozenset()):
        raise InvalidEscrowTransition(
            f"Escrow cannot move from {_value(current)} to {_value(target)}"
        )


def check_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    if target not in ORDER_TRANSITIONS.get(current, frozenset()):
        raise InvalidStatus(f"Order cannot move from {_value(current)} to {_value(target)}")


def check_dispute_transition(current: DisputeStatus | None, target: DisputeStatus) -> None:
    if current is None or target not in DISPUTE_TRANSITIONS.get(current, frozenset()):
        raise InvalidStatus(f"Dispute cannot move from {_value(current)} to {_value(target)}")


def check_verification_transition(current: VerificationStatus, target: VerificationStatus) -> None:
    if target not in VERIFICATION_TRANSITIONS.get(current, frozenset()):
        raise InvalidStatus(
            f"Seller verification cannot move from {_value(current)} to {_value(target)}"
        )


def _value(status) -> str:
    if status is None:
        return "none"
    return getattr(status, "value", str(status))
