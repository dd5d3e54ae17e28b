from decimal import Decimal

import pytest

from escrow_market.models_sqlalchemy.models import DisputeStatus, EscrowStatus, OrderStatus
from escrow_market.services import dispute_resolver, escrow
from escrow_market.services.errors import (
    AccessDenied,
    InvalidStatus,
    NotFound,
    ValidationFailed,
)


@pytest.fixture()
def disputed(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    return dispute_resolver.open_dispute(
        db,
        order.id,
        setup["customer"],
        "Counterfeit item",
        "Logo is misprinted",
        ["https://img.example.com/1.jpg"],
        clock=clock,
    )


def test_open_dispute(disputed):
    assert disputed.dispute_is_disputed is True
    assert disputed.dispute_status == DisputeStatus.open
    assert disputed.dispute_evidence == ["https://img.example.com/1.jpg"]
    assert disputed.escrow_status == EscrowStatus.held


def test_only_one_dispute_in_progress(db, setup, disputed, clock):
    with pytest.raises(InvalidStatus):
        dispute_resolver.open_dispute(db, disputed.id, setup["customer"], "Again", clock=clock)


def test_dispute_needs_held_escrow(db, market, setup, clock):
    unpaid = market.order(setup["customer"], setup["product"])
    with pytest.raises(InvalidStatus):
        dispute_resolver.open_dispute(db, unpaid.id, setup["customer"], "Never paid", clock=clock)


def test_dispute_only_by_buyer_or_admin(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    with pytest.raises(AccessDenied):
        dispute_resolver.open_dispute(db, order.id, setup["seller_user"], "Seller cannot", clock=clock)

    order = dispute_resolver.open_dispute(db, order.id, setup["admin"], "Opened on behalf of buyer", clock=clock)
    assert order.dispute_status == DisputeStatus.open


def test_open_dispute_blocks_buyer_approval(db, setup, disputed, clock):
    with pytest.raises(InvalidStatus):
        escrow.approve_delivery(db, disputed.id, setup["customer"], clock=clock)


def test_resolve_with_refund(db, setup, disputed, clock):
    order = dispute_resolver.start_dispute_review(db, setup["admin"], disputed.id, clock=clock)
    assert order.dispute_status == DisputeStatus.under_review

    order = dispute_resolver.resolve_dispute(
        db,
        setup["admin"],
        disputed.id,
        "Refund approved after review",
        refund_amount=500,
        admin_notes="Seller shipped a replica",
        clock=clock,
    )

    assert order.escrow_status == EscrowStatus.refunded_to_customer
    assert order.refund_amount == Decimal("500.00")
    assert order.refund_is_refunded is True
    assert order.refund_admin_notes == "Seller shipped a replica"
    assert order.dispute_status == DisputeStatus.resolved
    assert order.dispute_resolved_by == setup["admin"].id
    assert order.status == OrderStatus.delivered


def test_resolve_without_refund_releases_to_seller(db, setup, disputed, clock):
    order = dispute_resolver.resolve_dispute(
        db, setup["admin"], disputed.id, "Item verified authentic", clock=clock
    )

    assert order.escrow_status == EscrowStatus.released_to_seller
    assert order.escrow_released_by == setup["admin"].id
    assert order.dispute_status == DisputeStatus.resolved


def test_resolved_dispute_is_final(db, setup, disputed, clock):
    dispute_resolver.resolve_dispute(db, setup["admin"], disputed.id, "Released", clock=clock)

    with pytest.raises(InvalidStatus):
        dispute_resolver.resolve_dispute(db, setup["admin"], disputed.id, "Refund", refund_amount=10, clock=clock)
    with pytest.raises(InvalidStatus):
        dispute_resolver.close_dispute(db, setup["admin"], disputed.id, clock=clock)


def test_refund_amount_bounded_by_total(db, setup, disputed, clock):
    with pytest.raises(ValidationFailed):
        dispute_resolver.resolve_dispute(
            db, setup["admin"], disputed.id, "Too much", refund_amount=Decimal("560.01"), clock=clock
        )
    with pytest.raises(ValidationFailed):
        dispute_resolver.resolve_dispute(
            db, setup["admin"], disputed.id, "Negative", refund_amount=-1, clock=clock
        )


def test_resolution_requires_admin(db, setup, disputed, clock):
    with pytest.raises(AccessDenied):
        dispute_resolver.resolve_dispute(db, setup["customer"], disputed.id, "Self-serve", clock=clock)
    with pytest.raises(AccessDenied):
        dispute_resolver.start_dispute_review(db, setup["seller_user"], disputed.id, clock=clock)


def test_gateway_refund_closes_dispute_in_progress(db, setup, disputed, clock):
    order = escrow.record_gateway_refund(db, disputed.id, amount="100", clock=clock)

    assert order.escrow_status == EscrowStatus.refunded_to_customer
    assert order.dispute_status == DisputeStatus.closed
    assert order.dispute_resolved_by == "system"
    assert "Dispute closed: buyer refunded by payment gateway" in [note.message for note in order.notes]

    listing = dispute_resolver.list_disputes(db, setup["admin"])
    assert listing["summary"] == {"open": 0, "underReview": 0, "resolved": 0, "closed": 1}

    with pytest.raises(InvalidStatus):
        dispute_resolver.resolve_dispute(db, setup["admin"], disputed.id, "Late", clock=clock)


def test_close_then_reopen(db, setup, disputed, clock):
    order = dispute_resolver.close_dispute(db, setup["admin"], disputed.id, "Resolved directly", clock=clock)
    assert order.dispute_status == DisputeStatus.closed
    assert order.escrow_status == EscrowStatus.held

    order = dispute_resolver.open_dispute(db, disputed.id, setup["customer"], "Problem came back", clock=clock)
    assert order.dispute_status == DisputeStatus.open
    assert order.dispute_resolved_at is None


def test_undisputed_order_is_not_found(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    with pytest.raises(NotFound):
        dispute_resolver.start_dispute_review(db, setup["admin"], order.id, clock=clock)


def test_list_disputes_with_summary(db, market, setup, disputed, clock):
    other = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    dispute_resolver.open_dispute(db, other.id, setup["customer"], "Wrong colour", clock=clock)
    dispute_resolver.resolve_dispute(db, setup["admin"], other.id, "Released", clock=clock)

    listing = dispute_resolver.list_disputes(db, setup["admin"])
    assert len(listing["disputes"]) == 2
    assert listing["summary"] == {"open": 1, "underReview": 0, "resolved": 1, "closed": 0}

    only_open = dispute_resolver.list_disputes(db, setup["admin"], "open")
    assert [d["id"] for d in only_open["disputes"]] == [disputed.id]

    with pytest.raises(AccessDenied):
        dispute_resolver.list_disputes(db, setup["customer"])
