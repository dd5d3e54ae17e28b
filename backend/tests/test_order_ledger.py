from decimal import Decimal

import pytest

from escrow_market.models_sqlalchemy.models import (
    EscrowStatus,
    NoteAuthor,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ProductStatus,
    VerificationStatus,
)
from escrow_market.services import catalog, dispute_resolver, escrow, order_ledger
from escrow_market.services.errors import (
    AccessDenied,
    Conflict,
    InsufficientStock,
    InvalidStatus,
    ProductUnavailable,
    RefundNotAllowed,
    ValidationFailed,
)


def test_create_order_prices_and_reserves(db, market, setup):
    order = market.order(setup["customer"], setup["product"], quantity=1)

    assert order.status == OrderStatus.pending_payment
    assert order.escrow_status == EscrowStatus.pending
    assert order.payment_status == PaymentStatus.pending
    assert order.subtotal == Decimal("500.00")
    assert order.shipping_cost == Decimal("60.00")
    assert order.total == Decimal("560.00")
    assert order.order_number.startswith("BD")
    assert len(order.order_number) == 11
    assert order.items[0].product_name == "Leather Wallet"
    assert order.items[0].unit_price == Decimal("500.00")
    assert order.notes[0].author_role == NoteAuthor.system

    db.refresh(setup["product"])
    assert setup["product"].stock == 4


def test_order_number_taken_concurrently_is_retried(db, market, setup, monkeypatch):
    first = market.order(setup["customer"], setup["product"])
    numbers = iter([first.order_number, "BD123456789"])
    monkeypatch.setattr(order_ledger, "generate_order_number", lambda db, clock=None: next(numbers))

    second = market.order(setup["customer"], setup["product"])

    assert second.order_number == "BD123456789"
    assert db.query(Order).count() == 2
    db.refresh(setup["product"])
    assert setup["product"].stock == 3


def test_order_number_conflict_is_a_typed_error(db, market, setup, monkeypatch):
    first = market.order(setup["customer"], setup["product"])
    monkeypatch.setattr(order_ledger, "generate_order_number", lambda db, clock=None: first.order_number)

    with pytest.raises(Conflict) as exc_info:
        market.order(setup["customer"], setup["product"])

    assert exc_info.value.code == "ORDER_NUMBER_CONFLICT"
    assert exc_info.value.status_code == 409
    assert db.query(Order).count() == 1
    db.refresh(setup["product"])
    assert setup["product"].stock == 4


def test_last_units_go_to_one_buyer_only(db, market):
    _, seller = market.seller()
    product = market.product(seller, stock=2)
    first, second = market.customer("First"), market.customer("Second")

    market.order(first, product, quantity=2)

    with pytest.raises(InsufficientStock):
        market.order(second, product, quantity=1)

    db.refresh(product)
    assert product.stock == 0
    assert product.status == ProductStatus.out_of_stock
    assert db.query(Order).count() == 1


def test_unverified_seller_product_is_unavailable(db, market):
    _, seller = market.seller(status=VerificationStatus.under_review)
    product = market.product(seller, stock=3)
    customer = market.customer()

    with pytest.raises(ProductUnavailable):
        market.order(customer, product)

    db.refresh(product)
    assert product.stock == 3
    assert db.query(Order).count() == 0


def test_deactivated_seller_product_is_unavailable(db, market):
    _, seller = market.seller(is_active=False)
    product = market.product(seller)

    with pytest.raises(ProductUnavailable):
        market.order(market.customer(), product)


def test_inactive_product_is_unavailable(db, market):
    _, seller = market.seller()
    product = market.product(seller, status=ProductStatus.inactive)

    with pytest.raises(ProductUnavailable):
        market.order(market.customer(), product)


def test_product_marked_out_of_stock_by_seller_is_unavailable(db, market):
    seller_user, seller = market.seller()
    product = market.product(seller, stock=5)
    catalog.set_product_status(db, seller_user, product.id, ProductStatus.out_of_stock)

    with pytest.raises(ProductUnavailable):
        market.order(market.customer(), product)

    db.refresh(product)
    assert product.stock == 5
    assert db.query(Order).count() == 0


def test_failed_reservation_rolls_back_whole_order(db, market):
    _, seller = market.seller()
    product = market.product(seller, stock=3)
    customer = market.customer()

    with pytest.raises(InsufficientStock):
        order_ledger.create_order(
            db,
            customer,
            [{"productId": product.id, "quantity": 2}, {"productId": product.id, "quantity": 2}],
            {
                "name": "A", "phone": "1", "street": "S", "city": "C",
                "division": "D", "postalCode": "1000",
            },
            PaymentMethod.nagad,
            clock=market.clock,
        )

    db.refresh(product)
    assert product.stock == 3
    assert db.query(Order).count() == 0


def test_items_must_share_one_seller(db, market):
    _, seller_a = market.seller()
    _, seller_b = market.seller()
    product_a = market.product(seller_a)
    product_b = market.product(seller_b)

    with pytest.raises(ValidationFailed) as exc_info:
        order_ledger.create_order(
            db,
            market.customer(),
            [{"productId": product_a.id, "quantity": 1}, {"productId": product_b.id, "quantity": 1}],
            {
                "name": "A", "phone": "1", "street": "S", "city": "C",
                "division": "D", "postalCode": "1000",
            },
            PaymentMethod.bkash,
            clock=market.clock,
        )
    assert exc_info.value.errors[0]["field"] == "items"


def test_only_customers_place_orders(market, setup):
    with pytest.raises(AccessDenied):
        market.order(setup["seller_user"], setup["product"])


def test_rejects_offline_payment_method(market, setup):
    with pytest.raises(ValidationFailed) as exc_info:
        market.order(setup["customer"], setup["product"], payment_method=PaymentMethod.bank_transfer)
    assert exc_info.value.errors[0]["field"] == "paymentMethod"


def test_rejects_incomplete_address(db, market, setup):
    with pytest.raises(ValidationFailed) as exc_info:
        order_ledger.create_order(
            db,
            setup["customer"],
            [{"productId": setup["product"].id, "quantity": 1}],
            {"name": "A", "phone": "1", "street": "S", "division": "D", "postalCode": "1000"},
            PaymentMethod.bkash,
            clock=market.clock,
        )
    assert exc_info.value.errors[0]["field"] == "shippingAddress.city"


def test_rejects_empty_and_zero_quantity_items(db, market, setup):
    with pytest.raises(ValidationFailed):
        order_ledger.create_order(db, setup["customer"], [], {}, PaymentMethod.bkash, clock=market.clock)
    with pytest.raises(ValidationFailed):
        market.order(setup["customer"], setup["product"], quantity=0)


def test_pricing_free_shipping_strictly_above_threshold():
    at_threshold = order_ledger.compute_pricing(Decimal("1000"), None)
    above = order_ledger.compute_pricing(Decimal("1000.01"), None)

    assert at_threshold.shipping_cost == Decimal("60.00")
    assert at_threshold.total == Decimal("1060.00")
    assert above.shipping_cost == Decimal("0.00")
    assert above.total == Decimal("1000.01")


def test_pricing_applies_tax_and_discount():
    pricing = order_ledger.compute_pricing(
        Decimal("200"),
        None,
        tax_calculator=lambda subtotal, address: subtotal * Decimal("0.05"),
        discount=Decimal("10"),
    )
    assert pricing.tax == Decimal("10.00")
    assert pricing.total == pricing.subtotal + pricing.shipping_cost + pricing.tax - pricing.discount


def test_fulfillment_moves_forward_only(db, market, setup):
    order = market.paid_order(setup["customer"], setup["product"])

    order = order_ledger.update_fulfillment(
        db, order.id, setup["seller_user"], OrderStatus.processing, clock=market.clock
    )
    assert order.status == OrderStatus.processing

    order = order_ledger.update_fulfillment(
        db, order.id, setup["seller_user"], "shipped", tracking_number="TRK9", clock=market.clock
    )
    assert order.status == OrderStatus.shipped
    assert order.tracking_number == "TRK9"
    assert order.shipped_at is not None

    with pytest.raises(InvalidStatus):
        order_ledger.update_fulfillment(db, order.id, setup["seller_user"], OrderStatus.processing, clock=market.clock)
    with pytest.raises(InvalidStatus):
        order_ledger.update_fulfillment(db, order.id, setup["seller_user"], OrderStatus.delivered, clock=market.clock)


def test_fulfillment_requires_payment_and_own_seller(db, market, setup):
    order = market.order(setup["customer"], setup["product"])
    with pytest.raises(InvalidStatus):
        order_ledger.update_fulfillment(db, order.id, setup["seller_user"], OrderStatus.shipped, clock=market.clock)

    other_user, _ = market.seller()
    with pytest.raises(AccessDenied):
        order_ledger.update_fulfillment(db, order.id, other_user, OrderStatus.processing, clock=market.clock)


def test_return_window_counts_whole_days(market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    clock.advance(days=10, hours=5)
    window = order_ledger.get_return_window(order, clock())
    assert window == {"totalDays": 30, "remainingDays": 20, "expired": False}
    assert order_ledger.can_request_refund(order, clock())

    clock.advance(days=21)
    window = order_ledger.get_return_window(order, clock())
    assert window["remainingDays"] == 0
    assert window["expired"] is True
    assert not order_ledger.can_request_refund(order, clock())


def test_return_window_absent_before_delivery(market, setup):
    order = market.paid_order(setup["customer"], setup["product"])
    assert order_ledger.get_return_window(order) is None
    assert order_ledger.can_request_refund(order) is False


def test_request_refund_records_pending_request(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    clock.advance(days=3)

    order = order_ledger.request_refund(db, order.id, setup["customer"], "Item damaged", "Torn stitching", clock=clock)

    assert order.refund_requested_at is not None
    assert order.refund_amount == order.total
    assert order.refund_is_refunded is False
    assert order.escrow_status == EscrowStatus.held

    with pytest.raises(RefundNotAllowed):
        order_ledger.request_refund(db, order.id, setup["customer"], "Again", clock=clock)


def test_request_refund_outside_window(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    clock.advance(days=31)

    with pytest.raises(RefundNotAllowed):
        order_ledger.request_refund(db, order.id, setup["customer"], "Too late", clock=clock)


def test_refund_window_boundary_is_inclusive(market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    clock.advance(days=30)
    assert order_ledger.can_request_refund(order, clock()) is True

    clock.advance(seconds=1)
    assert order_ledger.can_request_refund(order, clock()) is False


def test_no_refund_request_after_buyer_approval(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    clock.advance(days=2)

    order = escrow.approve_delivery(db, order.id, setup["customer"], clock=clock)

    assert order_ledger.can_request_refund(order, clock()) is False
    with pytest.raises(RefundNotAllowed):
        order_ledger.request_refund(db, order.id, setup["customer"], "Changed my mind", clock=clock)


def test_no_refund_request_after_dispute_refund(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    dispute_resolver.open_dispute(db, order.id, setup["customer"], "Damaged", clock=clock)
    clock.advance(days=1)

    order = dispute_resolver.resolve_dispute(
        db, setup["admin"], order.id, "Refund approved", refund_amount=200, clock=clock
    )

    assert order.escrow_status == EscrowStatus.refunded_to_customer
    assert order_ledger.can_request_refund(order, clock()) is False


def test_request_refund_only_by_buyer(db, market, setup):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    with pytest.raises(AccessDenied):
        order_ledger.request_refund(db, order.id, market.customer("Stranger"), "Not mine", clock=market.clock)


def test_cancel_unpaid_order_restores_stock(db, market, setup):
    product = setup["product"]
    order = market.order(setup["customer"], product, quantity=5)
    db.refresh(product)
    assert product.status == ProductStatus.out_of_stock

    order = order_ledger.cancel_order(db, order.id, setup["customer"], "Changed my mind", clock=market.clock)

    assert order.status == OrderStatus.cancelled
    assert order.escrow_status == EscrowStatus.pending
    db.refresh(product)
    assert product.stock == 5
    assert product.status == ProductStatus.active


def test_cancel_paid_order_refunds_escrow(db, market, setup):
    order = market.paid_order(setup["customer"], setup["product"])

    order = order_ledger.cancel_order(db, order.id, setup["customer"], "Found it cheaper", clock=market.clock)

    assert order.status == OrderStatus.refunded
    assert order.escrow_status == EscrowStatus.refunded_to_customer
    assert order.payment_status == PaymentStatus.refunded
    assert order.refund_is_refunded is True
    assert order.refund_amount == order.total


def test_customer_cannot_cancel_shipped_order_but_admin_can(db, market, setup):
    order = market.shipped_order(setup["customer"], setup["product"], setup["seller_user"])

    with pytest.raises(InvalidStatus):
        order_ledger.cancel_order(db, order.id, setup["customer"], "Too slow", clock=market.clock)

    order = order_ledger.cancel_order(db, order.id, setup["admin"], "Lost in transit", clock=market.clock)
    assert order.status == OrderStatus.refunded
    assert order.escrow_status == EscrowStatus.refunded_to_customer


def test_delivered_order_cannot_be_cancelled(db, market, setup):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    with pytest.raises(InvalidStatus):
        order_ledger.cancel_order(db, order.id, setup["admin"], "Late", clock=market.clock)


def test_feedback_updates_seller_rating(db, market, setup):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    order = order_ledger.leave_feedback(db, order.id, setup["customer"], 4, "Nice wallet", clock=market.clock)
    assert order.feedback_rating == 4

    seller = setup["seller"]
    db.refresh(seller)
    assert seller.rating_count == 1
    assert seller.rating_average == Decimal("4.00")

    with pytest.raises(InvalidStatus):
        order_ledger.leave_feedback(db, order.id, setup["customer"], 5, clock=market.clock)


def test_feedback_validation(db, market, setup):
    undelivered = market.paid_order(setup["customer"], setup["product"])
    with pytest.raises(InvalidStatus):
        order_ledger.leave_feedback(db, undelivered.id, setup["customer"], 5, clock=market.clock)

    delivered = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    with pytest.raises(ValidationFailed):
        order_ledger.leave_feedback(db, delivered.id, setup["customer"], 6, clock=market.clock)
