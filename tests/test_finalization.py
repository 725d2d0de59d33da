import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import TestingSessionLocal, completed_event, put_in_cart, record_pending, totals_for
from storefront import orders
from storefront.exceptions import TransactionConflictError
from storefront.models import CartItem, Order, PendingCheckout, Product, ReconciliationIssue
from storefront.orders import finalize_checkout, generate_order_number


def numbers(*values):
    it = iter(values)
    return lambda: next(it)


def test_order_number_is_time_ordered_and_random():
    number = generate_order_number(datetime(2024, 3, 9, 14, 5, 7, tzinfo=timezone.utc))

    assert re.fullmatch(r"ORD-20240309140507-[0-9A-F]{6}", number)
    assert generate_order_number() != generate_order_number()


def test_items_sum_to_order_subtotal(db, settings, user, make_product):
    a = make_product(price="19.99", stock=10)
    b = make_product(price="5.25", stock=10)
    put_in_cart(db, user, a, 3)
    put_in_cart(db, user, b, 1)
    totals = totals_for(("19.99", 3), ("5.25", 1))
    record_pending(db, "cs_sum", user, totals)

    result = finalize_checkout(db, settings, completed_event("cs_sum", user, totals))

    assert result.created is True
    order = db.query(Order).one()
    assert sum(item.subtotal for item in order.items) == order.subtotal
    assert order.total == order.subtotal + order.tax + order.shipping_cost - order.discount
    assert db.query(CartItem).filter_by(user_id=user.id).count() == 0
    assert db.query(ReconciliationIssue).count() == 0


def test_order_items_keep_their_snapshot_after_catalog_edits(db, settings, user, make_product):
    mug = make_product("Coffee Mug", price="12.00", stock=10)
    put_in_cart(db, user, mug, 1)
    totals = totals_for(("12.00", 1))

    finalize_checkout(db, settings, completed_event("cs_snap", user, totals))
    mug = db.get(Product, mug.id)
    mug.name = "Renamed Mug"
    mug.price = Decimal("99.00")
    db.commit()

    item = db.query(Order).one().items[0]
    assert item.product_name == "Coffee Mug"
    assert item.price == Decimal("12.00")


def test_same_event_twice_creates_one_order(db, settings, user, make_product):
    mug = make_product(price="50.00", stock=5)
    put_in_cart(db, user, mug, 2)
    totals = totals_for(("50.00", 2))
    event = completed_event("cs_dup", user, totals)

    first = finalize_checkout(db, settings, event)
    second = finalize_checkout(db, settings, event)

    assert first.created is True
    assert second.created is False
    assert second.order.id == first.order.id
    assert db.query(Order).count() == 1
    product = db.get(Product, mug.id)
    assert product.stock == 3
    assert product.sales_count == 2


def test_last_unit_sold_twice_clamps_stock_and_flags_underflow(db, settings, user, other_user, make_product):
    lamp = make_product("Last Lamp", price="40.00", stock=1)
    put_in_cart(db, user, lamp, 1)
    put_in_cart(db, other_user, lamp, 1)
    totals = totals_for(("40.00", 1))

    first = finalize_checkout(db, settings, completed_event("cs_first", user, totals))
    second = finalize_checkout(db, settings, completed_event("cs_second", other_user, totals))

    assert first.created and second.created
    product = db.get(Product, lamp.id)
    assert product.stock == 0
    assert product.sales_count == 2

    [issue] = db.query(ReconciliationIssue).all()
    assert issue.kind == "stock_underflow"
    assert issue.order_id == second.order.id
    assert issue.product_id == lamp.id
    assert issue.requested == 1
    assert issue.available == 0


def test_cart_changed_after_checkout_totals_follow_payment(db, settings, user, make_product):
    mug = make_product(price="50.00", stock=10)
    pen = make_product(price="2.00", stock=10)
    put_in_cart(db, user, mug, 2)
    paid = totals_for(("50.00", 2))
    record_pending(db, "cs_changed", user, paid)

    # Added after the session was opened, before the confirmation arrived
    put_in_cart(db, user, pen, 3)

    result = finalize_checkout(db, settings, completed_event("cs_changed", user, paid))

    order = result.order
    assert order.subtotal == Decimal("100.00")
    assert order.total == Decimal("120.00")
    assert {item.product_id: item.quantity for item in order.items} == {mug.id: 2, pen.id: 3}
    assert db.get(Product, pen.id).stock == 7

    [issue] = db.query(ReconciliationIssue).all()
    assert issue.kind == "cart_changed"
    assert issue.order_id == order.id


def test_totals_mismatch_with_recorded_checkout_is_refused(db, settings, user, make_product):
    mug = make_product(price="50.00", stock=5)
    put_in_cart(db, user, mug, 2)
    record_pending(db, "cs_tampered", user, totals_for(("50.00", 2)))
    cheap = totals_for(("1.00", 2))

    result = finalize_checkout(db, settings, completed_event("cs_tampered", user, cheap))

    assert result.order is None
    assert result.issue == "totals_mismatch"
    assert db.query(Order).count() == 0
    assert db.get(Product, mug.id).stock == 5
    assert db.query(CartItem).filter_by(user_id=user.id).count() == 1
    assert db.query(PendingCheckout).one().status == "flagged"

    # Redelivery does not pile up duplicate issues
    finalize_checkout(db, settings, completed_event("cs_tampered", user, cheap))
    assert db.query(ReconciliationIssue).filter_by(kind="totals_mismatch").count() == 1


def test_amount_charged_must_match_metadata_total(db, settings, user, make_product):
    put_in_cart(db, user, make_product(price="50.00", stock=5), 2)
    totals = totals_for(("50.00", 2))

    result = finalize_checkout(db, settings, completed_event("cs_short", user, totals, amount_total=100))

    assert result.issue == "totals_mismatch"
    assert db.query(Order).count() == 0


def test_inconsistent_metadata_is_refused(db, settings, user, make_product):
    put_in_cart(db, user, make_product(price="50.00", stock=5), 2)
    totals = totals_for(("50.00", 2))
    event = completed_event("cs_bad_sum", user, totals, metadata_overrides={"tax": "0.00"})

    result = finalize_checkout(db, settings, event)

    assert result.issue == "totals_mismatch"


def test_empty_cart_is_flagged_for_operator(db, settings, user):
    totals = totals_for(("50.00", 2))

    result = finalize_checkout(db, settings, completed_event("cs_empty", user, totals))

    assert result.order is None
    assert result.issue == "empty_cart"
    issue = db.query(ReconciliationIssue).one()
    assert issue.kind == "empty_cart"
    assert issue.stripe_session_id == "cs_empty"


@pytest.mark.parametrize("with_pending", [True, False])
def test_redelivery_after_empty_cart_does_not_bill_the_next_cart(db, settings, user, make_product, with_pending):
    totals = totals_for(("50.00", 2))
    if with_pending:
        record_pending(db, "cs_empty_again", user, totals)
    event = completed_event("cs_empty_again", user, totals)
    finalize_checkout(db, settings, event)

    # The customer shops again before Stripe redelivers the old event
    mug = make_product(price="50.00", stock=5)
    put_in_cart(db, user, mug, 2)
    result = finalize_checkout(db, settings, event)

    assert result.order is None
    assert result.created is False
    assert db.query(Order).count() == 0
    assert db.get(Product, mug.id).stock == 5
    assert db.query(CartItem).filter_by(user_id=user.id).count() == 1
    assert db.query(ReconciliationIssue).count() == 1
    if with_pending:
        assert db.query(PendingCheckout).one().status == "flagged"


def test_completed_checkout_is_marked_completed(db, settings, user, make_product):
    put_in_cart(db, user, make_product(price="50.00", stock=5), 1)
    totals = totals_for(("50.00", 1))
    record_pending(db, "cs_done", user, totals)

    finalize_checkout(db, settings, completed_event("cs_done", user, totals))

    assert db.query(PendingCheckout).one().status == "completed"


def test_only_the_lines_read_are_removed_from_cart(db, settings, user, make_product, mocker):
    mug = make_product(price="50.00", stock=5)
    pen = make_product(price="2.00", stock=5)
    put_in_cart(db, user, mug, 2)
    real_lock = orders._lock_products

    def lock_while_customer_adds(session, product_ids):
        # A line committed by another request after the cart was read
        other = TestingSessionLocal()
        other.add(CartItem(user_id=user.id, product_id=pen.id, quantity=1))
        other.commit()
        other.close()
        return real_lock(session, product_ids)

    mocker.patch("storefront.orders._lock_products", side_effect=lock_while_customer_adds)

    result = finalize_checkout(db, settings, completed_event("cs_late_add", user, totals_for(("50.00", 2))))

    assert [item.product_id for item in result.order.items] == [mug.id]
    db.expire_all()
    [left] = db.query(CartItem).filter_by(user_id=user.id).all()
    assert left.product_id == pen.id


def test_order_number_collision_is_retried(db, settings, user, other_user, make_product):
    put_in_cart(db, user, make_product(price="10.00", stock=5), 1)
    put_in_cart(db, other_user, make_product(price="20.00", stock=5), 1)

    finalize_checkout(
        db, settings, completed_event("cs_a", user, totals_for(("10.00", 1))),
        order_number_factory=numbers("ORD-SAME"),
    )
    result = finalize_checkout(
        db, settings, completed_event("cs_b", other_user, totals_for(("20.00", 1))),
        order_number_factory=numbers("ORD-SAME", "ORD-OTHER"),
    )

    assert result.created is True
    assert result.order.order_number == "ORD-OTHER"
    assert db.query(Order).count() == 2


def test_exhausted_retries_leave_state_untouched(db, settings, user, other_user, make_product):
    put_in_cart(db, user, make_product(price="10.00", stock=5), 1)
    pen = make_product(price="20.00", stock=5)
    put_in_cart(db, other_user, pen, 1)
    finalize_checkout(
        db, settings, completed_event("cs_a", user, totals_for(("10.00", 1))),
        order_number_factory=lambda: "ORD-SAME",
    )

    with pytest.raises(TransactionConflictError):
        finalize_checkout(
            db, settings, completed_event("cs_b", other_user, totals_for(("20.00", 1))),
            order_number_factory=lambda: "ORD-SAME",
        )

    assert db.query(Order).count() == 1
    assert db.get(Product, pen.id).stock == 5
    assert db.get(Product, pen.id).sales_count == 0
    assert db.query(CartItem).filter_by(user_id=other_user.id).count() == 1


def test_failure_midway_rolls_everything_back(db, settings, user, make_product, mocker):
    mug = make_product(price="50.00", stock=5)
    put_in_cart(db, user, mug, 2)
    mocker.patch("storefront.orders.clear_cart", side_effect=RuntimeError("disk full"))

    with pytest.raises(RuntimeError):
        finalize_checkout(db, settings, completed_event("cs_boom", user, totals_for(("50.00", 2))))

    assert db.query(Order).count() == 0
    assert db.get(Product, mug.id).stock == 5
    assert db.get(Product, mug.id).sales_count == 0
    assert db.query(CartItem).filter_by(user_id=user.id).count() == 1

    # The redelivery then succeeds
    mocker.stopall()
    result = finalize_checkout(db, settings, completed_event("cs_boom", user, totals_for(("50.00", 2))))
    assert result.created is True
