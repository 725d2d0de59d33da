"""Orders: finalization of confirmed payments and the order lifecycle.

``finalize_checkout`` turns a verified ``checkout.session.completed`` event
into an order. It runs as one transaction: the order, its item snapshots,
the stock and sales counters and the emptied cart are committed together or
not at all. The monetary totals come from the event metadata written when
the session was opened; the items come from the cart as it is when the
confirmation arrives.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from storefront import stripe_service
from storefront.cart import clear_cart
from storefront.config import Settings
from storefront.exceptions import NotFoundError, TransactionConflictError, ValidationError
from storefront.models import (
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PendingCheckout,
    Product,
    ReconciliationIssue,
    User,
    utcnow,
)
from storefront.pricing import CheckoutTotals, to_minor_units, to_money

logger = logging.getLogger(__name__)

COMPLETION_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)

# Outcomes that close a paid session without an order
REFUSAL_KINDS = ("totals_mismatch", "empty_cart")

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}


@dataclass(frozen=True)
class FinalizationResult:
    order: Optional[Order]
    created: bool
    issue: Optional[str] = None


def generate_order_number(now: Optional[datetime] = None) -> str:
    """Time-ordered order number with a random suffix, e.g. ORD-20240101120000-9F2A1C."""
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def build_order_item(product: Product, quantity: int) -> OrderItem:
    price = to_money(product.price)
    return OrderItem(
        product_id=product.id,
        product_name=product.name,
        product_sku=product.sku,
        product_image=product.image_url,
        price=price,
        quantity=quantity,
        subtotal=to_money(price * quantity),
    )


def is_payment_completed(event: Dict[str, Any]) -> bool:
    event_type = event.get("type")
    if event_type not in COMPLETION_EVENTS:
        return False
    session = event.get("data", {}).get("object", {})
    if event_type == "checkout.session.completed":
        # Delayed payment methods complete the session before the money arrives
        return session.get("payment_status") in ("paid", "no_payment_required")
    return True


def finalize_checkout(
    db: Session,
    settings: Settings,
    event: Dict[str, Any],
    order_number_factory=generate_order_number,
) -> FinalizationResult:
    """Create the order for a confirmed checkout session, at most once.

    Collisions (duplicate order number, concurrent delivery of the same
    session) and lock contention are retried up to
    ``settings.finalization_max_attempts`` times, then surface as
    TransactionConflictError with nothing written.
    """
    session_obj = event["data"]["object"]
    session_id = session_obj["id"]
    attempts = max(1, settings.finalization_max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = _finalize_once(db, session_obj, order_number_factory())
            db.commit()
        except (IntegrityError, OperationalError) as exc:
            db.rollback()
            logger.warning(
                f"Finalization of session {session_id} conflicted "
                f"(attempt {attempt}/{attempts}): {exc.__class__.__name__}"
            )
            continue
        except Exception:
            db.rollback()
            raise

        if result.created:
            logger.info(f"Order {result.order.order_number} created for session {session_id}")
        return result

    logger.error(f"Giving up on session {session_id} after {attempts} attempts")
    raise TransactionConflictError()


def _finalize_once(db: Session, session_obj: Dict[str, Any], order_number: str) -> FinalizationResult:
    session_id = session_obj["id"]

    existing = db.query(Order).filter_by(stripe_session_id=session_id).first()
    if existing:
        logger.info(f"Session {session_id} already finalized as {existing.order_number}, skipping")
        return FinalizationResult(existing, created=False)

    pending = db.query(PendingCheckout).filter_by(stripe_session_id=session_id).first()
    refused = (
        db.query(ReconciliationIssue)
        .filter(
            ReconciliationIssue.stripe_session_id == session_id,
            ReconciliationIssue.kind.in_(REFUSAL_KINDS),
        )
        .first()
    )
    if refused is not None or (pending is not None and pending.status != "open"):
        kind = refused.kind if refused is not None else pending.status
        logger.info(f"Session {session_id} was already refused ({kind}), skipping")
        return FinalizationResult(None, created=False, issue=kind)

    metadata = session_obj.get("metadata") or {}
    user, totals, problems = _read_trusted_terms(db, session_obj, metadata, pending)
    if problems:
        logger.warning(f"Refusing to finalize session {session_id}: {'; '.join(problems)}")
        _refuse(db, "totals_mismatch", session_id, "; ".join(problems), pending)
        return FinalizationResult(None, created=False, issue="totals_mismatch")

    cart_items = (
        db.query(CartItem)
        .filter(CartItem.user_id == user.id)
        .order_by(CartItem.id)
        .all()
    )
    if not cart_items:
        logger.warning(f"Cart of user {user.id} is empty, no order created for paid session {session_id}")
        _refuse(db, "empty_cart", session_id, f"user {user.id}, total {totals.total}", pending)
        return FinalizationResult(None, created=False, issue="empty_cart")

    products = _lock_products(db, [item.product_id for item in cart_items])

    order = Order(
        order_number=order_number,
        user_id=user.id,
        status=OrderStatus.PROCESSING,
        payment_status=PaymentStatus.PAID,
        payment_method="stripe",
        stripe_session_id=session_id,
        stripe_payment_intent_id=session_obj.get("payment_intent"),
        subtotal=totals.subtotal,
        tax=totals.tax,
        shipping_cost=totals.shipping_cost,
        discount=totals.discount,
        total=totals.total,
        **_shipping_fields(session_obj, metadata),
        **_customer_fields(session_obj, user),
    )
    db.add(order)
    db.flush()

    items_subtotal = Decimal("0.00")
    for cart_item in cart_items:
        product = products[cart_item.product_id]
        order_item = build_order_item(product, cart_item.quantity)
        order.items.append(order_item)
        items_subtotal += order_item.subtotal

        if cart_item.quantity > product.stock:
            logger.warning(
                f"Stock underflow on product {product.id} ({product.sku}) for order "
                f"{order.order_number}: sold {cart_item.quantity}, had {product.stock}"
            )
            db.add(ReconciliationIssue(
                kind="stock_underflow",
                stripe_session_id=session_id,
                order_id=order.id,
                product_id=product.id,
                requested=cart_item.quantity,
                available=product.stock,
            ))
        product.stock = max(product.stock - cart_item.quantity, 0)
        product.sales_count = (product.sales_count or 0) + cart_item.quantity

    if items_subtotal != totals.subtotal:
        logger.warning(
            f"Cart changed after checkout for order {order.order_number}: "
            f"items {items_subtotal}, paid subtotal {totals.subtotal}"
        )
        db.add(ReconciliationIssue(
            kind="cart_changed",
            stripe_session_id=session_id,
            order_id=order.id,
            details=f"items subtotal {items_subtotal}, paid subtotal {totals.subtotal}",
        ))

    # Only the lines read above; anything added since stays in the cart
    clear_cart(db, user.id, [item.id for item in cart_items])

    if pending:
        pending.status = "completed"

    db.flush()
    return FinalizationResult(order, created=True)


def _read_trusted_terms(db: Session, session_obj, metadata, pending: Optional[PendingCheckout]):
    """Resolve the buyer and the agreed totals, listing anything that does not add up."""
    problems: List[str] = []

    user = None
    raw_user_id = metadata.get("userId") or session_obj.get("client_reference_id")
    try:
        user = db.get(User, int(raw_user_id))
    except (TypeError, ValueError):
        pass
    if user is None:
        problems.append(f"unknown user {raw_user_id!r}")

    try:
        totals = CheckoutTotals.from_metadata(metadata)
    except (KeyError, ArithmeticError):
        problems.append("missing or malformed totals in metadata")
        return user, None, problems

    if not totals.is_consistent():
        problems.append("total does not equal subtotal + tax + shipping - discount")

    amount_total = session_obj.get("amount_total")
    if amount_total is not None and amount_total != to_minor_units(totals.total):
        problems.append(f"charged {amount_total} but metadata total is {totals.total}")

    if pending is None:
        logger.warning(f"No pending checkout recorded for session {session_obj['id']}, trusting event metadata")
    else:
        agreed = CheckoutTotals(
            subtotal=to_money(pending.subtotal),
            tax=to_money(pending.tax),
            shipping_cost=to_money(pending.shipping_cost),
            discount=to_money(pending.discount),
            total=to_money(pending.total),
        )
        if agreed != totals:
            problems.append(f"metadata totals differ from the recorded checkout (total {agreed.total})")
        if user is not None and pending.user_id != user.id:
            problems.append(f"session belongs to user {pending.user_id}")

    return user, totals, problems


def _lock_products(db: Session, product_ids: List[int]) -> Dict[int, Product]:
    """Lock product rows FOR UPDATE in id order and return them by id."""
    rows = (
        db.query(Product)
        .filter(Product.id.in_(sorted(set(product_ids))))
        .order_by(Product.id)
        .with_for_update()
        .populate_existing()
        .all()
    )
    return {product.id: product for product in rows}


def _shipping_fields(session_obj, metadata) -> Dict[str, str]:
    if metadata.get("shippingAddress"):
        return {
            "shipping_address": metadata["shippingAddress"],
            "shipping_city": metadata.get("city", ""),
            "shipping_state": metadata.get("state", ""),
            "shipping_postal_code": metadata.get("postalCode", ""),
            "shipping_country": metadata.get("country") or "USA",
        }
    address = (session_obj.get("customer_details") or {}).get("address") or {}
    return {
        "shipping_address": " ".join(filter(None, [address.get("line1"), address.get("line2")])),
        "shipping_city": address.get("city") or "",
        "shipping_state": address.get("state") or "",
        "shipping_postal_code": address.get("postal_code") or "",
        "shipping_country": address.get("country") or "USA",
    }


def _customer_fields(session_obj, user: User) -> Dict[str, Optional[str]]:
    details = session_obj.get("customer_details") or {}
    return {
        "customer_name": details.get("name") or user.full_name or user.email,
        "customer_email": details.get("email") or session_obj.get("customer_email") or user.email,
        "customer_phone": details.get("phone"),
    }


def _refuse(db: Session, kind: str, session_id: str, details: str, pending: Optional[PendingCheckout]):
    """Close the session for good: redeliveries must not turn it into an order later."""
    db.add(ReconciliationIssue(kind=kind, stripe_session_id=session_id, details=details))
    if pending is not None:
        pending.status = "flagged"


def list_orders(db: Session, user_id: int) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def get_order(db: Session, user_id: int, order_id: int) -> Order:
    order = db.query(Order).filter_by(id=order_id, user_id=user_id).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def update_order_status(
    db: Session,
    settings: Settings,
    user_id: int,
    order_id: int,
    status: str,
    tracking_number: Optional[str] = None,
) -> Order:
    order = get_order(db, user_id, order_id)

    try:
        new_status = OrderStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {status}")

    if new_status not in ALLOWED_TRANSITIONS[order.status]:
        raise ValidationError(f"Cannot change order from {order.status.value} to {new_status.value}")

    now = utcnow()
    issue_refund = False
    if new_status == OrderStatus.SHIPPED:
        order.shipped_at = now
        if tracking_number:
            order.tracking_number = tracking_number
    elif new_status == OrderStatus.DELIVERED:
        order.delivered_at = now
    elif new_status == OrderStatus.CANCELLED:
        order.cancelled_at = now
    elif new_status == OrderStatus.REFUNDED:
        issue_refund = order.payment_status == PaymentStatus.PAID and bool(order.stripe_payment_intent_id)
        order.payment_status = PaymentStatus.REFUNDED

    logger.info(f"Order {order.order_number}: {order.status.value} -> {new_status.value}")
    order.status = new_status
    # Write the new status before any money moves; a failed refund rolls it back
    db.flush()

    refund = None
    if issue_refund:
        try:
            refund = stripe_service.refund_payment(settings, order.stripe_payment_intent_id)
        except Exception:
            db.rollback()
            raise

    try:
        db.commit()
    except Exception:
        db.rollback()
        if refund is not None:
            logger.error(
                f"Refund {getattr(refund, 'id', None)} issued for order {order_id} "
                f"but its status could not be saved"
            )
        raise
    db.refresh(order)
    return order
