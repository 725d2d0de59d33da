"""Turn a user's cart into a hosted Stripe checkout session.

Nothing here touches stock, the cart or orders: those change only when the
payment is confirmed (see ``storefront.orders.finalize_checkout``). The one
local write is the ``PendingCheckout`` row remembering the agreed totals.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from storefront import stripe_service
from storefront.cart import CartLine, read_cart
from storefront.config import Settings
from storefront.exceptions import InsufficientStockError, ValidationError
from storefront.models import PendingCheckout, User
from storefront.pricing import CheckoutTotals, calculate_totals, to_minor_units

logger = logging.getLogger(__name__)


class ShippingAddress(BaseModel):
    shipping_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "USA"

    def validate_complete(self):
        missing = [
            name
            for name in ("shipping_address", "city", "state", "postal_code")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ValidationError(
                "Please provide complete shipping address",
                {"missing_fields": missing},
            )


@dataclass(frozen=True)
class CheckoutSessionHandle:
    session_id: str
    url: str


def check_stock(lines: List[CartLine]):
    for line in lines:
        if not line.product.is_active:
            raise ValidationError(f"{line.product.name} is no longer available")
        if line.quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        if line.quantity > line.product.stock:
            raise InsufficientStockError(
                line.product.name,
                requested=line.quantity,
                available=line.product.stock,
                product_id=line.product.id,
            )


def build_line_items(lines: List[CartLine], totals: CheckoutTotals, currency: str) -> List[Dict[str, Any]]:
    line_items = []
    for line in lines:
        product = line.product
        line_items.append({
            "price_data": {
                "currency": currency,
                "product_data": {
                    "name": product.name,
                    "description": product.short_description or "",
                    "images": [product.image_url] if product.image_url else [],
                    "metadata": {"product_id": str(product.id), "sku": product.sku},
                },
                "unit_amount": to_minor_units(product.price),
            },
            "quantity": line.quantity,
        })

    # Charge tax and shipping too, so the amount paid equals the order total
    for label, amount in (("Sales tax", totals.tax), ("Shipping", totals.shipping_cost)):
        if amount > 0:
            line_items.append({
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": label},
                    "unit_amount": to_minor_units(amount),
                },
                "quantity": 1,
            })
    return line_items


def build_metadata(user: User, address: ShippingAddress, totals: CheckoutTotals) -> Dict[str, str]:
    metadata = {
        "userId": str(user.id),
        "shippingAddress": address.shipping_address.strip(),
        "city": address.city.strip(),
        "state": address.state.strip(),
        "postalCode": address.postal_code.strip(),
        "country": (address.country or "USA").strip(),
    }
    metadata.update(totals.as_metadata())
    return metadata


def create_checkout_session(
    db: Session,
    settings: Settings,
    user: User,
    address: ShippingAddress,
) -> CheckoutSessionHandle:
    address.validate_complete()

    lines = read_cart(db, user.id)
    check_stock(lines)
    totals = calculate_totals((line.product.price, line.quantity) for line in lines)

    session = stripe_service.create_checkout_session(
        settings,
        line_items=build_line_items(lines, totals, settings.currency),
        customer_email=user.email,
        client_reference_id=str(user.id),
        metadata=build_metadata(user, address, totals),
    )

    db.add(PendingCheckout(
        stripe_session_id=session.id,
        user_id=user.id,
        subtotal=totals.subtotal,
        tax=totals.tax,
        shipping_cost=totals.shipping_cost,
        discount=totals.discount,
        total=totals.total,
    ))
    db.commit()

    logger.info(f"Checkout session {session.id} created for user {user.id} (total {totals.total})")
    return CheckoutSessionHandle(session_id=session.id, url=session.url)
