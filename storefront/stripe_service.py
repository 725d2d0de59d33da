import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from storefront.config import Settings
from storefront.exceptions import PaymentProviderError, SignatureVerificationError

logger = logging.getLogger(__name__)


def create_checkout_session(
    settings: Settings,
    *,
    line_items: List[Dict[str, Any]],
    customer_email: str,
    client_reference_id: str,
    metadata: Dict[str, str],
):
    """Open a hosted Stripe Checkout session and return it (has ``id`` and ``url``)."""
    try:
        return stripe.checkout.Session.create(
            api_key=settings.stripe_secret_key,
            payment_method_types=["card"],
            line_items=line_items,
            mode="payment",
            success_url=f"{settings.stripe_success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=settings.stripe_cancel_url,
            client_reference_id=client_reference_id,
            customer_email=customer_email,
            metadata=metadata,
            shipping_address_collection={
                "allowed_countries": settings.allowed_shipping_countries,
            },
        )
    except stripe.StripeError as exc:
        logger.error(f"Stripe checkout session creation failed: {exc}")
        raise PaymentProviderError(f"Could not start checkout: {exc.user_message or 'payment provider error'}")


def refund_payment(settings: Settings, payment_intent_id: str):
    try:
        return stripe.Refund.create(api_key=settings.stripe_secret_key, payment_intent=payment_intent_id)
    except stripe.StripeError as exc:
        logger.error(f"Stripe refund failed for {payment_intent_id}: {exc}")
        raise PaymentProviderError(f"Could not refund payment: {exc.user_message or 'payment provider error'}")


def verify_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> Dict[str, Any]:
    """Authenticate a webhook delivery and return the parsed event.

    The signature is checked over the raw request bytes, before any JSON
    parsing.
    """
    if not signature_header:
        raise SignatureVerificationError("Missing signature header")
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")

    try:
        raw = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(raw, signature_header, secret, tolerance)
    except UnicodeDecodeError:
        raise SignatureVerificationError("Invalid payload")
    except stripe.SignatureVerificationError:
        raise SignatureVerificationError("Invalid signature")

    try:
        event = json.loads(raw)
    except ValueError:
        raise SignatureVerificationError("Invalid payload")
    if not isinstance(event, dict) or "type" not in event:
        raise SignatureVerificationError("Invalid payload")
    return event
