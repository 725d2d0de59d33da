import logging

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.config import Settings, get_settings
from storefront.database import Base, engine, get_db
from storefront.exceptions import SignatureVerificationError, StorefrontError
from storefront.orders import finalize_checkout, is_payment_completed
from storefront.routes import router
from storefront.stripe_service import verify_event

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Checkout Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    payload = await request.body()

    try:
        event = verify_event(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret,
            settings.webhook_tolerance,
        )
    except SignatureVerificationError as exc:
        logger.warning(f"Webhook rejected: {exc.message}")
        raise

    if not is_payment_completed(event):
        logger.info(f"Ignoring webhook event {event.get('id')} of type {event['type']}")
        return {"received": True}

    result = finalize_checkout(db, settings, event)
    response = {"received": True}
    if result.order is not None:
        response["order_number"] = result.order.order_number
        response["duplicate"] = not result.created
    return response
