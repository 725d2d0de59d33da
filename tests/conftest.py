import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_storefront.db")

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from storefront.config import Settings, get_settings
from storefront.database import Base, build_engine, get_db
from storefront.main import app as fastapi_app
from storefront.models import CartItem, PendingCheckout, User, new_product
from storefront.pricing import CheckoutTotals, calculate_totals, to_minor_units

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret"

TEST_SETTINGS = Settings(
    database_url="sqlite:///./test_storefront.db",
    stripe_secret_key="sk_test_123",
    stripe_webhook_secret=WEBHOOK_SECRET,
    jwt_secret=JWT_SECRET,
    finalization_max_attempts=3,
)

engine = build_engine(TEST_SETTINGS.database_url)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def settings():
    return TEST_SETTINGS


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_settings] = lambda: TEST_SETTINGS

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


def make_user(db, email="jane@example.com", first_name="Jane", last_name="Doe"):
    user = User(email=email, first_name=first_name, last_name=last_name)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def other_user(db):
    return make_user(db, email="john@example.com", first_name="John", last_name="Roe")


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(name=None, price="50.00", stock=10, **fields):
        counter["n"] += 1
        name = name or f"Product {counter['n']}"
        product = new_product(name, f"SKU-{counter['n']:04d}", price, stock, **fields)
        db.add(product)
        db.commit()
        return product

    return _make


def put_in_cart(db, user, product, quantity):
    db.add(CartItem(user_id=user.id, product_id=product.id, quantity=quantity))
    db.commit()


def auth_headers(user):
    token = jwt.encode({"sub": str(user.id)}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def sign(payload: bytes, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def totals_for(*lines):
    return calculate_totals((Decimal(price), qty) for price, qty in lines)


def completed_event(
    session_id,
    user,
    totals: CheckoutTotals,
    event_type="checkout.session.completed",
    payment_status="paid",
    amount_total=None,
    metadata_overrides=None,
):
    metadata = {
        "userId": str(user.id),
        "shippingAddress": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "postalCode": "62701",
        "country": "USA",
    }
    metadata.update(totals.as_metadata())
    metadata.update(metadata_overrides or {})
    return {
        "id": f"evt_{session_id}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": f"pi_{session_id}",
                "payment_status": payment_status,
                "client_reference_id": str(user.id),
                "amount_total": to_minor_units(totals.total) if amount_total is None else amount_total,
                "customer_details": {
                    "name": "Jane Doe",
                    "email": user.email,
                    "phone": "+15555550100",
                },
                "metadata": metadata,
            }
        },
    }


def record_pending(db, session_id, user, totals: CheckoutTotals):
    db.add(PendingCheckout(
        stripe_session_id=session_id,
        user_id=user.id,
        subtotal=totals.subtotal,
        tax=totals.tax,
        shipping_cost=totals.shipping_cost,
        discount=totals.discount,
        total=totals.total,
    ))
    db.commit()


def post_webhook(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event).encode("utf-8")
    return client.post(
        "/webhook",
        content=payload,
        headers={"stripe-signature": sign(payload, secret), "content-type": "application/json"},
    )
