from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from storefront import cart, orders
from storefront.auth import get_current_user
from storefront.checkout import ShippingAddress, create_checkout_session
from storefront.config import Settings, get_settings
from storefront.database import get_db
from storefront.exceptions import EmptyCartError
from storefront.models import User
from storefront.pricing import calculate_totals

router = APIRouter()


class CartItemRequest(BaseModel):
    product_id: int
    quantity: int = 1


class QuantityRequest(BaseModel):
    quantity: int


class StatusRequest(BaseModel):
    status: str
    tracking_number: Optional[str] = None


@router.get("/cart")
def get_cart(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        lines = cart.read_cart(db, user.id)
    except EmptyCartError:
        return {"items": [], "totals": None}
    totals = calculate_totals((line.product.price, line.quantity) for line in lines)
    return {
        "items": [line.to_dict() for line in lines],
        "totals": totals.as_metadata(),
    }


@router.post("/cart/items", status_code=201)
def add_cart_item(
    request: CartItemRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    item = cart.add_to_cart(db, user.id, request.product_id, request.quantity)
    return {"product_id": item.product_id, "quantity": item.quantity}


@router.patch("/cart/items/{product_id}")
def update_cart_item(
    product_id: int,
    request: QuantityRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    item = cart.update_cart_quantity(db, user.id, product_id, request.quantity)
    return {"product_id": item.product_id, "quantity": item.quantity}


@router.delete("/cart/items/{product_id}")
def delete_cart_item(
    product_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    cart.remove_from_cart(db, user.id, product_id)
    return {"removed": product_id}


@router.post("/checkout")
def checkout(
    request: ShippingAddress,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    handle = create_checkout_session(db, settings, user, request)
    return {"session_id": handle.session_id, "url": handle.url}


@router.get("/orders")
def get_orders(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"orders": [order.to_dict() for order in orders.list_orders(db, user.id)]}


@router.get("/orders/{order_id}")
def get_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"order": orders.get_order(db, user.id, order_id).to_dict()}


@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    request: StatusRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    order = orders.update_order_status(
        db, settings, user.id, order_id, request.status, request.tracking_number
    )
    return {"message": "Order status updated", "order": order.to_dict()}
