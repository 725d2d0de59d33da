import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from storefront.exceptions import EmptyCartError, InsufficientStockError, NotFoundError, ValidationError
from storefront.models import CartItem, Product, ProductStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductSnapshot:
    id: int
    name: str
    sku: str
    price: Decimal
    stock: int
    image_url: Optional[str]
    short_description: Optional[str]
    status: ProductStatus

    @classmethod
    def of(cls, product: Product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            name=product.name,
            sku=product.sku,
            price=Decimal(product.price),
            stock=product.stock,
            image_url=product.image_url,
            short_description=product.short_description,
            status=product.status,
        )

    @property
    def is_active(self):
        return self.status == ProductStatus.ACTIVE


@dataclass(frozen=True)
class CartLine:
    cart_item_id: int
    quantity: int
    product: ProductSnapshot

    @property
    def line_total(self) -> Decimal:
        return self.product.price * self.quantity

    def to_dict(self):
        return {
            "product_id": self.product.id,
            "name": self.product.name,
            "sku": self.product.sku,
            "price": f"{self.product.price:.2f}",
            "quantity": self.quantity,
            "stock": self.product.stock,
            "image_url": self.product.image_url,
            "line_total": f"{self.line_total:.2f}",
        }


def read_cart(db: Session, user_id: int) -> List[CartLine]:
    """Return the user's cart joined with live product data, oldest line first.

    Raises EmptyCartError when the user has nothing in the cart.
    """
    rows = (
        db.query(CartItem, Product)
        .join(Product, CartItem.product_id == Product.id)
        .filter(CartItem.user_id == user_id)
        .order_by(CartItem.id)
        .all()
    )
    if not rows:
        raise EmptyCartError()
    return [CartLine(item.id, item.quantity, ProductSnapshot.of(product)) for item, product in rows]


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer")
    return quantity


def _active_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    if not product.is_active:
        raise ValidationError(f"{product.name} is no longer available")
    return product


def _check_stock(product: Product, quantity: int):
    if quantity > product.stock:
        raise InsufficientStockError(
            product.name, requested=quantity, available=product.stock, product_id=product.id
        )


def add_to_cart(db: Session, user_id: int, product_id: int, quantity: int = 1) -> CartItem:
    quantity = _validate_quantity(quantity)
    product = _active_product(db, product_id)

    item = db.query(CartItem).filter_by(user_id=user_id, product_id=product.id).first()
    _check_stock(product, quantity + (item.quantity if item else 0))
    if item:
        item.quantity += quantity
    else:
        item = CartItem(user_id=user_id, product_id=product.id, quantity=quantity)
        db.add(item)
    db.commit()
    db.refresh(item)
    return item


def update_cart_quantity(db: Session, user_id: int, product_id: int, quantity: int) -> CartItem:
    quantity = _validate_quantity(quantity)
    item = db.query(CartItem).filter_by(user_id=user_id, product_id=product_id).first()
    if item is None:
        raise NotFoundError("Cart item not found")
    _check_stock(item.product, quantity)
    item.quantity = quantity
    db.commit()
    db.refresh(item)
    return item


def remove_from_cart(db: Session, user_id: int, product_id: int) -> None:
    deleted = db.query(CartItem).filter_by(user_id=user_id, product_id=product_id).delete()
    if not deleted:
        raise NotFoundError("Cart item not found")
    db.commit()


def clear_cart(db: Session, user_id: int, item_ids: Optional[List[int]] = None) -> int:
    """Delete the user's cart lines without committing; only ``item_ids`` when given."""
    query = db.query(CartItem).filter(CartItem.user_id == user_id)
    if item_ids is not None:
        query = query.filter(CartItem.id.in_(item_ids))
    count = query.delete(synchronize_session="fetch")
    logger.debug(f"Cleared {count} cart lines for user {user_id}")
    return count
