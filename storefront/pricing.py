"""Checkout totals.

Money is handled as ``Decimal`` quantized to cents. The rules are fixed:
10% tax on the subtotal, and a flat 10.00 shipping fee that is waived only
when the subtotal is strictly greater than 100.00.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Tuple

CENT = Decimal("0.01")
TAX_RATE = Decimal("0.10")
SHIPPING_FEE = Decimal("10.00")
FREE_SHIPPING_THRESHOLD = Decimal("100.00")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CheckoutTotals:
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal
    discount: Decimal = Decimal("0.00")

    def is_consistent(self) -> bool:
        return self.total == self.subtotal + self.tax + self.shipping_cost - self.discount

    def as_metadata(self) -> Dict[str, str]:
        # Stripe metadata values must be strings
        return {
            "subtotal": f"{self.subtotal:.2f}",
            "tax": f"{self.tax:.2f}",
            "shippingCost": f"{self.shipping_cost:.2f}",
            "discount": f"{self.discount:.2f}",
            "total": f"{self.total:.2f}",
        }

    @classmethod
    def from_metadata(cls, metadata: Dict[str, str]) -> "CheckoutTotals":
        """Parse totals written by ``as_metadata``; raises KeyError/ArithmeticError when malformed."""
        return cls(
            subtotal=to_money(metadata["subtotal"]),
            tax=to_money(metadata["tax"]),
            shipping_cost=to_money(metadata["shippingCost"]),
            discount=to_money(metadata.get("discount") or "0"),
            total=to_money(metadata["total"]),
        )


def calculate_totals(lines: Iterable[Tuple[Decimal, int]]) -> CheckoutTotals:
    """Compute totals from ``(unit_price, quantity)`` pairs."""
    subtotal = to_money(sum((to_money(price) * qty for price, qty in lines), Decimal("0")))
    tax = to_money(subtotal * TAX_RATE)
    shipping_cost = Decimal("0.00") if subtotal > FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
    total = subtotal + tax + shipping_cost
    return CheckoutTotals(subtotal=subtotal, tax=tax, shipping_cost=shipping_cost, total=total)
