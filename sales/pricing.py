from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation

from rest_framework.exceptions import ValidationError

from common.utils import to_decimal, to_money
from sales.models import Order

HUNDRED = Decimal("100")
ZERO = Decimal("0.00")


def _parse_amount(value, errors):
    """Decimal from user input; anything non-numeric raises `errors` as a validation error."""
    try:
        amount = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(errors)
    if not amount.is_finite():
        raise ValidationError(errors)
    return amount


@dataclass(frozen=True)
class CartLine:
    """One cart row; `price` is the unit price captured when the item was added to the cart."""

    product_id: object
    name: str
    price: Decimal
    quantity: int
    notes: str = ""

    @property
    def subtotal(self):
        return to_money(self.price * self.quantity)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount_type: str
    discount_value: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    amount_tendered: Decimal | None
    change_amount: Decimal


def build_cart(raw_lines):
    """Normalise and validate cart rows (`CartLine`s or mappings) into `CartLine`s."""
    if not raw_lines:
        raise ValidationError({"items": "Cart must contain at least one item."})

    lines = []
    for index, raw in enumerate(raw_lines):
        if isinstance(raw, CartLine):
            raw = asdict(raw)
        quantity = raw.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError({"items": {index: {"quantity": "Quantity must be a whole number of at least 1."}}})
        if raw.get("price") in (None, ""):
            raise ValidationError({"items": {index: {"price": "This field is required."}}})
        price = _parse_amount(raw["price"], {"items": {index: {"price": "A valid number is required."}}})
        if price < 0:
            raise ValidationError({"items": {index: {"price": "Price must not be negative."}}})
        name = (raw.get("name") or "").strip()
        if not name:
            raise ValidationError({"items": {index: {"name": "This field is required."}}})
        lines.append(
            CartLine(
                product_id=raw.get("product_id"),
                name=name,
                price=to_money(price),
                quantity=quantity,
                notes=raw.get("notes") or "",
            )
        )
    return lines


def resolve_discount(subtotal, discount_type, discount_value):
    """Turn a discount input into an absolute amount no larger than the subtotal."""
    value = _parse_amount(discount_value, {"discount_value": "A valid number is required."})
    if value < 0:
        raise ValidationError({"discount_value": "Discount must not be negative."})

    if discount_type == Order.DiscountType.PERCENT:
        if value > HUNDRED:
            raise ValidationError({"discount_value": "Percent discount must be between 0 and 100."})
        amount = subtotal * value / HUNDRED
    elif discount_type == Order.DiscountType.FIXED:
        amount = value
    else:
        raise ValidationError({"discount_type": f"Unknown discount type '{discount_type}'."})

    return min(to_money(amount), subtotal)


def compute_totals(
    lines,
    *,
    tax_rate,
    payment_method=None,
    amount_tendered=None,
    discount_type=Order.DiscountType.FIXED,
    discount_value=ZERO,
):
    subtotal = to_money(sum((line.subtotal for line in lines), ZERO))
    discount_amount = resolve_discount(subtotal, discount_type, discount_value)
    discounted = subtotal - discount_amount

    rate = to_money(tax_rate)
    total = to_money(discounted * (1 + rate / HUNDRED))
    tax_amount = total - discounted

    tendered = None
    if amount_tendered is not None:
        tendered = to_money(_parse_amount(amount_tendered, {"amount_tendered": "A valid number is required."}))
    if tendered is not None and tendered < 0:
        raise ValidationError({"amount_tendered": "Amount tendered must not be negative."})

    change_amount = ZERO
    if payment_method == Order.PaymentMethod.CASH and tendered is not None:
        change_amount = max(ZERO, tendered - total)

    return OrderTotals(
        subtotal=subtotal,
        discount_type=discount_type,
        discount_value=to_money(discount_value),
        discount_amount=discount_amount,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=total,
        amount_tendered=tendered,
        change_amount=change_amount,
    )
