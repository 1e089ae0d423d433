import secrets
from decimal import Decimal, ROUND_HALF_UP

from django.utils import timezone

MONEY_QUANT = Decimal("0.01")


def to_decimal(value):
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def to_money(value):
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def generate_order_number(now=None):
    """Date-prefixed, human-readable order number, e.g. ORD-20261019-0427.

    Uniqueness comes from the random suffix only; callers retry on conflict.
    """
    now = timezone.localtime(now or timezone.now())
    return f"ORD-{now:%Y%m%d}-{secrets.randbelow(10000):04d}"


def generate_receipt_token():
    return secrets.token_urlsafe(24)
