import dataclasses
import logging
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.audit import create_audit_log
from common.exceptions import OrderNotFound
from common.utils import generate_order_number, generate_receipt_token
from core.services import load_store_settings_snapshot
from inventory.models import Product
from inventory.services import deduct_for_order, restock_for_cancelled_order
from sales.models import Order, OrderItem
from sales.pricing import build_cart, compute_totals
from sales.transitions import ACTIVE_STATUSES, validate_transition

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


def _require_choice(value, choices, field):
    if value not in choices.values:
        raise ValidationError({field: f"'{value}' is not a valid choice."})
    return value


def _resolve_products(lines):
    """Normalise product ids to UUIDs and reject ids that are not in the catalog."""
    resolved = []
    for index, line in enumerate(lines):
        if line.product_id in (None, ""):
            resolved.append(dataclasses.replace(line, product_id=None))
            continue
        try:
            product_id = uuid.UUID(str(line.product_id))
        except ValueError:
            raise ValidationError({"items": {index: {"product_id": "Must be a valid UUID."}}})
        resolved.append(dataclasses.replace(line, product_id=product_id))

    wanted = {line.product_id for line in resolved if line.product_id is not None}
    known = set(Product.objects.filter(id__in=wanted).values_list("id", flat=True))
    missing = wanted - known
    if missing:
        raise ValidationError({"items": {"product_id": [f"Unknown product {product_id}." for product_id in sorted(missing, key=str)]}})
    return resolved


def _insert_order(**fields):
    """Create the order row, retrying on an order number collision inside a savepoint."""
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order_number = generate_order_number()
        try:
            with transaction.atomic():
                return Order.objects.create(
                    order_number=order_number,
                    receipt_token=generate_receipt_token(),
                    **fields,
                )
        except IntegrityError:
            logger.warning("order_number_collision", extra={"order_number": order_number})
            if attempt == ORDER_NUMBER_ATTEMPTS:
                raise


def _order_snapshot(order):
    return {
        "order_number": order.order_number,
        "status": order.status,
        "type": order.type,
        "subtotal": order.subtotal,
        "discount_amount": order.discount_amount,
        "tax_amount": order.tax_amount,
        "total": order.total,
        "payment_method": order.payment_method,
    }


def create_order(
    cart,
    order_type,
    payment_method,
    store_settings=None,
    *,
    customer=None,
    amount_tendered=None,
    discount=None,
    notes="",
    table_number="",
    cashier=None,
    stock_policy=None,
    request_id=None,
):
    """Price the cart, persist the order and its lines, and deduct recipe stock atomically.

    `store_settings` is a `StoreSettingsSnapshot`; its effective tax rate is copied
    onto the order. `discount` is `{"type": "PERCENT"|"FIXED", "value": ...}`.
    Returns `(order, receipt_token)`. Nothing is written when any step fails.
    """
    _require_choice(order_type, Order.Type, "type")
    _require_choice(payment_method, Order.PaymentMethod, "payment_method")
    store_settings = store_settings or load_store_settings_snapshot()
    customer = customer or {}
    discount = discount or {}
    discount_type = discount.get("type") or Order.DiscountType.FIXED

    lines = _resolve_products(build_cart(cart))
    totals = compute_totals(
        lines,
        tax_rate=store_settings.effective_tax_rate,
        payment_method=payment_method,
        amount_tendered=amount_tendered,
        discount_type=discount_type,
        discount_value=discount.get("value") or 0,
    )

    with transaction.atomic():
        order = _insert_order(
            type=order_type,
            status=Order.Status.PENDING,
            table_number=table_number or "",
            customer_name=customer.get("name") or "",
            customer_email=customer.get("email") or "",
            subtotal=totals.subtotal,
            tax_rate=totals.tax_rate,
            tax_amount=totals.tax_amount,
            discount_amount=totals.discount_amount,
            discount_type=totals.discount_type,
            discount_value=totals.discount_value,
            total=totals.total,
            payment_method=payment_method,
            amount_tendered=totals.amount_tendered,
            change_amount=totals.change_amount,
            notes=notes or "",
            cashier=cashier if getattr(cashier, "is_authenticated", False) else None,
            completed_at=None,
        )
        OrderItem.objects.bulk_create(
            [
                OrderItem(
                    order=order,
                    product_id=line.product_id,
                    product_name=line.name,
                    product_price=line.price,
                    quantity=line.quantity,
                    subtotal=line.subtotal,
                    notes=line.notes,
                    position=index,
                )
                for index, line in enumerate(lines)
            ]
        )
        deduct_for_order(
            order,
            [(line.product_id, line.quantity) for line in lines],
            actor=cashier,
            policy=stock_policy,
        )
        create_audit_log(
            actor=cashier,
            action="order.create",
            entity="order",
            entity_id=order.id,
            after_snapshot=_order_snapshot(order),
            request_id=request_id,
        )

    logger.info(
        "order_created",
        extra={"order_id": str(order.id), "order_number": order.order_number, "to_status": order.status},
    )
    return order, order.receipt_token


def apply_cancellation_stock_policy(order, *, actor=None, restock=None):
    """Stock side effect of cancelling `order`; returns the compensating logs written.

    Off unless `restock` (or the ORDER_CANCELLATION_RESTOCKS setting) is true.
    """
    if restock is None:
        restock = settings.ORDER_CANCELLATION_RESTOCKS
    if not restock:
        return []
    return restock_for_cancelled_order(order, actor=actor)


def _order_queryset():
    return Order.objects.select_related("cashier").prefetch_related("items")


def get_order(order_id, *, for_update=False):
    qs = Order.objects.select_for_update() if for_update else _order_queryset()
    try:
        order = qs.filter(id=order_id).first()
    except (ValueError, DjangoValidationError):
        order = None
    if order is None:
        raise OrderNotFound()
    return order


def update_order_status(order_id, new_status, *, actor=None, request_id=None):
    with transaction.atomic():
        order = get_order(order_id, for_update=True)
        previous = order.status
        validate_transition(previous, new_status)

        order.status = new_status
        if new_status == Order.Status.COMPLETED:
            order.completed_at = timezone.now()
        elif previous == Order.Status.COMPLETED:
            order.completed_at = None
        order.save(update_fields=["status", "completed_at", "updated_at"])

        if new_status == Order.Status.CANCELLED:
            apply_cancellation_stock_policy(order, actor=actor)

        create_audit_log(
            actor=actor,
            action="order.status",
            entity="order",
            entity_id=order.id,
            before_snapshot={"status": previous},
            after_snapshot={"status": new_status, "completed_at": order.completed_at},
            request_id=request_id,
        )

    logger.info(
        "order_status_changed",
        extra={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "from_status": previous,
            "to_status": new_status,
        },
    )
    return get_order(order.id)


def get_order_by_token(token):
    """Public receipt lookup. Unknown or blank tokens return None."""
    if not token:
        return None
    return _order_queryset().filter(receipt_token=token).first()


def list_orders(status=None):
    qs = _order_queryset().order_by("-created_at")
    if status:
        _require_choice(status, Order.Status, "status")
        qs = qs.filter(status=status)
    return qs


def active_orders(limit=None):
    limit = limit or settings.KITCHEN_ORDER_LIMIT
    return list(_order_queryset().filter(status__in=ACTIVE_STATUSES).order_by("-created_at")[:limit])
