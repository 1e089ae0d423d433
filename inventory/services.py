import logging
from collections import defaultdict
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.exceptions import InsufficientStock, InventoryItemNotFound
from common.utils import MONEY_QUANT, to_decimal, to_money
from inventory.models import InventoryItem, InventoryLog, RecipeLink

logger = logging.getLogger(__name__)

STOCK_POLICY_REJECT = "reject"
STOCK_POLICY_ALLOW = "allow"

ITEM_LOG_LIMIT = 50
RECENT_LOG_LIMIT = 100


def _created_by(actor):
    if actor is None or not getattr(actor, "is_authenticated", False):
        return None
    return actor


def _positive_amount(value, field):
    amount = to_money(value)
    if amount <= 0:
        raise ValidationError({field: "Must be greater than zero."})
    return amount


def _non_negative_amount(value, field):
    amount = to_money(value)
    if amount < 0:
        raise ValidationError({field: "Must not be negative."})
    return amount


def _shortage(item, required):
    return {
        "inventory_item_id": str(item.id),
        "name": item.name,
        "unit": item.unit,
        "available": str(item.current_stock),
        "required": str(required),
    }


def get_inventory_item(item_id, *, for_update=False, include_archived=False):
    qs = InventoryItem.objects.all()
    if not include_archived:
        qs = qs.filter(is_active=True)
    if for_update:
        qs = qs.select_for_update()
    try:
        item = qs.filter(id=item_id).first()
    except (ValueError, DjangoValidationError):
        item = None
    if item is None:
        raise InventoryItemNotFound()
    return item


def _append_log(item, change_amount, reason, *, actor=None, notes="", reference_order_id=None):
    return InventoryLog.objects.create(
        inventory_item=item,
        change_amount=change_amount,
        reason=reason,
        reference_order_id=reference_order_id,
        notes=notes or "",
        created_by=_created_by(actor),
    )


def _apply_change(item_id, change_amount, reason, *, actor=None, notes="", allow_negative=True):
    """Lock the item, move its stock by `change_amount` and append the matching log row."""
    with transaction.atomic():
        item = get_inventory_item(item_id, for_update=True)
        if not allow_negative and item.current_stock + change_amount < 0:
            raise InsufficientStock([_shortage(item, -change_amount)])

        InventoryItem.objects.filter(id=item.id).update(
            current_stock=F("current_stock") + change_amount,
            updated_at=timezone.now(),
        )
        log = _append_log(item, change_amount, reason, actor=actor, notes=notes)
        item.refresh_from_db(fields=["current_stock", "updated_at"])

    logger.info(
        "inventory_%s",
        reason.lower(),
        extra={"inventory_item_id": str(item.id), "current_stock": item.current_stock},
    )
    return item, log


def create_inventory_item(
    *,
    name,
    unit=InventoryItem.Unit.PIECE,
    current_stock=Decimal("0"),
    low_stock_threshold=Decimal("10"),
    cost_per_unit=Decimal("0"),
    actor=None,
):
    if unit not in InventoryItem.Unit.values:
        raise ValidationError({"unit": f"Unknown unit '{unit}'."})
    opening = _non_negative_amount(current_stock, "current_stock")

    with transaction.atomic():
        item = InventoryItem.objects.create(
            name=name,
            unit=unit,
            current_stock=opening,
            low_stock_threshold=_non_negative_amount(low_stock_threshold, "low_stock_threshold"),
            cost_per_unit=_non_negative_amount(cost_per_unit, "cost_per_unit"),
        )
        if opening > 0:
            _append_log(item, opening, InventoryLog.Reason.INITIAL, actor=actor, notes="Initial stock")
    return item


def restock(item_id, delta, *, notes="", actor=None):
    amount = _positive_amount(delta, "amount")
    return _apply_change(item_id, amount, InventoryLog.Reason.RESTOCK, actor=actor, notes=notes)


def adjust_stock(item_id, *, new_stock=None, delta=None, notes="", actor=None):
    """Absolute (`new_stock`) or relative (`delta`) correction, logged as new minus old.

    Returns `(item, log)`; `log` is None when the stock did not change.
    """
    if (new_stock is None) == (delta is None):
        raise ValidationError({"non_field_errors": ["Provide exactly one of new_stock or delta."]})

    with transaction.atomic():
        item = get_inventory_item(item_id, for_update=True)
        old_stock = item.current_stock
        if new_stock is not None:
            target = _non_negative_amount(new_stock, "new_stock")
        else:
            step = to_money(delta)
            target = old_stock + step
            # Stock already below zero may still be corrected upwards.
            if step < 0 and target < 0:
                raise ValidationError({"delta": "Adjustment would make stock negative."})

        change = (target - old_stock).quantize(MONEY_QUANT)
        if change == 0:
            return item, None

        InventoryItem.objects.filter(id=item.id).update(
            current_stock=F("current_stock") + change,
            updated_at=timezone.now(),
        )
        log = _append_log(item, change, InventoryLog.Reason.ADJUSTMENT, actor=actor, notes=notes)
        item.refresh_from_db(fields=["current_stock", "updated_at"])

    logger.info(
        "inventory_adjustment",
        extra={"inventory_item_id": str(item.id), "current_stock": item.current_stock},
    )
    return item, log


def record_waste(item_id, amount, *, notes="", actor=None):
    wasted = _positive_amount(amount, "amount")
    return _apply_change(
        item_id,
        -wasted,
        InventoryLog.Reason.WASTE,
        actor=actor,
        notes=notes,
        allow_negative=False,
    )


def set_low_stock_threshold(item_id, threshold):
    item = get_inventory_item(item_id)
    item.low_stock_threshold = _non_negative_amount(threshold, "low_stock_threshold")
    item.save(update_fields=["low_stock_threshold", "updated_at"])
    return item


def update_inventory_item(item_id, **fields):
    """Update descriptive fields. Stock only moves through the ledger operations above."""
    allowed = {"name", "unit", "cost_per_unit", "low_stock_threshold"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError({field: "This field cannot be updated here." for field in sorted(unknown)})

    item = get_inventory_item(item_id)
    if "unit" in fields and fields["unit"] not in InventoryItem.Unit.values:
        raise ValidationError({"unit": f"Unknown unit '{fields['unit']}'."})
    for money_field in ("cost_per_unit", "low_stock_threshold"):
        if money_field in fields:
            fields[money_field] = _non_negative_amount(fields[money_field], money_field)

    for key, value in fields.items():
        setattr(item, key, value)
    item.save(update_fields=[*fields.keys(), "updated_at"])
    return item


def delete_inventory_item(item_id, *, actor=None):
    """Archive the item. Its logs keep a valid reference; its recipe links are removed."""
    with transaction.atomic():
        item = get_inventory_item(item_id, for_update=True)
        RecipeLink.objects.filter(inventory_item=item).delete()
        item.is_active = False
        item.archived_at = timezone.now()
        item.save(update_fields=["is_active", "archived_at", "updated_at"])

    logger.info(
        "inventory_archived",
        extra={"inventory_item_id": str(item.id), "user_id": str(actor.id) if _created_by(actor) else None},
    )
    return item


def recipe_map_for_products(product_ids):
    recipe = defaultdict(list)
    links = RecipeLink.objects.filter(product_id__in=set(product_ids)).select_related("inventory_item")
    for link in links:
        recipe[link.product_id].append(link)
    return dict(recipe)


def set_recipe(product, components):
    """Replace a product's recipe with `[(inventory_item, quantity_used), ...]`."""
    with transaction.atomic():
        RecipeLink.objects.filter(product=product).delete()
        links = []
        for inventory_item, quantity_used in components:
            quantity = to_decimal(quantity_used)
            if quantity <= 0:
                raise ValidationError({"quantity_used": "Must be greater than zero."})
            links.append(RecipeLink(product=product, inventory_item=inventory_item, quantity_used=quantity))
        RecipeLink.objects.bulk_create(links)
        if product.track_inventory != bool(links):
            product.track_inventory = bool(links)
            product.save(update_fields=["track_inventory", "updated_at"])
    return links


def deduct_for_order(order, lines, *, actor=None, policy=None):
    """Deduct recipe ingredients for `lines` (`(product_id, quantity)` pairs) of `order`.

    Must run inside the caller's transaction. Touched items are locked in id order,
    the negative-stock policy is applied, and one SALE log is written per line and
    ingredient. Products without a recipe are skipped.
    """
    policy = policy or settings.INVENTORY_NEGATIVE_STOCK_POLICY

    lines = [(product_id, quantity) for product_id, quantity in lines if product_id is not None]
    recipe = recipe_map_for_products(product_id for product_id, _ in lines)

    requirements = []
    for product_id, quantity in lines:
        for link in recipe.get(product_id, []):
            amount = to_money(to_decimal(link.quantity_used) * quantity)
            if amount > 0:
                requirements.append((link.inventory_item_id, amount))
            else:
                # Stock is tracked to 2 dp; smaller per-line usage is not deducted.
                logger.warning(
                    "recipe_quantity_rounded_to_zero",
                    extra={
                        "order_number": order.order_number,
                        "inventory_item_id": str(link.inventory_item_id),
                        "product_id": str(product_id),
                        "quantity_used": str(link.quantity_used),
                    },
                )

    if not requirements:
        return []

    item_ids = sorted({item_id for item_id, _ in requirements}, key=str)
    items = {item.id: item for item in InventoryItem.objects.select_for_update().filter(id__in=item_ids).order_by("id")}

    totals = defaultdict(Decimal)
    for item_id, amount in requirements:
        totals[item_id] += amount

    shortages = [_shortage(items[item_id], total) for item_id, total in totals.items() if items[item_id].current_stock < total]
    if shortages:
        if policy == STOCK_POLICY_REJECT:
            logger.warning(
                "order_rejected_insufficient_stock",
                extra={"order_number": order.order_number, "order_id": str(order.id)},
            )
            raise InsufficientStock(shortages)
        for shortage in shortages:
            logger.warning(
                "inventory_negative_stock",
                extra={
                    "order_number": order.order_number,
                    "inventory_item_id": shortage["inventory_item_id"],
                    "current_stock": Decimal(shortage["available"]) - Decimal(shortage["required"]),
                },
            )

    now = timezone.now()
    for item_id, total in totals.items():
        InventoryItem.objects.filter(id=item_id).update(current_stock=F("current_stock") - total, updated_at=now)

    created_by = _created_by(actor)
    logs = [
        InventoryLog(
            inventory_item_id=item_id,
            change_amount=-amount,
            reason=InventoryLog.Reason.SALE,
            reference_order_id=order.id,
            notes=f"Order {order.order_number}",
            created_by=created_by,
        )
        for item_id, amount in requirements
    ]
    return InventoryLog.objects.bulk_create(logs)


def restock_for_cancelled_order(order, *, actor=None):
    """Put back what the order's SALE logs took out. Must run inside the caller's transaction."""
    sold = (
        InventoryLog.objects.filter(reference_order_id=order.id, reason=InventoryLog.Reason.SALE)
        .values("inventory_item_id")
        .annotate(total=Sum("change_amount"))
        .order_by("inventory_item_id")
    )
    returned = {row["inventory_item_id"]: -to_money(row["total"]) for row in sold if row["total"]}
    if not returned:
        return []

    list(InventoryItem.objects.select_for_update().filter(id__in=returned.keys()).order_by("id"))
    now = timezone.now()
    created_by = _created_by(actor)
    logs = []
    for item_id, amount in returned.items():
        InventoryItem.objects.filter(id=item_id).update(current_stock=F("current_stock") + amount, updated_at=now)
        logs.append(
            InventoryLog(
                inventory_item_id=item_id,
                change_amount=amount,
                reason=InventoryLog.Reason.RESTOCK,
                reference_order_id=order.id,
                notes=f"Order {order.order_number} cancelled",
                created_by=created_by,
            )
        )
    return InventoryLog.objects.bulk_create(logs)


def list_inventory_items(*, include_archived=False):
    qs = InventoryItem.objects.all()
    if not include_archived:
        qs = qs.filter(is_active=True)
    return qs.order_by("name")


def low_stock_items():
    return list_inventory_items().filter(current_stock__lte=F("low_stock_threshold"))


def inventory_logs(item_id=None):
    qs = InventoryLog.objects.select_related("inventory_item", "created_by").order_by("-created_at")
    if item_id is not None:
        get_inventory_item(item_id, include_archived=True)
        return list(qs.filter(inventory_item_id=item_id)[:ITEM_LOG_LIMIT])
    return list(qs[:RECENT_LOG_LIMIT])


def ledger_discrepancies():
    """Items whose stock differs from the sum of their log rows."""
    totals = {
        row["inventory_item_id"]: row["total"]
        for row in InventoryLog.objects.values("inventory_item_id").annotate(total=Sum("change_amount")).order_by()
    }

    rows = []
    for item in InventoryItem.objects.order_by("name"):
        ledger_total = to_money(totals.get(item.id) or 0)
        current = to_money(item.current_stock)
        if ledger_total != current:
            rows.append(
                {
                    "inventory_item_id": str(item.id),
                    "name": item.name,
                    "current_stock": current,
                    "ledger_total": ledger_total,
                    "difference": current - ledger_total,
                }
            )
    return rows
