import calendar
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal

from django.db.models import Count, Q, Sum
from django.db.models.functions import Coalesce, TruncDate, TruncHour, TruncMonth
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.utils import to_money
from core.services import load_store_settings_snapshot
from inventory.services import low_stock_items
from sales.models import Order, OrderItem

RANGES = ("today", "7d", "30d", "month", "year", "all", "custom")
TOP_LIMIT = 8
LOW_STOCK_LIMIT = 10
WIDE_RANGE_DAYS = 90
ZERO = Decimal("0.00")

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class DateWindow:
    start: datetime
    end: datetime

    @property
    def span_days(self):
        return (self.end - self.start).total_seconds() / 86400


def _money_sum(field):
    return Coalesce(Sum(field), ZERO)


def _parse_month(value, field):
    match = _MONTH_RE.match(value or "")
    if not match:
        raise ValidationError({field: "Use the YYYY-MM format."})
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError({field: "Month must be between 01 and 12."})
    return year, month


def _midnight(day, tz):
    return datetime.combine(day, time.min, tzinfo=tz)


def resolve_window(range_name, date_from=None, date_to=None, now=None, tz=None):
    """Resolve a dashboard range to a local-time window. `all` resolves to None."""
    tz = tz or timezone.get_current_timezone()
    now = timezone.localtime(now or timezone.now(), tz)
    today = now.date()

    if range_name == "all":
        return None
    if range_name == "today":
        return DateWindow(_midnight(today, tz), now)
    if range_name == "7d":
        return DateWindow(_midnight(today - timedelta(days=6), tz), now)
    if range_name == "30d":
        return DateWindow(_midnight(today - timedelta(days=29), tz), now)
    if range_name == "month":
        return DateWindow(_midnight(today.replace(day=1), tz), now)
    if range_name == "year":
        return DateWindow(_midnight(today.replace(month=1, day=1), tz), now)
    if range_name == "custom":
        from_year, from_month = _parse_month(date_from, "from")
        start = _midnight(datetime(from_year, from_month, 1).date(), tz)
        if date_to:
            to_year, to_month = _parse_month(date_to, "to")
            last_day = calendar.monthrange(to_year, to_month)[1]
            end = datetime.combine(datetime(to_year, to_month, last_day).date(), time.max, tzinfo=tz)
        else:
            end = now
        if end < start:
            raise ValidationError({"to": "End month must not be before the start month."})
        return DateWindow(start, end)

    raise ValidationError({"range": f"Unknown range '{range_name}'. Use one of: {', '.join(RANGES)}."})


def _granularity(range_name, window):
    if range_name == "today":
        return "hour"
    if window is None or window.span_days > WIDE_RANGE_DAYS:
        return "month"
    return "day"


def _period_expression(granularity, tz):
    if granularity == "hour":
        return TruncHour("created_at", tzinfo=tz)
    if granularity == "month":
        return TruncMonth("created_at", tzinfo=tz)
    return TruncDate("created_at", tzinfo=tz)


def _window_filter(window, prefix=""):
    if window is None:
        return Q()
    return Q(**{f"{prefix}created_at__gte": window.start, f"{prefix}created_at__lte": window.end})


def get_dashboard_stats(range_name="today", date_from=None, date_to=None, now=None, store_settings=None, tz=None):
    """Aggregate KPIs for the dashboard.

    Revenue figures, the time series, top items and categories count COMPLETED
    orders only. The payment breakdown counts every order that is not CANCELLED,
    so in-flight orders show up in the payment mix before they count as revenue.
    """
    tz = tz or timezone.get_current_timezone()
    store_settings = store_settings or load_store_settings_snapshot()
    window = resolve_window(range_name, date_from, date_to, now=now, tz=tz)
    granularity = _granularity(range_name, window)

    in_window = Order.objects.filter(_window_filter(window))
    completed = in_window.filter(status=Order.Status.COMPLETED)
    not_cancelled = in_window.exclude(status=Order.Status.CANCELLED)

    summary = completed.aggregate(
        revenue=_money_sum("total"),
        gross_sales=_money_sum("subtotal"),
        order_count=Count("id"),
        total_discounts=_money_sum("discount_amount"),
        orders_with_discount=Count("id", filter=Q(discount_amount__gt=0)),
        total_tax=_money_sum("tax_amount"),
    )
    # SQLite sums decimals as floats; every money figure is quantized before it leaves here.
    for key in ("revenue", "gross_sales", "total_discounts", "total_tax"):
        summary[key] = to_money(summary[key])
    order_count = summary["order_count"]
    avg_order_value = to_money(summary["revenue"] / order_count) if order_count else ZERO

    period_rows = (
        completed.annotate(period=_period_expression(granularity, tz))
        .values("period")
        .annotate(revenue=_money_sum("total"), order_count=Count("id"))
        .order_by("period")
    )

    completed_items = OrderItem.objects.filter(_window_filter(window, "order__"), order__status=Order.Status.COMPLETED)
    top_items = (
        completed_items.values("product_name")
        .annotate(count=Sum("quantity"), revenue=_money_sum("subtotal"))
        .order_by("-revenue", "product_name")[:TOP_LIMIT]
    )
    category_rows = (
        completed_items.filter(product__category__isnull=False)
        .values("product__category__name")
        .annotate(count=Sum("quantity"), revenue=_money_sum("subtotal"))
        .order_by("-revenue", "product__category__name")[:TOP_LIMIT]
    )

    payments = {}
    for row in not_cancelled.values("payment_method").annotate(count=Count("id"), revenue=_money_sum("total")).order_by():
        method = row["payment_method"] or Order.PaymentMethod.OTHER
        entry = payments.setdefault(method, {"method": method, "count": 0, "revenue": ZERO})
        entry["count"] += row["count"]
        entry["revenue"] += to_money(row["revenue"])

    order_types = (
        completed.values("type").annotate(count=Count("id"), revenue=_money_sum("total")).order_by("-revenue", "type")
    )

    low_stock = low_stock_items()

    return {
        "range": range_name,
        "window": {
            "start": window.start if window else None,
            "end": window.end if window else None,
        },
        "currency_symbol": store_settings.currency_symbol,
        "revenue": summary["revenue"],
        "gross_sales": summary["gross_sales"],
        "order_count": order_count,
        "avg_order_value": avg_order_value,
        "total_discounts": summary["total_discounts"],
        "orders_with_discount": summary["orders_with_discount"],
        "total_tax": summary["total_tax"],
        "granularity": granularity,
        "is_hourly": granularity == "hour",
        "is_monthly": granularity == "month",
        "revenue_by_period": [
            {"period": row["period"].isoformat(), "revenue": to_money(row["revenue"]), "order_count": row["order_count"]}
            for row in period_rows
        ],
        "top_items": [
            {"name": row["product_name"], "count": row["count"], "revenue": to_money(row["revenue"])} for row in top_items
        ],
        "category_revenue": [
            {"name": row["product__category__name"], "count": row["count"], "revenue": to_money(row["revenue"])}
            for row in category_rows
        ],
        "payment_breakdown": sorted(payments.values(), key=lambda entry: entry["method"]),
        "order_type_breakdown": [
            {"type": row["type"], "count": row["count"], "revenue": to_money(row["revenue"])} for row in order_types
        ],
        "low_stock": {
            "count": low_stock.count(),
            "items": [
                {
                    "id": item.id,
                    "name": item.name,
                    "unit": item.unit,
                    "current_stock": item.current_stock,
                    "low_stock_threshold": item.low_stock_threshold,
                }
                for item in low_stock.order_by("current_stock", "name")[:LOW_STOCK_LIMIT]
            ],
        },
    }
