from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch
from zoneinfo import ZoneInfo

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from common.exceptions import InsufficientStock, InvalidStatusTransition, OrderNotFound
from core.models import AuditLog, StoreSettings, StoreSettingsSnapshot, User
from inventory import services as inventory_services
from inventory.models import Category, InventoryItem, InventoryLog, Product
from sales import services
from sales.dashboard import get_dashboard_stats, resolve_window
from sales.kitchen import (
    KitchenDisplaySession,
    KitchenLine,
    KitchenOrder,
    elapsed_label,
    project_kitchen_board,
)
from sales.models import Order, OrderItem
from sales.pricing import CartLine, build_cart, compute_totals
from sales.transitions import allowed_next_statuses

TAXED = StoreSettingsSnapshot(tax_rate=Decimal("12"), tax_enabled=True)
UNTAXED = StoreSettingsSnapshot(tax_rate=Decimal("12"), tax_enabled=False)


class CafeFixtureMixin:
    def setUp(self):
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="cashier", password="pass1234", role=User.Role.CASHIER)
        self.kitchen_user = self.user_model.objects.create_user(username="kitchen", password="pass1234", role=User.Role.KITCHEN)
        self.manager = self.user_model.objects.create_user(username="manager", password="pass1234", role=User.Role.MANAGER)

        self.coffee = Category.objects.create(name="Coffee")
        self.beans = inventory_services.create_inventory_item(
            name="Espresso beans", unit=InventoryItem.Unit.GRAM, current_stock=Decimal("1000"), low_stock_threshold=Decimal("100")
        )
        self.milk = inventory_services.create_inventory_item(
            name="Milk", unit=InventoryItem.Unit.MILLILITER, current_stock=Decimal("5000"), low_stock_threshold=Decimal("500")
        )
        self.latte = Product.objects.create(name="Latte", price=Decimal("120"), category=self.coffee)
        self.cake = Product.objects.create(name="Carrot cake", price=Decimal("85"))
        inventory_services.set_recipe(self.latte, [(self.beans, Decimal("18")), (self.milk, Decimal("200"))])

    def line(self, product, quantity=1, **extra):
        return {"product_id": product.id, "name": product.name, "price": product.price, "quantity": quantity, **extra}

    def place(self, cart=None, payment_method=Order.PaymentMethod.CASH, store=TAXED, **kwargs):
        cart = cart or [self.line(self.latte, 2), self.line(self.cake)]
        kwargs.setdefault("cashier", self.cashier)
        order, _ = services.create_order(cart, Order.Type.DINE_IN, payment_method, store, **kwargs)
        return order

    def advance(self, order, *statuses):
        for next_status in statuses:
            order = services.update_order_status(order.id, next_status, actor=self.kitchen_user)
        return order


class PricingTests(TestCase):
    def setUp(self):
        self.cart = build_cart(
            [
                {"product_id": None, "name": "Latte", "price": "120", "quantity": 2},
                {"product_id": None, "name": "Carrot cake", "price": "85", "quantity": 1},
            ]
        )

    def test_percent_discount_with_tax(self):
        totals = compute_totals(
            self.cart,
            tax_rate=Decimal("12"),
            discount_type=Order.DiscountType.PERCENT,
            discount_value=Decimal("10"),
        )

        self.assertEqual(totals.subtotal, Decimal("325.00"))
        self.assertEqual(totals.discount_amount, Decimal("32.50"))
        self.assertEqual(totals.tax_amount, Decimal("35.10"))
        self.assertEqual(totals.total, Decimal("327.60"))

    def test_fixed_discount_is_clamped_to_subtotal(self):
        totals = compute_totals(self.cart, tax_rate=Decimal("12"), discount_type=Order.DiscountType.FIXED, discount_value=Decimal("500"))

        self.assertEqual(totals.discount_amount, Decimal("325.00"))
        self.assertEqual(totals.tax_amount, Decimal("0.00"))
        self.assertEqual(totals.total, Decimal("0.00"))

    def test_percent_discount_above_hundred_is_rejected(self):
        with self.assertRaises(ValidationError):
            compute_totals(self.cart, tax_rate=Decimal("0"), discount_type=Order.DiscountType.PERCENT, discount_value=Decimal("101"))

    def test_change_only_for_cash(self):
        cash = compute_totals(self.cart, tax_rate=Decimal("0"), payment_method=Order.PaymentMethod.CASH, amount_tendered=Decimal("400"))
        card = compute_totals(self.cart, tax_rate=Decimal("0"), payment_method=Order.PaymentMethod.CARD, amount_tendered=Decimal("400"))
        short = compute_totals(self.cart, tax_rate=Decimal("0"), payment_method=Order.PaymentMethod.CASH, amount_tendered=Decimal("300"))

        self.assertEqual(cash.change_amount, Decimal("75.00"))
        self.assertEqual(card.change_amount, Decimal("0.00"))
        self.assertEqual(short.change_amount, Decimal("0.00"))

    def test_half_cent_rounds_up(self):
        cart = build_cart([CartLine(product_id=None, name="Tea", price=Decimal("0.05"), quantity=1)])

        totals = compute_totals(cart, tax_rate=Decimal("10"))

        self.assertEqual(totals.total, Decimal("0.06"))

    def test_cart_validation(self):
        with self.assertRaises(ValidationError):
            build_cart([])
        with self.assertRaises(ValidationError):
            build_cart([{"name": "Latte", "price": "120", "quantity": 0}])
        with self.assertRaises(ValidationError):
            build_cart([{"name": "Latte", "price": "-1", "quantity": 1}])
        with self.assertRaises(ValidationError):
            build_cart([{"name": " ", "price": "1", "quantity": 1}])

    def test_missing_price_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            build_cart([{"name": "Latte", "quantity": 2}])

        self.assertEqual(str(ctx.exception.detail["items"][0]["price"]), "This field is required.")

    def test_non_numeric_amounts_are_validation_errors(self):
        with self.assertRaises(ValidationError) as ctx:
            build_cart([{"name": "Latte", "price": "abc", "quantity": 1}])
        self.assertIn("price", ctx.exception.detail["items"][0])

        with self.assertRaises(ValidationError):
            build_cart([{"name": "Latte", "price": "NaN", "quantity": 1}])

        with self.assertRaises(ValidationError) as ctx:
            compute_totals(self.cart, tax_rate=Decimal("0"), discount_type=Order.DiscountType.FIXED, discount_value="ten")
        self.assertIn("discount_value", ctx.exception.detail)

        with self.assertRaises(ValidationError) as ctx:
            compute_totals(self.cart, tax_rate=Decimal("0"), payment_method=Order.PaymentMethod.CASH, amount_tendered="lots")
        self.assertIn("amount_tendered", ctx.exception.detail)


class OrderCreationTests(CafeFixtureMixin, TestCase):
    def test_create_order_persists_lines_totals_and_token(self):
        order, token = services.create_order(
            [self.line(self.latte, 2, notes="Oat milk"), self.line(self.cake)],
            Order.Type.DINE_IN,
            Order.PaymentMethod.CASH,
            TAXED,
            amount_tendered=Decimal("400"),
            discount={"type": Order.DiscountType.PERCENT, "value": Decimal("10")},
            table_number="7",
            cashier=self.cashier,
        )

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.total, Decimal("327.60"))
        self.assertEqual(order.tax_rate, Decimal("12.00"))
        self.assertEqual(order.change_amount, Decimal("72.40"))
        self.assertEqual(order.receipt_token, token)
        self.assertTrue(order.order_number.startswith("ORD-"))
        self.assertIsNone(order.completed_at)
        items = list(order.items.all())
        self.assertEqual([item.product_name for item in items], ["Latte", "Carrot cake"])
        self.assertEqual(items[0].subtotal, Decimal("240.00"))
        self.assertEqual(items[0].notes, "Oat milk")
        self.assertTrue(AuditLog.objects.filter(action="order.create", entity_id=order.id).exists())

    def test_tax_disabled_records_zero_rate(self):
        order = self.place(store=UNTAXED)

        self.assertEqual(order.tax_rate, Decimal("0.00"))
        self.assertEqual(order.total, Decimal("325.00"))

    def test_line_prices_are_snapshots(self):
        order = self.place()
        Product.objects.filter(id=self.latte.id).update(price=Decimal("999"))

        item = OrderItem.objects.get(order=order, product=self.latte)
        self.assertEqual(item.product_price, Decimal("120.00"))

    def test_recipe_ingredients_are_deducted_and_logged(self):
        order = self.place()

        self.beans.refresh_from_db()
        self.milk.refresh_from_db()
        self.assertEqual(self.beans.current_stock, Decimal("964.00"))
        self.assertEqual(self.milk.current_stock, Decimal("4600.00"))
        sale_logs = InventoryLog.objects.filter(reason=InventoryLog.Reason.SALE, reference_order_id=order.id)
        self.assertEqual(sale_logs.count(), 2)
        self.assertEqual(sale_logs.get(inventory_item=self.milk).change_amount, Decimal("-400.00"))
        self.assertEqual(inventory_services.ledger_discrepancies(), [])

    def test_products_without_recipe_and_free_text_lines_skip_deduction(self):
        order = self.place([self.line(self.cake), {"product_id": None, "name": "Corkage", "price": "50", "quantity": 1}])

        self.assertEqual(order.items.count(), 2)
        self.assertFalse(InventoryLog.objects.filter(reference_order_id=order.id).exists())

    def test_unknown_product_is_rejected(self):
        cart = [{"product_id": "6f1c2b1e-0000-4000-8000-000000000000", "name": "Ghost", "price": "1", "quantity": 1}]

        with self.assertRaises(ValidationError):
            self.place(cart)
        self.assertFalse(Order.objects.exists())

    def test_invalid_payment_method_is_rejected(self):
        with self.assertRaises(ValidationError):
            services.create_order([self.line(self.cake)], Order.Type.DINE_IN, "BARTER", TAXED)

    def test_malformed_cart_writes_nothing(self):
        with self.assertRaises(ValidationError):
            self.place([{"product_id": self.latte.id, "name": "Latte", "quantity": 2}])
        with self.assertRaises(ValidationError):
            self.place(discount={"type": Order.DiscountType.PERCENT, "value": "ten"})

        self.assertFalse(Order.objects.exists())
        self.beans.refresh_from_db()
        self.assertEqual(self.beans.current_stock, Decimal("1000.00"))

    def test_recipe_usage_below_a_cent_is_reported(self):
        sugar = inventory_services.create_inventory_item(name="Sugar", unit=InventoryItem.Unit.KILOGRAM, current_stock=Decimal("5"))
        tea = Product.objects.create(name="Tea", price=Decimal("60"))
        inventory_services.set_recipe(tea, [(sugar, Decimal("0.004"))])

        with self.assertLogs("inventory.services", level="WARNING") as logs:
            order = self.place([self.line(tea)])

        self.assertIn("recipe_quantity_rounded_to_zero", logs.output[0])
        self.assertFalse(InventoryLog.objects.filter(reference_order_id=order.id).exists())
        sugar.refresh_from_db()
        self.assertEqual(sugar.current_stock, Decimal("5.00"))

    def test_order_number_collision_is_retried(self):
        first = self.place()

        with patch("sales.services.generate_order_number", side_effect=[first.order_number, "ORD-20260101-0001"]):
            with self.assertLogs("sales.services", level="WARNING") as logs:
                second = self.place()

        self.assertEqual(second.order_number, "ORD-20260101-0001")
        self.assertIn("order_number_collision", logs.output[0])
        self.assertEqual(Order.objects.count(), 2)


class NegativeStockPolicyTests(CafeFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.croissant_stock = inventory_services.create_inventory_item(name="Croissant", current_stock=Decimal("1"))
        self.croissant = Product.objects.create(name="Croissant", price=Decimal("95"))
        inventory_services.set_recipe(self.croissant, [(self.croissant_stock, Decimal("1"))])

    def test_reject_policy_fails_second_sale_without_writing_anything(self):
        self.place([self.line(self.croissant)], stock_policy="reject")

        with self.assertLogs("inventory.services", level="WARNING"):
            with self.assertRaises(InsufficientStock) as ctx:
                self.place([self.line(self.croissant)], stock_policy="reject")

        shortage = ctx.exception.shortages[0]
        self.assertEqual(shortage["inventory_item_id"], str(self.croissant_stock.id))
        self.croissant_stock.refresh_from_db()
        self.assertEqual(self.croissant_stock.current_stock, Decimal("0.00"))
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(OrderItem.objects.count(), 1)
        self.assertEqual(InventoryLog.objects.filter(inventory_item=self.croissant_stock, reason=InventoryLog.Reason.SALE).count(), 1)

    def test_rejected_order_leaves_other_ingredients_untouched(self):
        cart = [self.line(self.latte), self.line(self.croissant, 2)]

        with self.assertLogs("inventory.services", level="WARNING"):
            with self.assertRaises(InsufficientStock):
                self.place(cart, stock_policy="reject")

        self.beans.refresh_from_db()
        self.assertEqual(self.beans.current_stock, Decimal("1000.00"))

    @override_settings(INVENTORY_NEGATIVE_STOCK_POLICY="allow")
    def test_allow_policy_lets_stock_go_negative_and_warns(self):
        self.place([self.line(self.croissant)])

        with self.assertLogs("inventory.services", level="WARNING") as logs:
            self.place([self.line(self.croissant)])

        self.assertIn("inventory_negative_stock", logs.output[0])
        self.croissant_stock.refresh_from_db()
        self.assertEqual(self.croissant_stock.current_stock, Decimal("-1.00"))
        self.assertEqual(InventoryLog.objects.filter(inventory_item=self.croissant_stock, reason=InventoryLog.Reason.SALE).count(), 2)
        self.assertEqual(inventory_services.ledger_discrepancies(), [])


class OrderStatusTests(CafeFixtureMixin, TestCase):
    def test_full_lifecycle_sets_completed_at(self):
        order = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)

        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertIsNotNone(order.completed_at)
        self.assertEqual(AuditLog.objects.filter(action="order.status", entity_id=order.id).count(), 3)

    def test_reopening_completed_order_clears_completed_at(self):
        order = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)

        order = self.advance(order, Order.Status.PREPARING)

        self.assertEqual(order.status, Order.Status.PREPARING)
        self.assertIsNone(order.completed_at)

    def test_skipping_steps_is_rejected(self):
        order = self.place()

        with self.assertRaises(InvalidStatusTransition):
            services.update_order_status(order.id, Order.Status.COMPLETED)

    def test_completed_order_cannot_be_cancelled(self):
        order = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)

        with self.assertRaises(InvalidStatusTransition):
            services.update_order_status(order.id, Order.Status.CANCELLED)

    def test_cancelled_is_terminal(self):
        order = self.advance(self.place(), Order.Status.CANCELLED)

        self.assertEqual(allowed_next_statuses(order.status), [])
        with self.assertRaises(InvalidStatusTransition):
            services.update_order_status(order.id, Order.Status.PENDING)

    def test_unknown_status_is_a_validation_error(self):
        order = self.place()

        with self.assertRaises(ValidationError):
            services.update_order_status(order.id, "SERVED")

    def test_unknown_order_raises_not_found(self):
        with self.assertRaises(OrderNotFound):
            services.update_order_status("not-a-uuid", Order.Status.PREPARING)

    def test_cancellation_keeps_stock_by_default(self):
        order = self.place()

        self.advance(order, Order.Status.CANCELLED)

        self.beans.refresh_from_db()
        self.assertEqual(self.beans.current_stock, Decimal("964.00"))
        self.assertFalse(InventoryLog.objects.filter(reference_order_id=order.id, reason=InventoryLog.Reason.RESTOCK).exists())

    @override_settings(ORDER_CANCELLATION_RESTOCKS=True)
    def test_cancellation_can_return_stock(self):
        order = self.place()

        self.advance(order, Order.Status.PREPARING, Order.Status.CANCELLED)

        self.beans.refresh_from_db()
        self.assertEqual(self.beans.current_stock, Decimal("1000.00"))
        restocks = InventoryLog.objects.filter(reference_order_id=order.id, reason=InventoryLog.Reason.RESTOCK)
        self.assertEqual(restocks.count(), 2)
        self.assertEqual(inventory_services.ledger_discrepancies(), [])

    def test_active_orders_exclude_finished_ones(self):
        pending = self.place()
        completed = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        cancelled = self.advance(self.place(), Order.Status.CANCELLED)

        ids = [order.id for order in services.active_orders()]

        self.assertIn(pending.id, ids)
        self.assertNotIn(completed.id, ids)
        self.assertNotIn(cancelled.id, ids)
        self.assertEqual(list(services.list_orders(Order.Status.CANCELLED)), [cancelled])


class ReceiptLookupTests(CafeFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_lookup_by_token(self):
        order = self.place()

        self.assertEqual(services.get_order_by_token(order.receipt_token), order)
        self.assertIsNone(services.get_order_by_token(""))
        self.assertIsNone(services.get_order_by_token("missing"))

    def test_public_receipt_is_idempotent_and_hides_staff(self):
        order = self.place()
        url = f"/api/v1/receipts/{order.receipt_token}/"

        first = self.client.get(url)
        second = self.client.get(url)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), second.json())
        receipt = first.json()["order"]
        self.assertEqual(receipt["order_number"], order.order_number)
        self.assertNotIn("cashier", receipt)
        self.assertNotIn("receipt_token", receipt)
        self.assertEqual(first.json()["store"]["store_name"], StoreSettings.load().store_name)

    def test_unknown_token_returns_empty_receipt(self):
        response = self.client.get("/api/v1/receipts/does-not-exist/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"order": None})


class DashboardStatsTests(CafeFixtureMixin, TestCase):
    def test_revenue_counts_completed_and_payments_count_in_flight(self):
        completed = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        preparing = self.advance(self.place(payment_method=Order.PaymentMethod.CARD), Order.Status.PREPARING)
        self.advance(self.place(payment_method=Order.PaymentMethod.GCASH), Order.Status.CANCELLED)

        stats = get_dashboard_stats("today", store_settings=TAXED)

        self.assertEqual(stats["revenue"], completed.total)
        self.assertEqual(stats["order_count"], 1)
        self.assertEqual(stats["avg_order_value"], completed.total)
        self.assertEqual(
            stats["payment_breakdown"],
            [
                {"method": "CARD", "count": 1, "revenue": preparing.total},
                {"method": "CASH", "count": 1, "revenue": completed.total},
            ],
        )
        self.assertEqual(stats["granularity"], "hour")
        self.assertTrue(stats["is_hourly"])
        self.assertEqual(len(stats["revenue_by_period"]), 1)

    def test_only_completed_orders_count_as_revenue(self):
        completed = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        self.place(payment_method=Order.PaymentMethod.MAYA)
        self.advance(self.place(payment_method=Order.PaymentMethod.CARD), Order.Status.PREPARING, Order.Status.READY)
        self.advance(self.place(payment_method=Order.PaymentMethod.GCASH), Order.Status.PREPARING)
        self.advance(self.place(payment_method=Order.PaymentMethod.OTHER), Order.Status.CANCELLED)

        stats = get_dashboard_stats("today", store_settings=TAXED)

        self.assertEqual(stats["revenue"], completed.total)
        self.assertEqual(stats["order_count"], 1)
        self.assertEqual(sum(row["order_count"] for row in stats["revenue_by_period"]), 1)
        self.assertEqual(stats["top_items"][0]["count"], 2)
        self.assertEqual(
            [(entry["method"], entry["count"]) for entry in stats["payment_breakdown"]],
            [("CARD", 1), ("CASH", 1), ("GCASH", 1), ("MAYA", 1)],
        )

    def test_money_figures_have_two_decimals(self):
        self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)

        stats = get_dashboard_stats("today", store_settings=TAXED)

        for key in ("revenue", "gross_sales", "avg_order_value", "total_discounts", "total_tax"):
            self.assertEqual(stats[key].as_tuple().exponent, -2, key)
        self.assertEqual(str(stats["revenue"]), "364.00")
        self.assertEqual(str(stats["gross_sales"]), "325.00")
        self.assertEqual(str(stats["total_tax"]), "39.00")
        rows = (
            stats["revenue_by_period"]
            + stats["top_items"]
            + stats["category_revenue"]
            + stats["payment_breakdown"]
            + stats["order_type_breakdown"]
        )
        for row in rows:
            self.assertEqual(row["revenue"].as_tuple().exponent, -2)

    def test_range_windows(self):
        utc = ZoneInfo("UTC")
        now = datetime(2026, 10, 19, 15, 0, tzinfo=utc)

        self.assertIsNone(resolve_window("all", now=now, tz=utc))
        self.assertEqual(resolve_window("today", now=now, tz=utc).start, datetime(2026, 10, 19, tzinfo=utc))
        self.assertEqual(resolve_window("7d", now=now, tz=utc).start, datetime(2026, 10, 13, tzinfo=utc))
        self.assertEqual(resolve_window("30d", now=now, tz=utc).start, datetime(2026, 9, 20, tzinfo=utc))
        self.assertEqual(resolve_window("month", now=now, tz=utc).start, datetime(2026, 10, 1, tzinfo=utc))
        year = resolve_window("year", now=now, tz=utc)
        self.assertEqual(year.start, datetime(2026, 1, 1, tzinfo=utc))
        self.assertEqual(year.end, now)

    def test_range_granularity_and_bounds(self):
        utc = ZoneInfo("UTC")
        now = datetime(2026, 10, 19, 15, 0, tzinfo=utc)
        old = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        recent = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        Order.objects.filter(id=old.id).update(created_at=datetime(2025, 12, 31, 12, 0, tzinfo=utc))
        Order.objects.filter(id=recent.id).update(created_at=datetime(2026, 10, 2, 12, 0, tzinfo=utc))

        everything = get_dashboard_stats("all", now=now, store_settings=TAXED, tz=utc)
        year = get_dashboard_stats("year", now=now, store_settings=TAXED, tz=utc)
        month = get_dashboard_stats("month", now=now, store_settings=TAXED, tz=utc)
        last_30 = get_dashboard_stats("30d", now=now, store_settings=TAXED, tz=utc)

        self.assertEqual(everything["order_count"], 2)
        self.assertTrue(everything["is_monthly"])
        self.assertEqual([row["period"][:7] for row in everything["revenue_by_period"]], ["2025-12", "2026-10"])
        self.assertEqual(year["order_count"], 1)
        self.assertTrue(year["is_monthly"])
        self.assertEqual(month["order_count"], 1)
        self.assertEqual(month["granularity"], "day")
        self.assertEqual(last_30["order_count"], 1)
        self.assertEqual(last_30["revenue_by_period"][0]["period"], "2026-10-02")

    def test_top_items_and_categories(self):
        self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)

        stats = get_dashboard_stats("7d", store_settings=TAXED)

        self.assertEqual(stats["top_items"][0], {"name": "Latte", "count": 2, "revenue": Decimal("240.00")})
        self.assertEqual([row["name"] for row in stats["category_revenue"]], ["Coffee"])
        self.assertEqual(stats["granularity"], "day")
        self.assertEqual(stats["order_type_breakdown"][0]["type"], Order.Type.DINE_IN)

    def test_missing_payment_method_is_reported_as_other(self):
        order = self.place()
        Order.objects.filter(id=order.id).update(payment_method=None)

        stats = get_dashboard_stats("today", store_settings=TAXED)

        self.assertEqual([entry["method"] for entry in stats["payment_breakdown"]], ["OTHER"])

    def test_custom_month_window(self):
        utc = ZoneInfo("UTC")
        inside = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        outside = self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        Order.objects.filter(id=inside.id).update(created_at=datetime(2026, 3, 31, 23, 30, tzinfo=utc))
        Order.objects.filter(id=outside.id).update(created_at=datetime(2026, 4, 1, 0, 30, tzinfo=utc))

        stats = get_dashboard_stats("custom", "2026-03", "2026-03", store_settings=TAXED, tz=utc)

        self.assertEqual(stats["order_count"], 1)
        self.assertEqual(stats["revenue"], inside.total)
        self.assertEqual(stats["revenue_by_period"][0]["period"], "2026-03-31")

    def test_wide_custom_range_is_monthly(self):
        window = resolve_window("custom", "2026-01", "2026-06", tz=ZoneInfo("UTC"))

        self.assertEqual(window.start, datetime(2026, 1, 1, tzinfo=ZoneInfo("UTC")))
        stats = get_dashboard_stats("custom", "2026-01", "2026-06", store_settings=TAXED, tz=ZoneInfo("UTC"))
        self.assertTrue(stats["is_monthly"])
        self.assertEqual(stats["revenue"], Decimal("0.00"))

    def test_invalid_ranges_are_rejected(self):
        with self.assertRaises(ValidationError):
            resolve_window("fortnight")
        with self.assertRaises(ValidationError):
            resolve_window("custom", "2026-13")
        with self.assertRaises(ValidationError):
            resolve_window("custom", "2026-05", "2026-04")

    def test_low_stock_section(self):
        inventory_services.adjust_stock(self.milk.id, new_stock=Decimal("100"))

        stats = get_dashboard_stats("today", store_settings=TAXED)

        self.assertEqual(stats["low_stock"]["count"], 1)
        self.assertEqual(stats["low_stock"]["items"][0]["name"], "Milk")


class KitchenBoardTests(TestCase):
    def setUp(self):
        self.now = datetime(2026, 10, 19, 9, 0, tzinfo=ZoneInfo("UTC"))

    def ticket(self, order_id, status, minutes_ago, lines=()):
        return KitchenOrder(
            id=order_id,
            order_number=f"ORD-{order_id}",
            status=status,
            type=Order.Type.DINE_IN,
            created_at=self.now - timedelta(minutes=minutes_ago),
            lines=lines,
        )

    def test_columns_sorting_and_urgency(self):
        orders = [
            self.ticket("p1", Order.Status.PENDING, 6),
            self.ticket("p2", Order.Status.PENDING, 4),
            self.ticket("c1", Order.Status.PREPARING, 3),
            self.ticket("c2", Order.Status.PREPARING, 25),
            self.ticket("r1", Order.Status.READY, 90),
            self.ticket("done", Order.Status.COMPLETED, 1),
        ]

        board = project_kitchen_board(orders, now=self.now)

        self.assertEqual([t.order.id for t in board.pending], ["p1", "p2"])
        self.assertEqual([t.order.id for t in board.preparing], ["c2", "c1"])
        self.assertEqual([t.order.id for t in board.ready], ["r1"])
        self.assertEqual({t.order.id for t in board.tickets if t.urgent}, {"p1", "c2"})
        self.assertEqual(board.urgent_count, 2)

    def test_urgency_threshold_is_strict(self):
        board = project_kitchen_board([self.ticket("p", Order.Status.PENDING, 5)], now=self.now)

        self.assertFalse(board.pending[0].urgent)

    def test_elapsed_labels(self):
        self.assertEqual(elapsed_label(42), "42s")
        self.assertEqual(elapsed_label(60 * 7 + 5), "7m")
        self.assertEqual(elapsed_label(3600 * 2 + 1), "2h")

    def test_checklist_survives_status_change_and_refresh(self):
        lines = (KitchenLine(index=0, name="Latte", quantity=2), KitchenLine(index=1, name="Cake", quantity=1))
        order = self.ticket("o1", Order.Status.PENDING, 1, lines)
        session = KitchenDisplaySession.start([order])

        session.toggle_line("o1", 0)
        session.change_status("o1", Order.Status.PREPARING, lambda order_id, status: replace(order, status=status))
        session.refresh([replace(order, status=Order.Status.PREPARING)])

        self.assertTrue(session.is_checked("o1", 0))
        self.assertFalse(session.is_checked("o1", 1))
        self.assertEqual(session.checked_count("o1"), 1)
        self.assertEqual([t.order.id for t in session.board(now=self.now).preparing], ["o1"])

    def test_failed_submit_rolls_back_and_reraises(self):
        order = self.ticket("o1", Order.Status.READY, 1)
        session = KitchenDisplaySession.start([order])

        def fail(order_id, status):
            raise InvalidStatusTransition(Order.Status.READY, status)

        with self.assertRaises(InvalidStatusTransition):
            session.change_status("o1", Order.Status.COMPLETED, fail)

        self.assertEqual(session.orders["o1"].status, Order.Status.READY)

    def test_completed_orders_leave_the_board(self):
        order = self.ticket("o1", Order.Status.READY, 1, (KitchenLine(index=0, name="Latte", quantity=1),))
        session = KitchenDisplaySession.start([order])
        session.toggle_line("o1", 0)

        session.change_status("o1", Order.Status.COMPLETED, lambda order_id, status: replace(order, status=status))

        self.assertNotIn("o1", session.orders)
        self.assertEqual(session.checked_count("o1"), 0)
        self.assertEqual(session.board(now=self.now).tickets, ())

    def test_refresh_drops_ticks_for_vanished_orders(self):
        order = self.ticket("o1", Order.Status.PENDING, 1, (KitchenLine(index=0, name="Latte", quantity=1),))
        session = KitchenDisplaySession.start([order])
        session.toggle_line("o1", 0)

        session.refresh([])

        self.assertFalse(session.is_checked("o1", 0))


class OrderApiTests(CafeFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        store = StoreSettings.load()
        store.tax_enabled = True
        store.tax_rate = Decimal("12")
        store.save()

    def payload(self, **overrides):
        data = {
            "items": [
                {"product_id": str(self.latte.id), "name": "Latte", "price": "120.00", "quantity": 2},
                {"product_id": str(self.cake.id), "name": "Carrot cake", "price": "85.00", "quantity": 1},
            ],
            "type": "DINE_IN",
            "payment_method": "CASH",
            "amount_tendered": "500.00",
            "discount_type": "PERCENT",
            "discount_value": "10",
        }
        data.update(overrides)
        return data

    def test_cashier_creates_order(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/orders/", self.payload(), format="json")

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["order"]["total"], "327.60")
        self.assertEqual(body["order"]["change_amount"], "172.40")
        self.assertEqual(body["order"]["cashier_username"], "cashier")
        self.assertEqual(body["receipt_token"], body["order"]["receipt_token"])
        self.assertEqual(len(body["order"]["items"]), 2)

    def test_kitchen_cannot_create_orders(self):
        self.client.force_authenticate(user=self.kitchen_user)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post("/api/v1/orders/", self.payload(), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertFalse(Order.objects.exists())

    def test_invalid_cart_uses_validation_envelope(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/orders/", self.payload(items=[], discount_value="150"), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("items", response.json()["errors"])

    def test_insufficient_stock_returns_conflict(self):
        inventory_services.adjust_stock(self.beans.id, new_stock=Decimal("10"))
        self.client.force_authenticate(user=self.cashier)

        with self.assertLogs("inventory.services", level="WARNING"):
            response = self.client.post("/api/v1/orders/", self.payload(), format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "insufficient_stock")
        self.assertEqual(response.json()["errors"]["shortages"][0]["name"], "Espresso beans")
        self.assertFalse(Order.objects.exists())

    def test_kitchen_moves_order_through_status_endpoint(self):
        order = self.place()
        self.client.force_authenticate(user=self.kitchen_user)

        ok = self.client.post(f"/api/v1/orders/{order.id}/status/", {"status": "PREPARING"}, format="json")
        conflict = self.client.post(f"/api/v1/orders/{order.id}/status/", {"status": "COMPLETED"}, format="json")

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["status"], "PREPARING")
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()["errors"]["status"], {"current": "PREPARING", "requested": "COMPLETED"})

    def test_order_list_filters_by_status(self):
        self.place()
        self.advance(self.place(), Order.Status.CANCELLED)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/orders/?status=CANCELLED")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)

    def test_kitchen_board_endpoint(self):
        old = self.advance(self.place(), Order.Status.PREPARING)
        new = self.advance(self.place(), Order.Status.PREPARING)
        Order.objects.filter(id=old.id).update(created_at=timezone.now() - timedelta(minutes=30))
        self.client.force_authenticate(user=self.kitchen_user)

        response = self.client.get("/api/v1/kitchen/orders/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["refresh_seconds"], 30)
        self.assertEqual(body["urgent_count"], 1)
        self.assertEqual([ticket["id"] for ticket in body["columns"]["PREPARING"]], [str(old.id), str(new.id)])
        self.assertEqual(body["columns"]["PREPARING"][0]["next_statuses"], ["CANCELLED", "PENDING", "READY"])
        self.assertEqual(body["columns"]["PREPARING"][0]["items"][0], {"index": 0, "name": "Latte", "quantity": 2, "notes": ""})

    def test_dashboard_is_for_managers(self):
        self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)

        self.client.force_authenticate(user=self.cashier)
        with self.assertLogs("security.authorization", level="WARNING"):
            denied = self.client.get("/api/v1/reports/dashboard/")
        self.client.force_authenticate(user=self.manager)
        response = self.client.get("/api/v1/reports/dashboard/?range=today")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["revenue"], "364.00")
        self.assertEqual(response.json()["currency_symbol"], "₱")

    def test_dashboard_rejects_unknown_range_and_timezone(self):
        self.client.force_authenticate(user=self.manager)

        bad_range = self.client.get("/api/v1/reports/dashboard/?range=fortnight")
        bad_tz = self.client.get("/api/v1/reports/dashboard/?timezone=Mars/Olympus")

        self.assertEqual(bad_range.status_code, 400)
        self.assertIn("range", bad_range.json()["errors"])
        self.assertEqual(bad_tz.status_code, 400)

    def test_dashboard_csv_export(self):
        self.advance(self.place(), Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED)
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/reports/dashboard/?range=7d&export=csv")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertTrue(response.content.decode().startswith("period,revenue,order_count"))
