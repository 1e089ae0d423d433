from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.test import TestCase
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from common.exceptions import InsufficientStock, InventoryItemNotFound
from core.models import User
from inventory import services
from inventory.models import Category, InventoryItem, InventoryLog, Product, RecipeLink


def ledger_total(item):
    return sum((log.change_amount for log in InventoryLog.objects.filter(inventory_item=item)), Decimal("0"))


class InventoryLedgerServiceTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="manager", password="pass1234", role=User.Role.MANAGER)
        self.milk = services.create_inventory_item(
            name="Milk",
            unit=InventoryItem.Unit.LITER,
            current_stock=Decimal("10"),
            low_stock_threshold=Decimal("2"),
            actor=self.user,
        )

    def test_create_writes_initial_log(self):
        log = InventoryLog.objects.get(inventory_item=self.milk)

        self.assertEqual(log.reason, InventoryLog.Reason.INITIAL)
        self.assertEqual(log.change_amount, Decimal("10.00"))
        self.assertEqual(log.created_by, self.user)

    def test_create_with_zero_stock_writes_no_log(self):
        cups = services.create_inventory_item(name="Paper cups")

        self.assertEqual(cups.unit, InventoryItem.Unit.PIECE)
        self.assertFalse(InventoryLog.objects.filter(inventory_item=cups).exists())

    def test_create_rejects_unknown_unit(self):
        with self.assertRaises(ValidationError):
            services.create_inventory_item(name="Sugar", unit="bucket")

    def test_restock_increments_and_logs(self):
        item, log = services.restock(self.milk.id, Decimal("2.5"), notes="Morning delivery", actor=self.user)

        self.assertEqual(item.current_stock, Decimal("12.50"))
        self.assertEqual(log.reason, InventoryLog.Reason.RESTOCK)
        self.assertEqual(log.change_amount, Decimal("2.50"))
        self.assertEqual(log.notes, "Morning delivery")

    def test_restock_requires_positive_amount(self):
        with self.assertRaises(ValidationError):
            services.restock(self.milk.id, Decimal("0"))
        with self.assertRaises(ValidationError):
            services.restock(self.milk.id, Decimal("-1"))

    def test_absolute_adjustment_logs_difference(self):
        item, log = services.adjust_stock(self.milk.id, new_stock=Decimal("7.25"), notes="Count")

        self.assertEqual(item.current_stock, Decimal("7.25"))
        self.assertEqual(log.reason, InventoryLog.Reason.ADJUSTMENT)
        self.assertEqual(log.change_amount, Decimal("-2.75"))

    def test_relative_adjustment_logs_delta(self):
        item, log = services.adjust_stock(self.milk.id, delta=Decimal("1.5"))

        self.assertEqual(item.current_stock, Decimal("11.50"))
        self.assertEqual(log.change_amount, Decimal("1.50"))

    def test_adjustment_without_change_writes_no_log(self):
        item, log = services.adjust_stock(self.milk.id, new_stock=Decimal("10"))

        self.assertIsNone(log)
        self.assertEqual(InventoryLog.objects.filter(inventory_item=item).count(), 1)

    def test_adjustment_needs_exactly_one_mode(self):
        with self.assertRaises(ValidationError):
            services.adjust_stock(self.milk.id)
        with self.assertRaises(ValidationError):
            services.adjust_stock(self.milk.id, new_stock=Decimal("1"), delta=Decimal("1"))

    def test_adjustment_cannot_go_negative(self):
        with self.assertRaises(ValidationError):
            services.adjust_stock(self.milk.id, delta=Decimal("-11"))

    def test_negative_stock_can_be_corrected_upwards(self):
        InventoryItem.objects.filter(id=self.milk.id).update(current_stock=Decimal("-3"))

        item, log = services.adjust_stock(self.milk.id, delta=Decimal("1"), notes="Partial recount")

        self.assertEqual(item.current_stock, Decimal("-2.00"))
        self.assertEqual(log.change_amount, Decimal("1.00"))
        with self.assertRaises(ValidationError):
            services.adjust_stock(self.milk.id, delta=Decimal("-1"))

    def test_waste_is_logged_and_cannot_exceed_stock(self):
        item, log = services.record_waste(self.milk.id, Decimal("1"), notes="Spilled")

        self.assertEqual(item.current_stock, Decimal("9.00"))
        self.assertEqual(log.reason, InventoryLog.Reason.WASTE)
        self.assertEqual(log.change_amount, Decimal("-1.00"))

        with self.assertRaises(InsufficientStock) as ctx:
            services.record_waste(self.milk.id, Decimal("50"))
        self.assertEqual(ctx.exception.shortages[0]["inventory_item_id"], str(self.milk.id))
        self.milk.refresh_from_db()
        self.assertEqual(self.milk.current_stock, Decimal("9.00"))

    def test_ledger_reconciles_after_every_kind_of_change(self):
        services.restock(self.milk.id, Decimal("5"))
        services.adjust_stock(self.milk.id, new_stock=Decimal("12.4"))
        services.adjust_stock(self.milk.id, delta=Decimal("-0.4"))
        services.record_waste(self.milk.id, Decimal("2"))

        self.milk.refresh_from_db()
        self.assertEqual(self.milk.current_stock, Decimal("10.00"))
        self.assertEqual(ledger_total(self.milk), self.milk.current_stock)
        self.assertEqual(services.ledger_discrepancies(), [])

    def test_ledger_discrepancy_is_detected(self):
        InventoryItem.objects.filter(id=self.milk.id).update(current_stock=Decimal("3"))

        rows = services.ledger_discrepancies()

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["inventory_item_id"], str(self.milk.id))
        self.assertEqual(rows[0]["difference"], Decimal("-7.00"))

    def test_threshold_update_does_not_touch_ledger(self):
        item = services.set_low_stock_threshold(self.milk.id, Decimal("12"))

        self.assertEqual(item.low_stock_threshold, Decimal("12.00"))
        self.assertEqual(InventoryLog.objects.filter(inventory_item=item).count(), 1)
        self.assertEqual([i.id for i in services.low_stock_items()], [self.milk.id])

    def test_update_refuses_stock_field(self):
        with self.assertRaises(ValidationError):
            services.update_inventory_item(self.milk.id, current_stock=Decimal("99"))

        item = services.update_inventory_item(self.milk.id, name="Whole milk", cost_per_unit=Decimal("85.5"))
        self.assertEqual(item.name, "Whole milk")
        self.assertEqual(item.cost_per_unit, Decimal("85.50"))

    def test_delete_archives_and_keeps_logs(self):
        latte = Product.objects.create(name="Latte", price=Decimal("140"))
        services.set_recipe(latte, [(self.milk, Decimal("0.2"))])

        services.delete_inventory_item(self.milk.id, actor=self.user)

        archived = InventoryItem.objects.get(id=self.milk.id)
        self.assertFalse(archived.is_active)
        self.assertIsNotNone(archived.archived_at)
        self.assertEqual(InventoryLog.objects.filter(inventory_item=archived).count(), 1)
        self.assertFalse(RecipeLink.objects.filter(inventory_item=archived).exists())
        self.assertNotIn(archived, list(services.list_inventory_items()))
        with self.assertRaises(InventoryItemNotFound):
            services.restock(self.milk.id, Decimal("1"))

    def test_logs_for_archived_item_are_still_readable(self):
        services.delete_inventory_item(self.milk.id)

        logs = services.inventory_logs(self.milk.id)

        self.assertEqual(len(logs), 1)

    def test_unknown_item_raises_not_found(self):
        with self.assertRaises(InventoryItemNotFound):
            services.restock("not-a-uuid", Decimal("1"))

    def test_item_log_listing_is_capped(self):
        for _ in range(services.ITEM_LOG_LIMIT + 5):
            services.restock(self.milk.id, Decimal("1"))

        self.assertEqual(len(services.inventory_logs(self.milk.id)), services.ITEM_LOG_LIMIT)


class RecipeMapTests(TestCase):
    def setUp(self):
        self.beans = services.create_inventory_item(name="Espresso beans", unit=InventoryItem.Unit.GRAM, current_stock=Decimal("1000"))
        self.milk = services.create_inventory_item(name="Milk", unit=InventoryItem.Unit.MILLILITER, current_stock=Decimal("5000"))
        self.latte = Product.objects.create(name="Latte", price=Decimal("140"))
        self.croissant = Product.objects.create(name="Croissant", price=Decimal("95"))

    def test_recipe_map_groups_links_by_product(self):
        services.set_recipe(self.latte, [(self.beans, Decimal("18")), (self.milk, Decimal("200"))])

        recipe = services.recipe_map_for_products([self.latte.id, self.croissant.id])

        self.assertEqual({link.inventory_item_id for link in recipe[self.latte.id]}, {self.beans.id, self.milk.id})
        self.assertNotIn(self.croissant.id, recipe)
        self.latte.refresh_from_db()
        self.assertTrue(self.latte.track_inventory)

    def test_set_recipe_replaces_previous_links(self):
        services.set_recipe(self.latte, [(self.beans, Decimal("18"))])
        services.set_recipe(self.latte, [(self.milk, Decimal("150"))])

        links = RecipeLink.objects.filter(product=self.latte)
        self.assertEqual([link.inventory_item_id for link in links], [self.milk.id])

    def test_set_recipe_rejects_non_positive_quantity(self):
        with self.assertRaises(ValidationError):
            services.set_recipe(self.latte, [(self.beans, Decimal("0"))])


class InventoryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="cashier", password="pass1234", role=User.Role.CASHIER)
        self.manager = self.user_model.objects.create_user(username="manager", password="pass1234", role=User.Role.MANAGER)
        self.owner = self.user_model.objects.create_user(username="owner", password="pass1234", role=User.Role.OWNER)
        self.kitchen = self.user_model.objects.create_user(username="kitchen", password="pass1234", role=User.Role.KITCHEN)
        self.sugar = services.create_inventory_item(name="Sugar", unit=InventoryItem.Unit.GRAM, current_stock=Decimal("500"), low_stock_threshold=Decimal("100"))

    def test_cashier_can_list_but_not_restock(self):
        self.client.force_authenticate(user=self.cashier)

        list_res = self.client.get("/api/v1/inventory-items/")
        self.assertEqual(list_res.status_code, 200)
        self.assertEqual(sorted(list_res.json().keys()), ["count", "next", "previous", "results"])
        self.assertEqual(list_res.json()["results"][0]["current_stock"], "500.00")

        with self.assertLogs("security.authorization", level="WARNING"):
            restock_res = self.client.post(f"/api/v1/inventory-items/{self.sugar.id}/restock/", {"amount": "10"}, format="json")
        self.assertEqual(restock_res.status_code, 403)
        self.assertEqual(restock_res.json()["code"], "permission_denied")

    def test_kitchen_cannot_view_inventory(self):
        self.client.force_authenticate(user=self.kitchen)

        response = self.client.get("/api/v1/inventory-items/")

        self.assertEqual(response.status_code, 403)

    def test_manager_creates_item_with_initial_log(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            "/api/v1/inventory-items/",
            {"name": "Oat milk", "unit": "l", "current_stock": "6", "low_stock_threshold": "2", "cost_per_unit": "180"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        item = InventoryItem.objects.get(id=response.json()["id"])
        self.assertEqual(item.current_stock, Decimal("6.00"))
        self.assertEqual(InventoryLog.objects.get(inventory_item=item).reason, InventoryLog.Reason.INITIAL)

    def test_manager_restock_adjust_and_waste(self):
        self.client.force_authenticate(user=self.manager)
        base = f"/api/v1/inventory-items/{self.sugar.id}"

        restock_res = self.client.post(f"{base}/restock/", {"amount": "250", "notes": "Supplier"}, format="json")
        adjust_res = self.client.post(f"{base}/adjust/", {"new_stock": "700"}, format="json")
        waste_res = self.client.post(f"{base}/waste/", {"amount": "25.5"}, format="json")

        self.assertEqual(restock_res.status_code, 200)
        self.assertEqual(restock_res.json()["log"]["reason"], "RESTOCK")
        self.assertEqual(adjust_res.json()["log"]["change_amount"], "-50.00")
        self.assertEqual(waste_res.json()["item"]["current_stock"], "674.50")
        self.sugar.refresh_from_db()
        self.assertEqual(ledger_total(self.sugar), self.sugar.current_stock)

    def test_adjust_rejects_both_modes(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            f"/api/v1/inventory-items/{self.sugar.id}/adjust/",
            {"new_stock": "1", "delta": "1"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_patch_cannot_change_stock_directly(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.patch(f"/api/v1/inventory-items/{self.sugar.id}/", {"current_stock": "1"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("current_stock", response.json()["errors"])

    def test_patch_updates_threshold(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.patch(f"/api/v1/inventory-items/{self.sugar.id}/", {"low_stock_threshold": "600"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["is_low_stock"])
        low_res = self.client.get("/api/v1/inventory-items/low-stock/")
        self.assertEqual(low_res.json()["count"], 1)

    def test_delete_is_owner_only_and_soft(self):
        self.client.force_authenticate(user=self.manager)
        with self.assertLogs("security.authorization", level="WARNING"):
            denied = self.client.delete(f"/api/v1/inventory-items/{self.sugar.id}/")
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.owner)
        response = self.client.delete(f"/api/v1/inventory-items/{self.sugar.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertTrue(InventoryItem.objects.filter(id=self.sugar.id, is_active=False).exists())
        self.assertEqual(self.client.get(f"/api/v1/inventory-items/{self.sugar.id}/").status_code, 404)

    def test_unknown_item_uses_not_found_envelope(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post("/api/v1/inventory-items/not-a-uuid/restock/", {"amount": "1"}, format="json")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")
        self.assertEqual(response.json()["message"], "Inventory item was not found.")

    def test_logs_endpoints(self):
        self.client.force_authenticate(user=self.cashier)

        item_logs = self.client.get(f"/api/v1/inventory-items/{self.sugar.id}/logs/")
        recent_logs = self.client.get("/api/v1/inventory-logs/")

        self.assertEqual(item_logs.status_code, 200)
        self.assertEqual(item_logs.json()[0]["reason"], "INITIAL")
        self.assertEqual(len(recent_logs.json()), 1)

    def test_catalog_is_readable_by_every_role(self):
        coffee = Category.objects.create(name="Coffee")
        Product.objects.create(name="Americano", price=Decimal("110"), category=coffee)
        self.client.force_authenticate(user=self.kitchen)

        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["results"][0]["category_name"], "Coffee")

    def test_restock_writes_audit_log(self):
        from core.models import AuditLog

        self.client.force_authenticate(user=self.manager)
        self.client.post(f"/api/v1/inventory-items/{self.sugar.id}/restock/", {"amount": "1"}, format="json")

        log = AuditLog.objects.get(action="inventory_item.restock")
        self.assertEqual(log.actor, self.manager)
        self.assertEqual(log.entity_id, self.sugar.id)


class CheckInventoryLedgerCommandTests(TestCase):
    def test_command_passes_when_ledger_balances(self):
        services.create_inventory_item(name="Tea", current_stock=Decimal("20"))

        out = StringIO()
        call_command("check_inventory_ledger", stdout=out)
        self.assertIn("balanced", out.getvalue())

    def test_command_fails_on_discrepancy(self):
        tea = services.create_inventory_item(name="Tea", current_stock=Decimal("20"))
        InventoryItem.objects.filter(id=tea.id).update(current_stock=Decimal("19"))

        out = StringIO()
        with self.assertRaises(CommandError):
            call_command("check_inventory_ledger", stdout=out)
        self.assertIn("Tea", out.getvalue())
