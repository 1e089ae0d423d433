from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import RequestFactory, TestCase
from rest_framework.test import APIClient

from common.audit import create_audit_log
from common.memo import request_memo
from common.permissions import get_user_role, user_has_capability
from core.models import AuditLog, StoreSettings, User
from core.services import load_store_settings, load_store_settings_snapshot


class TokenAuthTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="barista",
            email="Barista@Example.com",
            password="pass1234",
            role=User.Role.CASHIER,
        )

    def test_token_obtain_with_username(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "barista", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_token_obtain_with_case_insensitive_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "BARISTA@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)

    def test_bad_credentials_use_error_envelope(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "barista", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["status"], 401)
        self.assertIn("code", payload)
        self.assertIn("message", payload)

    def test_email_is_normalised_on_save(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.email, "barista@example.com")

    def test_me_returns_role(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "cashier")
        self.assertEqual(response.json()["username"], "barista")

    def test_me_requires_authentication(self):
        response = self.client.get("/api/v1/me/")
        self.assertEqual(response.status_code, 401)


class RoleCapabilityTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()

    def test_superuser_is_treated_as_owner(self):
        admin = self.user_model.objects.create_superuser(username="root", password="pass1234")
        self.assertEqual(get_user_role(admin), User.Role.OWNER)
        self.assertTrue(user_has_capability(admin, "inventory.delete"))

    def test_kitchen_can_view_board_but_not_create_orders(self):
        kitchen = self.user_model.objects.create_user(username="line", password="pass1234", role=User.Role.KITCHEN)
        self.assertTrue(user_has_capability(kitchen, "kitchen.view"))
        self.assertFalse(user_has_capability(kitchen, "orders.create"))
        self.assertFalse(user_has_capability(kitchen, "inventory.view"))

    def test_unknown_capability_is_denied(self):
        owner = self.user_model.objects.create_user(username="boss", password="pass1234", role=User.Role.OWNER)
        self.assertFalse(user_has_capability(owner, "does.not.exist"))

    def test_cashier_is_denied_audit_logs_and_denial_is_logged(self):
        cashier = self.user_model.objects.create_user(username="till", password="pass1234", role=User.Role.CASHIER)
        client = APIClient()
        client.force_authenticate(user=cashier)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("capability=dashboard.view" in line for line in cm.output))


class StoreSettingsTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="cashier", password="pass1234")

    def test_load_creates_single_row(self):
        first = StoreSettings.load()
        second = StoreSettings.load()

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(StoreSettings.objects.count(), 1)

    def test_snapshot_zeroes_rate_when_tax_disabled(self):
        row = StoreSettings.load()
        row.tax_rate = Decimal("12.00")
        row.tax_enabled = False
        row.save()

        snapshot = load_store_settings_snapshot()
        self.assertEqual(snapshot.tax_rate, Decimal("12.00"))
        self.assertEqual(snapshot.effective_tax_rate, Decimal("0"))

        row.tax_enabled = True
        row.save()
        self.assertEqual(load_store_settings_snapshot().effective_tax_rate, Decimal("12.00"))

    def test_settings_are_read_once_per_request(self):
        request = RequestFactory().get("/api/v1/store-settings/")
        StoreSettings.load()

        with self.assertNumQueries(1):
            first = load_store_settings(request)
            second = load_store_settings(request)

        self.assertIs(first, second)

    def test_memo_without_request_runs_callback_each_time(self):
        calls = []
        request_memo(None, "key", lambda: calls.append(1))
        request_memo(None, "key", lambda: calls.append(1))
        self.assertEqual(len(calls), 2)

    def test_settings_endpoint_is_read_only(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get("/api/v1/store-settings/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "PHP")
        self.assertFalse(response.json()["tax_enabled"])

        put_response = self.client.put("/api/v1/store-settings/", {"tax_enabled": True}, format="json")
        self.assertEqual(put_response.status_code, 405)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.manager = get_user_model().objects.create_user(
            username="manager",
            password="pass1234",
            role=User.Role.MANAGER,
        )

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.manager)
        log = create_audit_log(
            actor=self.manager,
            action="order.create",
            entity="order",
            entity_id="not-a-uuid",
            after_snapshot={"total": Decimal("10.00")},
        )

        self.assertIsNone(log.entity_id)
        self.assertEqual(log.after_snapshot, {"total": "10.00"})

        list_res = self.client.get("/api/v1/admin/audit-logs/")
        self.assertEqual(list_res.status_code, 200)
        self.assertEqual(list_res.json()["count"], 1)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)
        self.assertEqual(AuditLog.objects.get(id=log.id).action, "order.create")

    def test_audit_log_export_is_csv(self):
        self.client.force_authenticate(user=self.manager)
        create_audit_log(actor=self.manager, action="inventory.restock", entity="inventory_item")

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertIn("inventory.restock", response.content.decode())


class HealthTests(TestCase):
    def setUp(self):
        self.client = APIClient()

    def test_healthz(self):
        response = self.client.get("/api/v1/healthz/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertTrue(response.has_header("X-Request-ID"))

    def test_readyz_reports_database_failure(self):
        with patch("core.views.connections") as mocked:
            mocked.__getitem__.return_value.cursor.side_effect = DatabaseError("db down")
            with self.assertLogs("core.views", level="ERROR"):
                response = self.client.get("/api/v1/readyz/")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["status"], "error")
