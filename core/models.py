import uuid
from dataclasses import dataclass
from decimal import Decimal

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import Q
from django.db.models.functions import Lower


class User(AbstractUser):
    class Role(models.TextChoices):
        OWNER = "owner", "Owner"
        MANAGER = "manager", "Manager"
        CASHIER = "cashier", "Cashier"
        KITCHEN = "kitchen", "Kitchen"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(blank=True)
    role = models.CharField(max_length=32, choices=Role, default=Role.CASHIER)

    class Meta(AbstractUser.Meta):
        constraints = [
            models.UniqueConstraint(
                Lower("email"),
                condition=~Q(email=""),
                name="core_user_email_ci_unique",
            )
        ]

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.strip().lower()
        super().save(*args, **kwargs)


@dataclass(frozen=True)
class StoreSettingsSnapshot:
    """Immutable view of the store settings handed to order creation and reporting."""

    store_name: str = "Sandy Café"
    currency: str = "PHP"
    currency_symbol: str = "₱"
    tax_rate: Decimal = Decimal("0")
    tax_enabled: bool = False
    receipt_header: str = ""
    receipt_footer: str = ""

    @property
    def effective_tax_rate(self):
        return self.tax_rate if self.tax_enabled else Decimal("0")


class StoreSettings(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    store_name = models.CharField(max_length=255, default="Sandy Café")
    store_address = models.CharField(max_length=255, blank=True, default="")
    store_phone = models.CharField(max_length=64, blank=True, default="")
    store_email = models.EmailField(blank=True, default="")
    currency = models.CharField(max_length=8, default="PHP")
    currency_symbol = models.CharField(max_length=8, default="₱")
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    tax_enabled = models.BooleanField(default=False)
    receipt_header = models.TextField(blank=True, default="")
    receipt_footer = models.TextField(blank=True, default="Thank you for dining with us!")
    updated_at = models.DateTimeField(auto_now=True)

    @classmethod
    def load(cls):
        settings_row = cls.objects.order_by("updated_at").first()
        if settings_row is None:
            settings_row = cls.objects.create()
        return settings_row

    def snapshot(self):
        return StoreSettingsSnapshot(
            store_name=self.store_name,
            currency=self.currency,
            currency_symbol=self.currency_symbol,
            tax_rate=Decimal(self.tax_rate),
            tax_enabled=self.tax_enabled,
            receipt_header=self.receipt_header,
            receipt_footer=self.receipt_footer,
        )


class AuditLog(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    entity = models.CharField(max_length=64)
    entity_id = models.UUIDField(null=True, blank=True)
    before_snapshot = models.JSONField(null=True, blank=True)
    after_snapshot = models.JSONField(null=True, blank=True)
    request_id = models.CharField(max_length=255, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["created_at"], name="audit_created_idx"),
            models.Index(fields=["action", "created_at"], name="audit_action_created_idx"),
            models.Index(fields=["entity", "created_at"], name="audit_entity_created_idx"),
            models.Index(fields=["actor", "created_at"], name="audit_actor_created_idx"),
        ]
