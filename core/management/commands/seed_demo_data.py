from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from core.models import StoreSettings, User
from inventory import services as inventory_services
from inventory.models import Category, InventoryItem, Product
from sales.models import Order
from sales.services import create_order, update_order_status

DEMO_USERS = (
    ("owner", "owner1234", User.Role.OWNER),
    ("manager", "manager1234", User.Role.MANAGER),
    ("cashier", "cashier1234", User.Role.CASHIER),
    ("kitchen", "kitchen1234", User.Role.KITCHEN),
)

DEMO_ITEMS = (
    ("Espresso beans", InventoryItem.Unit.GRAM, "2000", "300", "1.20"),
    ("Fresh milk", InventoryItem.Unit.MILLILITER, "8000", "1500", "0.09"),
    ("Chocolate syrup", InventoryItem.Unit.MILLILITER, "1500", "250", "0.35"),
    ("Butter croissant", InventoryItem.Unit.PIECE, "12", "4", "38.00"),
    ("Paper cups", InventoryItem.Unit.PIECE, "200", "50", "3.50"),
)

# product name, category, price, [(inventory item, quantity used)]
DEMO_MENU = (
    ("Espresso", "Coffee", "95.00", [("Espresso beans", "18"), ("Paper cups", "1")]),
    ("Latte", "Coffee", "140.00", [("Espresso beans", "18"), ("Fresh milk", "200"), ("Paper cups", "1")]),
    ("Mocha", "Coffee", "160.00", [("Espresso beans", "18"), ("Fresh milk", "180"), ("Chocolate syrup", "30"), ("Paper cups", "1")]),
    ("Croissant", "Pastries", "95.00", [("Butter croissant", "1")]),
    ("Bottled water", None, "40.00", []),
)


class Command(BaseCommand):
    help = "Seed demo café menu, inventory and orders for local development."

    def handle(self, *args, **options):
        with transaction.atomic():
            users = {}
            for username, password, role in DEMO_USERS:
                user, created = User.objects.get_or_create(
                    username=username,
                    defaults={"email": f"{username}@example.com", "role": role, "is_active": True},
                )
                if created:
                    user.set_password(password)
                    user.save(update_fields=["password"])
                users[username] = user

            store = StoreSettings.load()
            store.store_name = "Sandy Café"
            store.tax_enabled = True
            store.tax_rate = Decimal("12.00")
            store.save()

            items = {}
            for name, unit, stock, threshold, cost in DEMO_ITEMS:
                item = InventoryItem.objects.filter(name=name, is_active=True).first()
                if item is None:
                    item = inventory_services.create_inventory_item(
                        name=name,
                        unit=unit,
                        current_stock=Decimal(stock),
                        low_stock_threshold=Decimal(threshold),
                        cost_per_unit=Decimal(cost),
                        actor=users["owner"],
                    )
                items[name] = item

            products = {}
            for sort_order, (name, category_name, price, recipe) in enumerate(DEMO_MENU):
                category = None
                if category_name:
                    category, _ = Category.objects.get_or_create(name=category_name)
                product, _ = Product.objects.get_or_create(
                    name=name,
                    defaults={"category": category, "price": Decimal(price), "sort_order": sort_order},
                )
                inventory_services.set_recipe(product, [(items[item_name], Decimal(qty)) for item_name, qty in recipe])
                products[name] = product

            if not Order.objects.exists():
                latte, croissant = products["Latte"], products["Croissant"]
                order, _ = create_order(
                    [
                        {"product_id": latte.id, "name": latte.name, "price": latte.price, "quantity": 2},
                        {"product_id": croissant.id, "name": croissant.name, "price": croissant.price, "quantity": 1},
                    ],
                    Order.Type.DINE_IN,
                    Order.PaymentMethod.CASH,
                    store.snapshot(),
                    amount_tendered=Decimal("500.00"),
                    table_number="4",
                    cashier=users["cashier"],
                )
                for next_status in (Order.Status.PREPARING, Order.Status.READY, Order.Status.COMPLETED):
                    update_order_status(order.id, next_status, actor=users["kitchen"])

                mocha = products["Mocha"]
                create_order(
                    [{"product_id": mocha.id, "name": mocha.name, "price": mocha.price, "quantity": 1, "notes": "Less sweet"}],
                    Order.Type.TAKEOUT,
                    Order.PaymentMethod.GCASH,
                    store.snapshot(),
                    customer={"name": "Ana"},
                    cashier=users["cashier"],
                )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: " + ", ".join(f"{username}/{password}" for username, password, _ in DEMO_USERS))
