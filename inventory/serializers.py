from decimal import Decimal

from rest_framework import serializers

from inventory.models import Category, InventoryItem, InventoryLog, Product, RecipeLink


class CategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ["id", "name", "sort_order", "is_active", "created_at"]
        read_only_fields = fields


class RecipeLinkSerializer(serializers.ModelSerializer):
    inventory_item_name = serializers.CharField(source="inventory_item.name", read_only=True)
    unit = serializers.CharField(source="inventory_item.unit", read_only=True)

    class Meta:
        model = RecipeLink
        fields = ["id", "inventory_item", "inventory_item_name", "unit", "quantity_used"]
        read_only_fields = fields


class ProductSerializer(serializers.ModelSerializer):
    category_name = serializers.CharField(source="category.name", read_only=True, default=None)
    recipe = RecipeLinkSerializer(source="recipe_links", many=True, read_only=True)

    class Meta:
        model = Product
        fields = [
            "id",
            "category",
            "category_name",
            "name",
            "description",
            "price",
            "is_available",
            "track_inventory",
            "sort_order",
            "recipe",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InventoryItemSerializer(serializers.ModelSerializer):
    is_low_stock = serializers.BooleanField(read_only=True)
    current_stock = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    low_stock_threshold = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    cost_per_unit = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)

    class Meta:
        model = InventoryItem
        fields = [
            "id",
            "name",
            "unit",
            "current_stock",
            "low_stock_threshold",
            "cost_per_unit",
            "is_low_stock",
            "is_active",
            "archived_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "is_active", "archived_at", "created_at", "updated_at"]

    def validate(self, attrs):
        # Stock on an existing item only moves through restock/adjust/waste so the log stays complete.
        if self.instance is not None and "current_stock" in attrs:
            raise serializers.ValidationError({"current_stock": "Use the adjust endpoint to change stock."})
        return attrs


class InventoryLogSerializer(serializers.ModelSerializer):
    inventory_item_name = serializers.CharField(source="inventory_item.name", read_only=True)
    created_by_username = serializers.CharField(source="created_by.username", read_only=True, default=None)

    class Meta:
        model = InventoryLog
        fields = [
            "id",
            "inventory_item",
            "inventory_item_name",
            "change_amount",
            "reason",
            "reference_order_id",
            "notes",
            "created_by",
            "created_by_username",
            "created_at",
        ]
        read_only_fields = fields


class StockMovementSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class StockAdjustmentSerializer(serializers.Serializer):
    new_stock = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    delta = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if ("new_stock" in attrs) == ("delta" in attrs):
            raise serializers.ValidationError("Provide exactly one of new_stock or delta.")
        return attrs
