from decimal import Decimal

from rest_framework import serializers

from sales.models import Order, OrderItem


class OrderItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderItem
        fields = ["id", "product", "product_name", "product_price", "quantity", "subtotal", "notes", "position"]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    cashier_username = serializers.CharField(source="cashier.username", read_only=True, default=None)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "type",
            "status",
            "table_number",
            "customer_name",
            "customer_email",
            "subtotal",
            "tax_rate",
            "tax_amount",
            "discount_type",
            "discount_value",
            "discount_amount",
            "total",
            "payment_method",
            "amount_tendered",
            "change_amount",
            "receipt_token",
            "notes",
            "cashier",
            "cashier_username",
            "created_at",
            "updated_at",
            "completed_at",
            "items",
        ]
        read_only_fields = fields


class ReceiptSerializer(serializers.ModelSerializer):
    """Customer-facing view of one order; no staff or internal identifiers."""

    items = OrderItemSerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "order_number",
            "type",
            "status",
            "table_number",
            "customer_name",
            "subtotal",
            "tax_rate",
            "tax_amount",
            "discount_type",
            "discount_amount",
            "total",
            "payment_method",
            "amount_tendered",
            "change_amount",
            "notes",
            "created_at",
            "completed_at",
            "items",
        ]
        read_only_fields = fields


class CartLineSerializer(serializers.Serializer):
    product_id = serializers.UUIDField(required=False, allow_null=True)
    name = serializers.CharField(max_length=255)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"))
    quantity = serializers.IntegerField(min_value=1)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class OrderCreateSerializer(serializers.Serializer):
    items = CartLineSerializer(many=True, allow_empty=False)
    type = serializers.ChoiceField(choices=Order.Type.choices)
    payment_method = serializers.ChoiceField(choices=Order.PaymentMethod.choices)
    amount_tendered = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True)
    discount_type = serializers.ChoiceField(choices=Order.DiscountType.choices, default=Order.DiscountType.FIXED)
    discount_value = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), default=Decimal("0"))
    table_number = serializers.CharField(max_length=16, required=False, allow_blank=True, default="")
    customer_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    customer_email = serializers.EmailField(required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["discount_type"] == Order.DiscountType.PERCENT and attrs["discount_value"] > 100:
            raise serializers.ValidationError({"discount_value": "Percent discount must be between 0 and 100."})
        return attrs


class OrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.Status.choices)
