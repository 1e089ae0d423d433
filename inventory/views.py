from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from inventory.models import Category, Product
from inventory.serializers import (
    CategorySerializer,
    InventoryItemSerializer,
    InventoryLogSerializer,
    ProductSerializer,
    StockAdjustmentSerializer,
    StockMovementSerializer,
)
from inventory import services


class AuditMixin:
    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )


class CategoryViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Category.objects.filter(is_active=True)
    serializer_class = CategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "catalog.view", "retrieve": "catalog.view"}


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.select_related("category").prefetch_related("recipe_links__inventory_item")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "catalog.view", "retrieve": "catalog.view"}

    def get_queryset(self):
        qs = super().get_queryset()
        category_id = self.request.query_params.get("category")
        if category_id:
            qs = qs.filter(category_id=category_id)
        if self.request.query_params.get("available") in {"1", "true"}:
            qs = qs.filter(is_available=True)
        return qs


class InventoryItemViewSet(AuditMixin, viewsets.ModelViewSet):
    serializer_class = InventoryItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "low_stock": "inventory.view",
        "logs": "inventory.view",
        "create": "inventory.manage",
        "update": "inventory.manage",
        "partial_update": "inventory.manage",
        "restock": "inventory.manage",
        "adjust": "inventory.manage",
        "waste": "inventory.manage",
        "destroy": "inventory.delete",
    }
    audit_entity = "inventory_item"

    def get_queryset(self):
        return services.list_inventory_items()

    def get_object(self):
        return services.get_inventory_item(self.kwargs["pk"])

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item = services.create_inventory_item(actor=request.user, **serializer.validated_data)
        payload = self.get_serializer(item).data
        self._audit(action="inventory_item.create", instance=item, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        instance = self.get_object()
        before_snapshot = self.get_serializer(instance).data
        serializer = self.get_serializer(instance, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        item = services.update_inventory_item(instance.id, **serializer.validated_data)
        payload = self.get_serializer(item).data
        self._audit(action="inventory_item.update", instance=item, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    def destroy(self, request, *args, **kwargs):
        instance = self.get_object()
        before_snapshot = self.get_serializer(instance).data
        item = services.delete_inventory_item(instance.id, actor=request.user)
        self._audit(action="inventory_item.archive", instance=item, before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)

    def _ledger_response(self, item, log, action_name):
        payload = {
            "item": self.get_serializer(item).data,
            "log": InventoryLogSerializer(log).data if log is not None else None,
        }
        self._audit(action=f"inventory_item.{action_name}", instance=item, after_snapshot=payload)
        return Response(payload)

    @action(detail=True, methods=["post"])
    def restock(self, request, pk=None):
        serializer = StockMovementSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item, log = services.restock(
            pk,
            serializer.validated_data["amount"],
            notes=serializer.validated_data["notes"],
            actor=request.user,
        )
        return self._ledger_response(item, log, "restock")

    @action(detail=True, methods=["post"])
    def adjust(self, request, pk=None):
        serializer = StockAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        item, log = services.adjust_stock(
            pk,
            new_stock=data.get("new_stock"),
            delta=data.get("delta"),
            notes=data["notes"],
            actor=request.user,
        )
        return self._ledger_response(item, log, "adjust")

    @action(detail=True, methods=["post"])
    def waste(self, request, pk=None):
        serializer = StockMovementSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item, log = services.record_waste(
            pk,
            serializer.validated_data["amount"],
            notes=serializer.validated_data["notes"],
            actor=request.user,
        )
        return self._ledger_response(item, log, "waste")

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        items = services.low_stock_items()
        return Response({"count": items.count(), "results": self.get_serializer(items, many=True).data})

    @action(detail=True, methods=["get"])
    def logs(self, request, pk=None):
        return Response(InventoryLogSerializer(services.inventory_logs(pk), many=True).data)


class InventoryLogListView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "inventory.view"}

    def get(self, request):
        return Response(InventoryLogSerializer(services.inventory_logs(), many=True).data)
