from django.conf import settings
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from common.audit import get_request_id
from common.permissions import RoleCapabilityPermission
from core.services import load_store_settings, load_store_settings_snapshot
from sales import services
from sales.kitchen import BOARD_STATUSES, project_kitchen_board
from sales.serializers import (
    OrderCreateSerializer,
    OrderSerializer,
    OrderStatusSerializer,
    ReceiptSerializer,
)
from sales.transitions import allowed_next_statuses


class OrderViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "orders.view",
        "retrieve": "orders.view",
        "create": "orders.create",
        "change_status": "orders.status.update",
    }

    def get_queryset(self):
        return services.list_orders(self.request.query_params.get("status") or None)

    def get_object(self):
        return services.get_order(self.kwargs["pk"])

    def create(self, request):
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order, receipt_token = services.create_order(
            [dict(line) for line in data["items"]],
            data["type"],
            data["payment_method"],
            load_store_settings_snapshot(request),
            customer={"name": data["customer_name"], "email": data["customer_email"]},
            amount_tendered=data.get("amount_tendered"),
            discount={"type": data["discount_type"], "value": data["discount_value"]},
            notes=data["notes"],
            table_number=data["table_number"],
            cashier=request.user,
            request_id=get_request_id(request),
        )
        order = services.get_order(order.id)
        return Response(
            {"order": OrderSerializer(order).data, "receipt_token": receipt_token},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="status")
    def change_status(self, request, pk=None):
        serializer = OrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = services.update_order_status(
            pk,
            serializer.validated_data["status"],
            actor=request.user,
            request_id=get_request_id(request),
        )
        return Response(self.get_serializer(order).data)


class ReceiptView(APIView):
    """Public receipt by token. The token is the only credential."""

    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "receipt"

    def get(self, request, token):
        order = services.get_order_by_token(token)
        if order is None:
            return Response({"order": None})

        store = load_store_settings(request)
        return Response(
            {
                "order": ReceiptSerializer(order).data,
                "store": {
                    "store_name": store.store_name,
                    "store_address": store.store_address,
                    "store_phone": store.store_phone,
                    "currency_symbol": store.currency_symbol,
                    "receipt_header": store.receipt_header,
                    "receipt_footer": store.receipt_footer,
                },
            }
        )


def _ticket_payload(ticket):
    order = ticket.order
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "type": order.type,
        "table_number": order.table_number,
        "customer_name": order.customer_name,
        "notes": order.notes,
        "created_at": order.created_at,
        "elapsed_seconds": ticket.elapsed_seconds,
        "elapsed_label": ticket.elapsed_label,
        "urgent": ticket.urgent,
        "next_statuses": allowed_next_statuses(order.status),
        "items": [
            {"index": line.index, "name": line.name, "quantity": line.quantity, "notes": line.notes}
            for line in order.lines
        ],
    }


class KitchenOrdersView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "kitchen.view"}

    def get(self, request):
        board = project_kitchen_board(services.active_orders())
        return Response(
            {
                "generated_at": board.generated_at,
                "refresh_seconds": settings.KITCHEN_REFRESH_SECONDS,
                "urgent_count": board.urgent_count,
                "columns": {
                    status: [_ticket_payload(ticket) for ticket in board.column(status)] for status in BOARD_STATUSES
                },
            }
        )
