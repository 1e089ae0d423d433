from django.urls import path
from rest_framework.routers import DefaultRouter

from sales.reports import DashboardStatsView
from sales.views import KitchenOrdersView, OrderViewSet, ReceiptView

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")

urlpatterns = router.urls + [
    path("receipts/<str:token>/", ReceiptView.as_view(), name="receipt"),
    path("kitchen/orders/", KitchenOrdersView.as_view(), name="kitchen-orders"),
    path("reports/dashboard/", DashboardStatsView.as_view(), name="dashboard-stats"),
]
