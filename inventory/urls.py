from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import CategoryViewSet, InventoryItemViewSet, InventoryLogListView, ProductViewSet

router = DefaultRouter()
router.register(r"categories", CategoryViewSet, basename="category")
router.register(r"products", ProductViewSet, basename="product")
router.register(r"inventory-items", InventoryItemViewSet, basename="inventory-item")

urlpatterns = router.urls + [
    path("inventory-logs/", InventoryLogListView.as_view(), name="inventory-logs"),
]
