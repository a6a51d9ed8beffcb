from rest_framework.routers import DefaultRouter

from inventory.views import (
    AdminProductViewSet,
    AdminWarehouseViewSet,
    DocumentViewSet,
    ProductViewSet,
    StockLevelViewSet,
    StockMoveViewSet,
    WarehouseViewSet,
)

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"warehouses", WarehouseViewSet, basename="warehouse")
router.register(r"documents", DocumentViewSet, basename="document")
router.register(r"stock-moves", StockMoveViewSet, basename="stock-move")
router.register(r"stock-levels", StockLevelViewSet, basename="stock-level")
router.register(r"admin/products", AdminProductViewSet, basename="admin-product")
router.register(r"admin/warehouses", AdminWarehouseViewSet, basename="admin-warehouse")

urlpatterns = router.urls
