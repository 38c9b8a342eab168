from rest_framework.routers import DefaultRouter

from inventory.views import BatchViewSet, LocationViewSet, ProductViewSet, SupplierViewSet

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"locations", LocationViewSet, basename="location")
router.register(r"batches", BatchViewSet, basename="batch")

urlpatterns = router.urls
