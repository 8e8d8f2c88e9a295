from django.urls import path, include
from rest_framework.routers import DefaultRouter
from dispatch_api.views import AssignmentViewSet, DriverViewSet, MarketplaceViewSet, OrderViewSet

router = DefaultRouter()
router.register(r'driver', DriverViewSet, basename='driver')
router.register(r'assignments', AssignmentViewSet, basename='assignment')
router.register(r'marketplace', MarketplaceViewSet, basename='marketplace')
router.register(r'orders', OrderViewSet, basename='order')

urlpatterns = [
    path('api/v1/', include(router.urls)),
]
