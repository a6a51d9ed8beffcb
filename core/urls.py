from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AuditLogViewSet, healthz, me, readyz

router = DefaultRouter()
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("me/", me, name="me"),
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]
