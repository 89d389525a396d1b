from django.urls import path, include
from rest_framework.routers import DefaultRouter
from core.views import SchedulerStatusView, WebhookEventViewSet


app_name = "webhook-admin"
router = DefaultRouter()
router.include_root_view = False
router.register(r"", WebhookEventViewSet, basename="webhook-event")


urlpatterns = [
    path("scheduler/", SchedulerStatusView.as_view(), name="scheduler-status"),
    path("", include(router.urls)),
]
