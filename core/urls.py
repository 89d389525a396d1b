from django.urls import path
from core.views import health_check, lemonsqueezy_webhook

urlpatterns = [
    path("health/", health_check, name="health-check"),
    path("webhooks/lemonsqueezy/", lemonsqueezy_webhook, name="lemonsqueezy-webhook"),
]
