from django.urls import path
from subscriptions.views import MySubscriptionView


app_name = "subscriptions"

urlpatterns = [
    path("me/", MySubscriptionView.as_view(), name="me"),
]
