from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import generics, permissions
from rest_framework.exceptions import NotFound

from subscriptions.models import Subscription
from subscriptions.serializers import SubscriptionSerializer


@extend_schema(
    summary="My subscription",
    description="Returns the authenticated user's subscription status.",
    responses={
        200: SubscriptionSerializer,
        404: OpenApiResponse(description="The user has no subscription"),
    },
    tags=["Subscriptions"],
)
class MySubscriptionView(generics.RetrieveAPIView):
    permission_classes = [permissions.IsAuthenticated]
    serializer_class = SubscriptionSerializer

    def get_object(self):
        subscription = Subscription.objects.select_related("user").filter(user=self.request.user).first()
        if subscription is None:
            raise NotFound("No subscription")
        return subscription
