from rest_framework import serializers

from subscriptions.models import Subscription


class SubscriptionSerializer(serializers.ModelSerializer):
    status_display = serializers.CharField(source="get_status_display", read_only=True)
    user_email = serializers.EmailField(source="user.email", read_only=True)
    is_active = serializers.BooleanField(read_only=True)

    class Meta:
        model = Subscription
        fields = [
            "id",
            "user_email",
            "lemonsqueezy_subscription_id",
            "lemonsqueezy_variant_id",
            "status",
            "status_display",
            "is_active",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "trial_ends_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields
