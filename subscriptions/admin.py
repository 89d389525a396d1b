from django.contrib import admin
from subscriptions.models import Subscription


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = [
        "user",
        "lemonsqueezy_subscription_id",
        "lemonsqueezy_variant_id",
        "status",
        "current_period_end",
        "cancel_at_period_end",
        "created_at",
    ]
    list_filter = ["status", "cancel_at_period_end", "created_at"]
    search_fields = [
        "lemonsqueezy_subscription_id",
        "lemonsqueezy_customer_id",
        "user__email",
        "user__username",
    ]
    readonly_fields = ["lemonsqueezy_subscription_id", "created_at", "updated_at"]
    raw_id_fields = ["user"]
    ordering = ["-created_at"]
