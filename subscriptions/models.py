import logging

from django.conf import settings
from django.db import models

log = logging.getLogger("prmanager.subscriptions")


class SubscriptionStatus(models.TextChoices):
    ON_TRIAL = "on_trial", "On Trial"
    ACTIVE = "active", "Active"
    PAUSED = "paused", "Paused"
    PAST_DUE = "past_due", "Past Due"
    UNPAID = "unpaid", "Unpaid"
    CANCELLED = "cancelled", "Cancelled"
    EXPIRED = "expired", "Expired"


EXPECTED_TRANSITIONS: dict[str, set[str]] = {
    SubscriptionStatus.ON_TRIAL: {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED, SubscriptionStatus.PAUSED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED, SubscriptionStatus.PAUSED, SubscriptionStatus.UNPAID, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.UNPAID, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.UNPAID: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    # a cancelled subscription can be resumed until its grace period ends
    SubscriptionStatus.CANCELLED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.EXPIRED: set(),
}


class Subscription(models.Model):
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="subscription")

    lemonsqueezy_subscription_id = models.CharField(max_length=255, unique=True, null=True, blank=True)
    lemonsqueezy_customer_id = models.CharField(max_length=255, blank=True, default="")
    lemonsqueezy_variant_id = models.CharField(max_length=255, blank=True, default="")

    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ON_TRIAL,
        db_index=True,
    )

    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True, db_index=True)
    cancel_at_period_end = models.BooleanField(default=False)
    trial_ends_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions"

    def __str__(self):
        return f"{self.user} - {self.lemonsqueezy_subscription_id or 'no subscription'} ({self.status})"

    @property
    def is_active(self) -> bool:
        return self.status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.ON_TRIAL,
            SubscriptionStatus.PAST_DUE,
        )

    def apply_new_status(self, new_status: str):
        if new_status == self.status:
            return
        if new_status not in EXPECTED_TRANSITIONS.get(self.status, set()):
            log.warning(f"Unexpected transition {self.status} -> {new_status} for {self.lemonsqueezy_subscription_id}")
        self.status = new_status


__all__ = (
    "SubscriptionStatus",
    "EXPECTED_TRANSITIONS",
    "Subscription",
)
