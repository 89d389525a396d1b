from django.conf import settings
from django.db import models


class WebhookEventName(models.TextChoices):
    SUBSCRIPTION_CREATED = "subscription_created", "Subscription Created"
    SUBSCRIPTION_UPDATED = "subscription_updated", "Subscription Updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled", "Subscription Cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired", "Subscription Expired"
    SUBSCRIPTION_PAUSED = "subscription_paused", "Subscription Paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed", "Subscription Resumed"
    SUBSCRIPTION_TRIAL_WILL_END = "subscription_trial_will_end", "Subscription Trial Will End"
    SUBSCRIPTION_PAYMENT_SUCCESS = "subscription_payment_success", "Subscription Payment Success"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed", "Subscription Payment Failed"
    ORDER_CREATED = "order_created", "Order Created"


class WebhookEventState(models.TextChoices):
    PENDING = "pending", "Pending"
    PENDING_RETRY = "pending_retry", "Pending Retry"
    PROCESSED = "processed", "Processed"
    PERMANENTLY_FAILED = "permanently_failed", "Permanently Failed"


class WebhookEvent(models.Model):
    # event_name is not restricted to WebhookEventName: unknown names are still recorded
    external_event_id = models.CharField(max_length=255, unique=True, db_index=True)
    event_name = models.CharField(max_length=100, db_index=True)
    payload = models.JSONField(default=dict)

    processed = models.BooleanField(default=False, db_index=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    error = models.TextField(null=True, blank=True)
    error_count = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = "webhook_events"

    def __str__(self):
        return f"{self.event_name} ({self.external_event_id}) [{self.state}]"

    def __repr__(self):
        return (
            f"WebhookEvent(id={self.external_event_id!r}, name={self.event_name!r}, "
            f"processed={self.processed}, errors={self.error_count})"
        )

    @property
    def state(self) -> str:
        if self.processed:
            return WebhookEventState.PROCESSED
        if self.error_count >= settings.WEBHOOK_MAX_RETRY_ATTEMPTS:
            return WebhookEventState.PERMANENTLY_FAILED
        if self.has_queue_item:
            return WebhookEventState.PENDING_RETRY
        return WebhookEventState.PENDING

    @property
    def has_queue_item(self) -> bool:
        try:
            return self.queue_item is not None
        except WebhookQueueItem.DoesNotExist:
            return False


class WebhookQueueItem(models.Model):
    webhook_event = models.OneToOneField(WebhookEvent, on_delete=models.CASCADE, related_name="queue_item")

    retry_count = models.PositiveIntegerField(default=1)
    next_retry = models.DateTimeField(db_index=True)
    last_error = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "webhook_queue"

    def __str__(self):
        return f"{self.webhook_event.external_event_id} retry #{self.retry_count} @ {self.next_retry}"

    def __repr__(self):
        return f"WebhookQueueItem(event={self.webhook_event_id}, retry_count={self.retry_count}, next={self.next_retry})"


__all__ = (
    "WebhookEventName",
    "WebhookEventState",
    "WebhookEvent",
    "WebhookQueueItem",
)
