import logging

from celery import shared_task
from django.db.models import Q
from django.utils import timezone

from subscriptions.models import Subscription, SubscriptionStatus

log = logging.getLogger("prmanager.subscriptions.tasks")


@shared_task
def sync_expired_subscriptions():
    """Expire subscriptions whose paid period or trial ended without an expiry webhook."""
    now = timezone.now()

    lapsed = Subscription.objects.filter(
        Q(status=SubscriptionStatus.ACTIVE, current_period_end__lt=now)
        | Q(status=SubscriptionStatus.ON_TRIAL, current_period_end__lt=now)
        | Q(status=SubscriptionStatus.ON_TRIAL, trial_ends_at__lt=now)
    )

    count = lapsed.update(status=SubscriptionStatus.EXPIRED, updated_at=now)

    if count:
        log.info(f"Expired {count} lapsed subscriptions")
    else:
        log.debug("No lapsed subscriptions")

    return count


__all__ = ("sync_expired_subscriptions",)
