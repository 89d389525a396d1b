import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.audit import get_due_queue_items, process_event
from core.models import WebhookQueueItem

log = logging.getLogger("prmanager.core.tasks")


def claim_due_items(now):
    """
    Take one batch of due queue items and push their next_retry out by the lease,
    so a concurrent pass skips them while this one works. An item whose worker
    dies becomes due again once the lease runs out.
    """
    is_postgres = getattr(settings, "IS_POSTGRES", False)
    lease_until = now + timedelta(seconds=settings.WEBHOOK_QUEUE_LEASE_SECONDS)

    with transaction.atomic():
        due = list(get_due_queue_items(now, lock=is_postgres))
        if due:
            WebhookQueueItem.objects.filter(pk__in=[item.pk for item in due]).update(next_retry=lease_until)

    return due


@shared_task
def process_webhook_queue():
    processed_count = 0
    failed_count = 0

    due = claim_due_items(timezone.now())
    if not due:
        log.debug("No webhook retries due")
        return {"processed": 0, "failed": 0}

    log.info(f"Processing {len(due)} due webhook retries")

    # each attempt commits on its own
    for item in due:
        event = item.webhook_event
        log.info(
            f"Retrying webhook event {event.pk} ({event.event_name}), "
            f"retry #{item.retry_count}, error count {event.error_count}"
        )

        if process_event(event, is_retry=True):
            processed_count += 1
        else:
            failed_count += 1

    log.info(f"Webhook retry pass done: {processed_count} processed, {failed_count} failed")
    return {"processed": processed_count, "failed": failed_count}


__all__ = ("claim_due_items", "process_webhook_queue")
