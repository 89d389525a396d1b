"""
Webhook audit trail and retry queue.

Every delivery is recorded in WebhookEvent before anything is dispatched, and the row
is never deleted. process_event() is the single place where an attempt is made, for
ingestion, the retry scheduler and replays alike:

    pending ──► processed
       │
       └──► pending_retry ──► ... ──► processed | permanently_failed

The business effect and the "processed" flag commit in one transaction, so a crash
between the two leaves the event pending and the next attempt re-applies an
idempotent handler.
"""
import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db import IntegrityError, models, transaction
from django.utils import timezone

from core.exceptions import WebhookError, WebhookSkip
from core.lemonsqueezy.event_handler import dispatch_event
from core.models import WebhookEvent, WebhookQueueItem

log = logging.getLogger("prmanager.core.audit")

EXHAUSTED_PREFIX = "Max retries exceeded"


def max_attempts() -> int:
    return settings.WEBHOOK_MAX_RETRY_ATTEMPTS


def get_retry_delay(attempt: int) -> timedelta:
    delays = settings.WEBHOOK_RETRY_DELAYS_SECONDS
    index = min(max(attempt, 1) - 1, len(delays) - 1)
    return timedelta(seconds=delays[index])


def record_event(external_event_id: str, event_name: str, payload: dict) -> tuple[WebhookEvent, bool]:
    try:
        with transaction.atomic():
            event = WebhookEvent.objects.create(
                external_event_id=external_event_id,
                event_name=event_name,
                payload=payload,
            )
    except IntegrityError:
        existing = WebhookEvent.objects.filter(external_event_id=external_event_id).first()
        if existing is None:
            raise
        log.warning(f"Duplicate webhook event {external_event_id}, using existing record {existing.pk}")
        return existing, False

    log.info(f"Webhook event logged: {event_name} ({external_event_id})")
    return event, True


def mark_processed(event: WebhookEvent) -> None:
    now = timezone.now()
    WebhookEvent.objects.filter(pk=event.pk).update(processed=True, processed_at=now)
    event.processed = True
    event.processed_at = now
    log.info(f"Webhook event {event.pk} marked processed")


def enqueue_for_retry(event: WebhookEvent, delay: timedelta, last_error: str = "") -> WebhookQueueItem:
    next_retry = timezone.now() + delay

    with transaction.atomic():
        item = WebhookQueueItem.objects.select_for_update().filter(webhook_event=event).first()
        if item is not None:
            item.next_retry = next_retry
            item.retry_count = models.F("retry_count") + 1
            item.last_error = last_error
            item.save(update_fields=["next_retry", "retry_count", "last_error"])
            item.refresh_from_db(fields=["retry_count"])
        else:
            item = WebhookQueueItem.objects.create(
                webhook_event=event,
                next_retry=next_retry,
                retry_count=1,
                last_error=last_error,
            )

    log.info(f"Webhook event {event.pk} enqueued for retry #{item.retry_count} at {next_retry.isoformat()}")
    return item


def log_error(event: WebhookEvent, error, should_retry: bool = True) -> WebhookEvent:
    """
    Record a failed attempt and, while attempts remain, schedule the next one.

    Exhaustion is the caller's business: when error_count reaches the maximum
    nothing is enqueued, and an existing queue item is left in place.
    """
    message = str(error)

    with transaction.atomic():
        WebhookEvent.objects.filter(pk=event.pk).update(
            error=message,
            error_count=models.F("error_count") + 1,
        )
        event.refresh_from_db(fields=["error", "error_count"])

        log.error(f"Webhook event {event.pk} error (attempt {event.error_count}): {message}")

        if should_retry and event.error_count < max_attempts():
            enqueue_for_retry(event, get_retry_delay(event.error_count), last_error=message)

    return event


def mark_permanently_failed(event: WebhookEvent, error) -> None:
    message = f"{EXHAUSTED_PREFIX}: {error}"

    with transaction.atomic():
        WebhookEvent.objects.filter(pk=event.pk).update(error=message, error_count=max_attempts())
        WebhookQueueItem.objects.filter(webhook_event_id=event.pk).delete()

    event.refresh_from_db(fields=["error", "error_count"])
    log.error(f"Webhook event {event.pk} permanently failed after {event.error_count} attempts: {error}")


def _record_failure(event: WebhookEvent, exc: Exception, is_retry: bool) -> None:
    if isinstance(exc, WebhookError) and exc.retryable is False:
        log.error(f"Non-retryable failure for webhook event {event.pk} ({exc.key}): {exc}")
        log_error(event, exc, should_retry=False)
        WebhookQueueItem.objects.filter(webhook_event_id=event.pk).delete()
        return

    if not isinstance(exc, WebhookError):
        log.exception(f"Unexpected error processing webhook event {event.pk}")

    event.refresh_from_db(fields=["error_count"])
    if event.error_count + 1 >= max_attempts():
        mark_permanently_failed(event, exc)
        return

    if is_retry:
        log.warning(f"Retry failed for webhook event {event.pk}, rescheduling")
    log_error(event, exc, should_retry=True)


def process_event(event: WebhookEvent, is_retry: bool = False) -> bool:
    """
    Make one dispatch attempt for ``event``.

    Returns True when the event is processed (now or already), False when the attempt
    failed. Failures are recorded in the audit trail and retry queue, never raised.
    """
    try:
        with transaction.atomic():
            locked = WebhookEvent.objects.select_for_update().get(pk=event.pk)

            if locked.processed:
                log.debug(f"Webhook event {locked.pk} already processed")
            else:
                try:
                    dispatch_event(locked.event_name, locked.payload)
                except WebhookSkip as e:
                    log.info(f"Skipped webhook event {locked.pk} ({locked.event_name}): {e}")
                mark_processed(locked)

            WebhookQueueItem.objects.filter(webhook_event_id=locked.pk).delete()

    except Exception as exc:
        _record_failure(event, exc, is_retry=is_retry)
        return False

    event.refresh_from_db()
    return True


def replay_event(event_id: int, dispatch_now: bool = False) -> WebhookEvent:
    """
    Reset an event so it is processed again. error_count is kept.

    With dispatch_now the attempt is made immediately; otherwise the event is queued
    for the next scheduler tick, provided it has attempts left.
    """
    event = WebhookEvent.objects.get(pk=event_id)
    log.info(f"Replaying webhook event {event.pk} ({event.event_name})")

    with transaction.atomic():
        WebhookEvent.objects.filter(pk=event.pk).update(processed=False, processed_at=None, error=None)
        event.refresh_from_db()

        if not dispatch_now:
            if event.error_count < max_attempts():
                WebhookQueueItem.objects.update_or_create(
                    webhook_event=event,
                    defaults={"next_retry": timezone.now()},
                )
            else:
                log.warning(
                    f"Webhook event {event.pk} has exhausted its attempts, "
                    f"it will only be reprocessed by an immediate replay"
                )

    if dispatch_now:
        process_event(event, is_retry=True)

    return event


def get_pending_events(limit: int = 100):
    return (
        WebhookEvent.objects.filter(processed=False, error_count__lt=max_attempts())
        .select_related("queue_item")
        .order_by("created_at")[:limit]
    )


def get_failed_events(limit: int = 100):
    return WebhookEvent.objects.filter(error_count__gte=max_attempts()).order_by("-created_at")[:limit]


def get_due_queue_items(now: Optional[timezone.datetime] = None, limit: Optional[int] = None, lock: bool = False):
    """
    Oldest due queue items, at most ``limit``. With ``lock`` the rows are locked
    with SKIP LOCKED so concurrent passes never pick the same item; call it inside
    a transaction.
    """
    now = now or timezone.now()
    limit = limit or settings.WEBHOOK_QUEUE_BATCH_SIZE
    qs = (
        WebhookQueueItem.objects.filter(next_retry__lte=now)
        .select_related("webhook_event")
        .order_by("next_retry")
    )
    if lock:
        qs = qs.select_for_update(skip_locked=True, of=("self",))
    return qs[:limit]


__all__ = (
    "EXHAUSTED_PREFIX",
    "get_retry_delay",
    "record_event",
    "mark_processed",
    "enqueue_for_retry",
    "log_error",
    "mark_permanently_failed",
    "process_event",
    "replay_event",
    "get_pending_events",
    "get_failed_events",
    "get_due_queue_items",
)
