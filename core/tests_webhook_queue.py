"""
Tests for the retry scheduler: the periodic queue pass and the scheduler status query.
"""
from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.utils import timezone
from django_celery_beat.models import CrontabSchedule, PeriodicTask

from core.audit import get_due_queue_items, process_event, record_event
from core.models import WebhookEvent, WebhookEventState, WebhookQueueItem
from core.scheduler import get_scheduler_status
from core.tasks import claim_due_items, process_webhook_queue
from subscriptions.lemonsqueezy_handlers import HandleOrderCreated

RETRY_SETTINGS = dict(
    WEBHOOK_MAX_RETRY_ATTEMPTS=5,
    WEBHOOK_RETRY_DELAYS_SECONDS=[300, 1800, 7200, 86400],
    WEBHOOK_QUEUE_BATCH_SIZE=10,
)


def _queued_event(external_event_id, next_retry, error_count=1):
    event = WebhookEvent.objects.create(
        external_event_id=external_event_id,
        event_name="order_created",
        payload={"meta": {"event_name": "order_created"}, "data": {"id": "1", "attributes": {}}},
        error="boom",
        error_count=error_count,
    )
    WebhookQueueItem.objects.create(webhook_event=event, next_retry=next_retry, last_error="boom")
    return event


@override_settings(**RETRY_SETTINGS)
class ProcessWebhookQueueTest(TestCase):

    def test_processes_due_items(self):
        event = _queued_event("evt_due", timezone.now() - timedelta(minutes=1))

        with patch.object(HandleOrderCreated, "handle"):
            result = process_webhook_queue()

        self.assertEqual(result, {"processed": 1, "failed": 0})
        event.refresh_from_db()
        self.assertTrue(event.processed)
        self.assertFalse(WebhookQueueItem.objects.exists())

    def test_leaves_items_not_yet_due(self):
        event = _queued_event("evt_later", timezone.now() + timedelta(minutes=10))

        with patch.object(HandleOrderCreated, "handle") as mock_handle:
            result = process_webhook_queue()

        mock_handle.assert_not_called()
        self.assertEqual(result, {"processed": 0, "failed": 0})
        event.refresh_from_db()
        self.assertFalse(event.processed)
        self.assertTrue(WebhookQueueItem.objects.filter(webhook_event=event).exists())

    def test_takes_at_most_one_batch(self):
        past = timezone.now() - timedelta(hours=1)
        for i in range(12):
            _queued_event(f"evt_batch_{i}", past + timedelta(seconds=i))

        with patch.object(HandleOrderCreated, "handle"):
            result = process_webhook_queue()

        self.assertEqual(result["processed"], 10)
        remaining = WebhookQueueItem.objects.select_related("webhook_event")
        self.assertEqual(
            sorted(item.webhook_event.external_event_id for item in remaining),
            ["evt_batch_10", "evt_batch_11"],
        )

    def test_failed_retry_is_rescheduled(self):
        now = timezone.now()
        event = _queued_event("evt_fail_again", now - timedelta(minutes=1), error_count=1)

        with patch("django.utils.timezone.now", return_value=now):
            with patch.object(HandleOrderCreated, "handle", side_effect=RuntimeError("still down")):
                result = process_webhook_queue()

        self.assertEqual(result, {"processed": 0, "failed": 1})
        event.refresh_from_db()
        self.assertEqual(event.error_count, 2)
        item = WebhookQueueItem.objects.get(webhook_event=event)
        self.assertEqual(item.retry_count, 2)
        self.assertEqual(item.next_retry, now + timedelta(minutes=30))

    @override_settings(WEBHOOK_QUEUE_LEASE_SECONDS=300)
    def test_items_are_leased_while_processed(self):
        now = timezone.now()
        event = _queued_event("evt_leased", now - timedelta(minutes=1))
        seen = []

        def _attempt(evt, is_retry):
            seen.append(WebhookQueueItem.objects.get(webhook_event=evt).next_retry)
            return True

        with patch("django.utils.timezone.now", return_value=now):
            with patch("core.tasks.process_event", side_effect=_attempt):
                process_webhook_queue()

        self.assertEqual(seen, [now + timedelta(seconds=300)])
        self.assertEqual(WebhookQueueItem.objects.get(webhook_event=event).next_retry, now + timedelta(seconds=300))

    @override_settings(WEBHOOK_QUEUE_LEASE_SECONDS=300)
    def test_claimed_item_returns_after_lease_expires(self):
        now = timezone.now()
        _queued_event("evt_abandoned", now - timedelta(minutes=1))

        self.assertEqual(len(claim_due_items(now)), 1)
        # the worker died: nothing deleted or rescheduled the item
        self.assertEqual(claim_due_items(now + timedelta(seconds=60)), [])
        self.assertEqual(len(claim_due_items(now + timedelta(seconds=301))), 1)


class DueQueueItemsTest(TestCase):

    @override_settings(WEBHOOK_QUEUE_BATCH_SIZE=2)
    def test_oldest_due_first_limited_to_batch(self):
        now = timezone.now()
        _queued_event("evt_newest", now - timedelta(minutes=1))
        _queued_event("evt_oldest", now - timedelta(minutes=3))
        _queued_event("evt_middle", now - timedelta(minutes=2))
        _queued_event("evt_future", now + timedelta(minutes=1))

        due = list(get_due_queue_items(now))

        self.assertEqual([item.webhook_event.external_event_id for item in due], ["evt_oldest", "evt_middle"])


@override_settings(**RETRY_SETTINGS)
class RetryExhaustionScenarioTest(TestCase):
    """A handler that fails on every attempt ends permanently failed and leaves the queue."""

    def setUp(self):
        self.clock = timezone.now()
        patcher = patch("django.utils.timezone.now", side_effect=lambda: self.clock)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_failing_event_exhausts_after_scheduled_ticks(self):
        expected_delays = [
            timedelta(minutes=30),
            timedelta(hours=2),
            timedelta(hours=24),
        ]

        with patch.object(HandleOrderCreated, "handle", side_effect=RuntimeError("handler down")):
            event, created = record_event("wh_always_fails", "order_created", {})
            self.assertTrue(created)
            self.assertFalse(process_event(event))

            item = WebhookQueueItem.objects.get(webhook_event=event)
            self.assertEqual(item.next_retry, self.clock + timedelta(minutes=5))

            for attempt, delay in enumerate(expected_delays, start=2):
                self.clock = item.next_retry
                process_webhook_queue()

                event.refresh_from_db()
                item = WebhookQueueItem.objects.get(webhook_event=event)
                self.assertEqual(event.error_count, attempt)
                self.assertEqual(item.retry_count, attempt)
                self.assertEqual(item.next_retry, self.clock + delay)
                self.assertEqual(event.state, WebhookEventState.PENDING_RETRY)

            # fifth attempt exhausts the budget
            self.clock = item.next_retry
            process_webhook_queue()

            # nothing left for a further tick
            self.clock += timedelta(days=2)
            self.assertEqual(process_webhook_queue(), {"processed": 0, "failed": 0})

        event.refresh_from_db()
        self.assertEqual(event.error_count, 5)
        self.assertEqual(event.error, "Max retries exceeded: handler down")
        self.assertFalse(event.processed)
        self.assertFalse(WebhookQueueItem.objects.filter(webhook_event=event).exists())
        self.assertEqual(event.state, WebhookEventState.PERMANENTLY_FAILED)


@override_settings(**RETRY_SETTINGS)
class SchedulerStatusTest(TestCase):

    def test_jobs_not_yet_synced_by_beat(self):
        status = get_scheduler_status()

        self.assertFalse(status["running"])
        names = {job["name"] for job in status["jobs"]}
        self.assertEqual(names, {"process-webhook-queue", "sync-expired-subscriptions"})
        self.assertTrue(all(job["next_run_at"] is None for job in status["jobs"]))

    def test_next_run_is_computed_from_persisted_schedule(self):
        schedule = CrontabSchedule.objects.create(
            minute="*/5", hour="*", day_of_week="*", day_of_month="*", month_of_year="*",
        )
        PeriodicTask.objects.create(
            name="process-webhook-queue",
            task="core.tasks.process_webhook_queue",
            crontab=schedule,
            last_run_at=timezone.now() - timedelta(minutes=1),
            total_run_count=3,
        )

        status = get_scheduler_status()

        self.assertTrue(status["running"])
        job = next(job for job in status["jobs"] if job["name"] == "process-webhook-queue")
        self.assertTrue(job["enabled"])
        self.assertEqual(job["total_run_count"], 3)
        self.assertIsNotNone(job["next_run_at"])
        self.assertLessEqual(job["next_run_at"], timezone.now() + timedelta(minutes=5, seconds=1))

    def test_queue_stats(self):
        now = timezone.now()
        _queued_event("evt_stats_due", now - timedelta(minutes=1))
        _queued_event("evt_stats_later", now + timedelta(hours=1))
        WebhookEvent.objects.create(external_event_id="evt_stats_failed", event_name="order_created", error_count=5)

        queue = get_scheduler_status()["queue"]

        self.assertEqual(queue["pending_retries"], 2)
        self.assertEqual(queue["due_now"], 1)
        self.assertEqual(queue["next_retry_at"], now - timedelta(minutes=1))
        self.assertEqual(queue["permanently_failed"], 1)
