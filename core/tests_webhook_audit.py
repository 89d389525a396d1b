"""
Tests for the webhook audit trail: record-or-fetch, error logging with backoff,
the single-attempt processing path and replay.
"""
from datetime import timedelta
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.utils import timezone

from core.audit import (
    get_failed_events,
    get_pending_events,
    get_retry_delay,
    log_error,
    mark_processed,
    process_event,
    record_event,
    replay_event,
)
from core.exceptions import MissingUserReference, WebhookRetry, WebhookSkip
from core.models import WebhookEvent, WebhookEventState, WebhookQueueItem
from subscriptions.lemonsqueezy_handlers import HandleOrderCreated, HandleSubscriptionExpired

User = get_user_model()

RETRY_SETTINGS = dict(
    WEBHOOK_MAX_RETRY_ATTEMPTS=5,
    WEBHOOK_RETRY_DELAYS_SECONDS=[300, 1800, 7200, 86400],
)


def _make_event(external_event_id="evt_audit", event_name="order_created", **kwargs):
    return WebhookEvent.objects.create(
        external_event_id=external_event_id,
        event_name=event_name,
        payload={"meta": {"event_name": event_name}, "data": {"id": "1", "attributes": {}}},
        **kwargs,
    )


@override_settings(**RETRY_SETTINGS)
class RetryDelayTest(TestCase):

    def test_backoff_schedule(self):
        self.assertEqual(get_retry_delay(1), timedelta(minutes=5))
        self.assertEqual(get_retry_delay(2), timedelta(minutes=30))
        self.assertEqual(get_retry_delay(3), timedelta(hours=2))
        self.assertEqual(get_retry_delay(4), timedelta(hours=24))

    def test_delay_is_capped_at_last_entry(self):
        self.assertEqual(get_retry_delay(5), timedelta(hours=24))
        self.assertEqual(get_retry_delay(50), timedelta(hours=24))

    def test_attempt_below_one_uses_first_delay(self):
        self.assertEqual(get_retry_delay(0), timedelta(minutes=5))


class RecordEventTest(TestCase):

    def test_creates_new_event(self):
        event, created = record_event("wh_1", "subscription_created", {"a": 1})

        self.assertTrue(created)
        self.assertEqual(event.payload, {"a": 1})
        self.assertFalse(event.processed)
        self.assertEqual(event.error_count, 0)

    def test_duplicate_returns_existing_row(self):
        first, _ = record_event("wh_dup", "subscription_created", {"a": 1})
        second, created = record_event("wh_dup", "subscription_created", {"a": 2})

        self.assertFalse(created)
        self.assertEqual(second.pk, first.pk)
        self.assertEqual(second.payload, {"a": 1})
        self.assertEqual(WebhookEvent.objects.filter(external_event_id="wh_dup").count(), 1)

    def test_unknown_event_name_is_recorded_raw(self):
        event, created = record_event("wh_unknown", "license_key_created", {})
        self.assertTrue(created)
        self.assertEqual(event.event_name, "license_key_created")


@override_settings(**RETRY_SETTINGS)
class LogErrorTest(TestCase):

    def setUp(self):
        self.now = timezone.now()
        self.event = _make_event()

    def test_first_error_enqueues_with_first_delay(self):
        with patch("django.utils.timezone.now", return_value=self.now):
            log_error(self.event, "boom")

        self.assertEqual(self.event.error_count, 1)
        self.assertEqual(self.event.error, "boom")
        item = WebhookQueueItem.objects.get(webhook_event=self.event)
        self.assertEqual(item.retry_count, 1)
        self.assertEqual(item.next_retry, self.now + timedelta(minutes=5))
        self.assertEqual(item.last_error, "boom")

    def test_subsequent_errors_advance_the_same_item(self):
        with patch("django.utils.timezone.now", return_value=self.now):
            log_error(self.event, "first")
            log_error(self.event, "second")
            log_error(self.event, "third")

        self.assertEqual(self.event.error_count, 3)
        self.assertEqual(WebhookQueueItem.objects.filter(webhook_event=self.event).count(), 1)
        item = WebhookQueueItem.objects.get(webhook_event=self.event)
        self.assertEqual(item.retry_count, 3)
        self.assertEqual(item.next_retry, self.now + timedelta(hours=2))
        self.assertEqual(item.last_error, "third")

    def test_no_retry_requested(self):
        log_error(self.event, "fatal", should_retry=False)

        self.assertEqual(self.event.error_count, 1)
        self.assertFalse(WebhookQueueItem.objects.filter(webhook_event=self.event).exists())

    def test_reaching_max_does_not_enqueue_or_delete(self):
        WebhookEvent.objects.filter(pk=self.event.pk).update(error_count=4)
        item = WebhookQueueItem.objects.create(webhook_event=self.event, next_retry=self.now)

        log_error(self.event, "fifth")

        self.assertEqual(self.event.error_count, 5)
        item.refresh_from_db()
        self.assertEqual(item.retry_count, 1)
        self.assertEqual(item.next_retry, self.now)

    def test_mark_processed_keeps_last_error(self):
        log_error(self.event, "boom")
        mark_processed(self.event)

        self.event.refresh_from_db()
        self.assertTrue(self.event.processed)
        self.assertIsNotNone(self.event.processed_at)
        self.assertEqual(self.event.error, "boom")


@override_settings(**RETRY_SETTINGS)
class ProcessEventTest(TestCase):

    def setUp(self):
        self.event = _make_event()

    def test_success_marks_processed_and_clears_queue(self):
        WebhookQueueItem.objects.create(webhook_event=self.event, next_retry=timezone.now())

        with patch.object(HandleOrderCreated, "handle") as mock_handle:
            self.assertTrue(process_event(self.event))

        mock_handle.assert_called_once_with(self.event.payload)
        self.assertTrue(self.event.processed)
        self.assertIsNotNone(self.event.processed_at)
        self.assertFalse(WebhookQueueItem.objects.filter(webhook_event=self.event).exists())

    def test_already_processed_is_not_dispatched_again(self):
        WebhookEvent.objects.filter(pk=self.event.pk).update(processed=True, processed_at=timezone.now())

        with patch.object(HandleOrderCreated, "handle") as mock_handle:
            self.assertTrue(process_event(self.event))

        mock_handle.assert_not_called()

    def test_skip_marks_processed(self):
        with patch.object(HandleOrderCreated, "handle", side_effect=WebhookSkip("nothing to apply")):
            self.assertTrue(process_event(self.event))

        self.assertTrue(self.event.processed)
        self.assertIsNone(self.event.error)
        self.assertEqual(self.event.error_count, 0)

    def test_transient_failure_is_queued(self):
        with patch.object(HandleOrderCreated, "handle", side_effect=RuntimeError("db hiccup")):
            self.assertFalse(process_event(self.event))

        self.event.refresh_from_db()
        self.assertFalse(self.event.processed)
        self.assertEqual(self.event.error_count, 1)
        self.assertEqual(self.event.error, "db hiccup")
        self.assertEqual(self.event.state, WebhookEventState.PENDING_RETRY)

    def test_webhook_retry_is_queued(self):
        with patch.object(HandleOrderCreated, "handle", side_effect=WebhookRetry("user not committed")):
            self.assertFalse(process_event(self.event))

        self.assertTrue(WebhookQueueItem.objects.filter(webhook_event=self.event).exists())

    def test_non_retryable_failure_is_not_queued(self):
        WebhookQueueItem.objects.create(webhook_event=self.event, next_retry=timezone.now())

        with patch.object(HandleOrderCreated, "handle", side_effect=MissingUserReference("no user_id")):
            self.assertFalse(process_event(self.event, is_retry=True))

        self.event.refresh_from_db()
        self.assertEqual(self.event.error_count, 1)
        self.assertEqual(self.event.error, "no user_id")
        self.assertFalse(WebhookQueueItem.objects.filter(webhook_event=self.event).exists())
        self.assertEqual(self.event.state, WebhookEventState.PENDING)

    def test_failed_handler_effects_are_rolled_back(self):
        event = _make_event("evt_rollback", event_name="subscription_expired")

        def _write_then_fail(payload):
            User.objects.create_user(username="ghost", password="x")
            raise RuntimeError("after write")

        with patch.object(HandleSubscriptionExpired, "handle", side_effect=_write_then_fail):
            self.assertFalse(process_event(event))

        self.assertFalse(User.objects.filter(username="ghost").exists())
        event.refresh_from_db()
        self.assertFalse(event.processed)
        self.assertEqual(event.error_count, 1)

    def test_last_retry_failure_is_permanent(self):
        WebhookEvent.objects.filter(pk=self.event.pk).update(error_count=4, error="boom")
        WebhookQueueItem.objects.create(webhook_event=self.event, retry_count=4, next_retry=timezone.now())

        with patch.object(HandleOrderCreated, "handle", side_effect=RuntimeError("still down")):
            self.assertFalse(process_event(self.event, is_retry=True))

        self.event.refresh_from_db()
        self.assertEqual(self.event.error, "Max retries exceeded: still down")
        self.assertEqual(self.event.error_count, 5)
        self.assertFalse(self.event.processed)
        self.assertFalse(WebhookQueueItem.objects.filter(webhook_event=self.event).exists())
        self.assertEqual(self.event.state, WebhookEventState.PERMANENTLY_FAILED)

    def test_unknown_event_name_is_processed_without_effect(self):
        event = _make_event("evt_unknown", event_name="license_key_created")
        self.assertTrue(process_event(event))
        self.assertTrue(event.processed)


@override_settings(**RETRY_SETTINGS)
class ReplayEventTest(TestCase):

    def test_replay_resets_and_queues_due_now(self):
        event = _make_event(processed=True, processed_at=timezone.now(), error="old", error_count=2)

        replay_event(event.pk)

        event.refresh_from_db()
        self.assertFalse(event.processed)
        self.assertIsNone(event.processed_at)
        self.assertIsNone(event.error)
        self.assertEqual(event.error_count, 2)
        item = WebhookQueueItem.objects.get(webhook_event=event)
        self.assertLessEqual(item.next_retry, timezone.now())

    def test_replay_of_exhausted_event_is_not_queued(self):
        event = _make_event(error="Max retries exceeded: boom", error_count=5)

        with self.assertLogs("prmanager.core.audit", level="WARNING"):
            replay_event(event.pk)

        self.assertFalse(WebhookQueueItem.objects.filter(webhook_event=event).exists())

    def test_replay_with_dispatch_now(self):
        event = _make_event(error="Max retries exceeded: boom", error_count=5)

        with patch.object(HandleOrderCreated, "handle") as mock_handle:
            replay_event(event.pk, dispatch_now=True)

        mock_handle.assert_called_once()
        event.refresh_from_db()
        self.assertTrue(event.processed)
        self.assertEqual(event.error_count, 5)

    def test_replay_unknown_id_raises(self):
        with self.assertRaises(WebhookEvent.DoesNotExist):
            replay_event(999999)


@override_settings(**RETRY_SETTINGS)
class EventQueriesTest(TestCase):

    def test_pending_and_failed_partition(self):
        pending = _make_event("evt_pending")
        retrying = _make_event("evt_retrying", error_count=2)
        failed = _make_event("evt_failed", error_count=5)
        _make_event("evt_done", processed=True, processed_at=timezone.now())

        self.assertEqual({e.pk for e in get_pending_events()}, {pending.pk, retrying.pk})
        self.assertEqual([e.pk for e in get_failed_events()], [failed.pk])

    def test_limit_is_respected(self):
        for i in range(3):
            _make_event(f"evt_limit_{i}")
        self.assertEqual(len(get_pending_events(limit=2)), 2)
