"""
Integration tests for the Lemon Squeezy webhook endpoint.
Tests the full flow: HTTP request -> signature verification -> audit record -> dispatch -> response.

A validly signed delivery is always acknowledged with 200, whatever happens in its
handler; failures end up in the audit trail and retry queue instead.
"""
from unittest.mock import patch

from django.contrib.auth.models import Permission
from django.core.cache import cache
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from core.audit import record_event
from core.exceptions import WebhookRetry
from core.models import WebhookEvent, WebhookEventState, WebhookQueueItem
from core.tasks import process_webhook_queue
from subscriptions.lemonsqueezy_handlers import HandleSubscriptionCreated
from subscriptions.models import Subscription, SubscriptionStatus
from testing_utils import WEBHOOK_SECRET, encode, make_lemonsqueezy_event, make_subscription, make_user, sign


@override_settings(LEMONSQUEEZY_WEBHOOK_SECRET=WEBHOOK_SECRET)
class WebhookEndpointIntegrationTest(TestCase):

    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.url = "/api/webhooks/lemonsqueezy/"
        self.user = make_user()

    def _post(self, body: bytes, signature=None):
        headers = {}
        if signature is not None:
            headers["HTTP_X_SIGNATURE"] = signature
        return self.client.post(self.url, data=body, content_type="application/json", **headers)

    def _post_signed(self, payload):
        body = encode(payload)
        return self._post(body, sign(body))

    def test_subscription_created_creates_active_subscription(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk, subscription_id="1001")

        response = self._post_signed(payload)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["received"])
        self.assertNotIn("cached", response.data)

        subscription = Subscription.objects.get(user=self.user)
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(subscription.lemonsqueezy_subscription_id, "1001")

        event = WebhookEvent.objects.get(external_event_id=response.data["eventId"])
        self.assertTrue(event.processed)
        self.assertEqual(event.payload, payload)

    def test_identical_redelivery_is_cached(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk)
        body = encode(payload)

        first = self._post(body, sign(body))
        second = self._post(body, sign(body))

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.data["cached"])
        self.assertEqual(second.data["eventId"], first.data["eventId"])
        self.assertEqual(Subscription.objects.filter(user=self.user).count(), 1)
        self.assertEqual(WebhookEvent.objects.count(), 1)

    def test_redelivery_with_same_webhook_id_is_cached(self):
        first = self._post_signed(make_lemonsqueezy_event(user_id=self.user.pk, webhook_id="wh_same"))
        second = self._post_signed(make_lemonsqueezy_event(user_id=self.user.pk, webhook_id="wh_same"))

        self.assertEqual(first.data["eventId"], "wh_same")
        self.assertTrue(second.data["cached"])
        self.assertEqual(WebhookEvent.objects.count(), 1)

    def test_cancelled_marks_subscription_cancelled(self):
        make_subscription(user=self.user, lemonsqueezy_subscription_id="2002", status=SubscriptionStatus.ACTIVE)
        payload = make_lemonsqueezy_event(
            "subscription_cancelled",
            user_id=self.user.pk,
            subscription_id="2002",
            status="cancelled",
            cancelled=True,
        )

        response = self._post_signed(payload)

        self.assertEqual(response.status_code, 200)
        subscription = Subscription.objects.get(user=self.user)
        self.assertEqual(subscription.status, SubscriptionStatus.CANCELLED)
        self.assertTrue(subscription.cancel_at_period_end)

    def test_missing_signature_returns_400_without_record(self):
        response = self._post(encode(make_lemonsqueezy_event(user_id=self.user.pk)))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data, {"error": "Missing x-signature header"})
        self.assertFalse(WebhookEvent.objects.exists())

    def test_invalid_signature_returns_400_without_record(self):
        body = encode(make_lemonsqueezy_event(user_id=self.user.pk))

        response = self._post(body, sign(body, secret="wrong_secret"))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data, {"error": "Invalid signature"})
        self.assertFalse(WebhookEvent.objects.exists())

    @override_settings(LEMONSQUEEZY_WEBHOOK_SECRET="")
    def test_unconfigured_secret_returns_500(self):
        body = encode(make_lemonsqueezy_event(user_id=self.user.pk))

        response = self._post(body, sign(body))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data, {"error": "Server configuration error"})
        self.assertFalse(WebhookEvent.objects.exists())

    def test_unparseable_payload_returns_400_without_record(self):
        body = b"{not json"

        response = self._post(body, sign(body))

        self.assertEqual(response.status_code, 400)
        self.assertTrue(response.data["error"].startswith("Webhook Error: "))
        self.assertFalse(WebhookEvent.objects.exists())

    def test_schema_invalid_payload_returns_400(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk)
        del payload["data"]["attributes"]["status"]

        response = self._post_signed(payload)

        self.assertEqual(response.status_code, 400)
        self.assertIn("status", response.data["error"])
        self.assertFalse(WebhookEvent.objects.exists())

    def test_missing_user_id_is_acknowledged_and_not_retried(self):
        response = self._post_signed(make_lemonsqueezy_event("subscription_created"))

        self.assertEqual(response.status_code, 200)
        event = WebhookEvent.objects.get()
        self.assertFalse(event.processed)
        self.assertEqual(event.error_count, 1)
        self.assertFalse(WebhookQueueItem.objects.exists())
        self.assertFalse(Subscription.objects.exists())

    def test_unknown_user_is_queued_for_retry(self):
        response = self._post_signed(make_lemonsqueezy_event("subscription_created", user_id=999999))

        self.assertEqual(response.status_code, 200)
        event = WebhookEvent.objects.get()
        self.assertEqual(event.error_count, 1)
        self.assertTrue(WebhookQueueItem.objects.filter(webhook_event=event).exists())

    def test_handler_crash_is_acknowledged(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk)

        with patch.object(HandleSubscriptionCreated, "handle", side_effect=RuntimeError("db went away")):
            response = self._post_signed(payload)

        self.assertEqual(response.status_code, 200)
        self.assertNotIn("cached", response.data)
        event = WebhookEvent.objects.get()
        self.assertEqual(event.error, "db went away")
        self.assertTrue(WebhookQueueItem.objects.filter(webhook_event=event).exists())

    def test_unknown_event_name_is_recorded_and_processed(self):
        payload = {"meta": {"event_name": "license_key_created"}, "data": {"id": "1", "attributes": {}}}

        response = self._post_signed(payload)

        self.assertEqual(response.status_code, 200)
        event = WebhookEvent.objects.get()
        self.assertEqual(event.event_name, "license_key_created")
        self.assertTrue(event.processed)

    def test_redelivery_processes_an_event_stranded_before_dispatch(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk, webhook_id="wh_stranded")
        # recorded by an earlier delivery that died before dispatching it
        record_event("wh_stranded", "subscription_created", payload)

        response = self._post_signed(payload)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["cached"])
        event = WebhookEvent.objects.get(external_event_id="wh_stranded")
        self.assertTrue(event.processed)
        self.assertTrue(Subscription.objects.filter(user=self.user).exists())

    def test_redelivery_while_pending_retry_applies_effect_once(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk, webhook_id="wh_pending")
        body = encode(payload)

        with patch.object(HandleSubscriptionCreated, "handle", side_effect=WebhookRetry("user not committed yet")):
            self._post(body, sign(body))
        event = WebhookEvent.objects.get(external_event_id="wh_pending")
        self.assertEqual(event.state, WebhookEventState.PENDING_RETRY)

        response = self._post(body, sign(body))

        self.assertTrue(response.data["cached"])
        event.refresh_from_db()
        self.assertTrue(event.processed)
        self.assertFalse(WebhookQueueItem.objects.filter(webhook_event=event).exists())
        self.assertEqual(Subscription.objects.filter(user=self.user).count(), 1)

        with patch.object(HandleSubscriptionCreated, "handle") as mock_handle:
            self._post(body, sign(body))
            self.assertEqual(process_webhook_queue(), {"processed": 0, "failed": 0})
        mock_handle.assert_not_called()

    def test_redelivery_of_exhausted_event_is_not_dispatched(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk, webhook_id="wh_exhausted")
        event, _ = record_event("wh_exhausted", "subscription_created", payload)
        WebhookEvent.objects.filter(pk=event.pk).update(error="Max retries exceeded: boom", error_count=5)

        with patch.object(HandleSubscriptionCreated, "handle") as mock_handle:
            response = self._post_signed(payload)

        self.assertTrue(response.data["cached"])
        mock_handle.assert_not_called()
        event.refresh_from_db()
        self.assertFalse(event.processed)


class WebhookAdminApiTest(TestCase):

    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.staff = make_user(is_staff=True)
        self.staff.user_permissions.add(
            *Permission.objects.filter(
                content_type__app_label="core",
                codename__in=["view_webhookevent", "change_webhookevent"],
            )
        )
        self.client.force_authenticate(self.staff)

        self.processed = WebhookEvent.objects.create(
            external_event_id="evt_admin_done",
            event_name="order_created",
            payload={},
            processed=True,
            processed_at=timezone.now(),
        )
        self.failed = WebhookEvent.objects.create(
            external_event_id="evt_admin_failed",
            event_name="subscription_created",
            payload={},
            error="boom",
            error_count=1,
        )
        WebhookQueueItem.objects.create(webhook_event=self.failed, next_retry=timezone.now(), last_error="boom")

    def test_list_filters_by_processed(self):
        response = self.client.get("/api/admin/webhooks/", {"processed": "false"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["results"][0]["external_event_id"], "evt_admin_failed")
        self.assertEqual(response.data["results"][0]["state"], "pending_retry")

    def test_list_filters_by_event_name(self):
        response = self.client.get("/api/admin/webhooks/", {"event_name": "order_created"})

        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["results"][0]["external_event_id"], "evt_admin_done")

    def test_detail_includes_queue_item(self):
        response = self.client.get(f"/api/admin/webhooks/{self.failed.pk}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["queue_item"]["retry_count"], 1)
        self.assertEqual(response.data["payload"], {})

    def test_replay_queues_processed_event(self):
        response = self.client.post(f"/api/admin/webhooks/{self.processed.pk}/replay/", {}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data["processed"])
        self.assertIsNotNone(response.data["queue_item"])

    def test_replay_unknown_event_returns_404(self):
        response = self.client.post("/api/admin/webhooks/999999/replay/", {}, format="json")
        self.assertEqual(response.status_code, 404)

    def test_scheduler_status(self):
        response = self.client.get("/api/admin/webhooks/scheduler/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["queue"]["pending_retries"], 1)
        self.assertEqual(len(response.data["jobs"]), 2)

    def test_requires_permissions(self):
        client = APIClient()
        client.force_authenticate(make_user())

        self.assertEqual(client.get("/api/admin/webhooks/").status_code, 403)
        self.assertEqual(client.get("/api/admin/webhooks/scheduler/").status_code, 403)
        self.assertEqual(client.post(f"/api/admin/webhooks/{self.processed.pk}/replay/", {}, format="json").status_code, 403)
