import hashlib
from datetime import timedelta
from unittest.mock import patch

from django.core.exceptions import ImproperlyConfigured
from django.test import TestCase, RequestFactory, override_settings
from django.utils import timezone

from core.exceptions import (
    MissingUserReference,
    PayloadUnparseable,
    ServerMisconfigured,
    SignatureInvalid,
    SignatureMissing,
    WebhookRetry,
    WebhookSkip,
)
from core.lemonsqueezy import WebhookHandler, dispatch_event, get_external_event_id, parse_webhook, verify_signature
from core.lemonsqueezy.models import (
    LemonSqueezyInvoiceEvent,
    LemonSqueezyOrderEvent,
    LemonSqueezySubscriptionEvent,
    LemonSqueezyWebhook,
)
from core.models import WebhookEvent, WebhookEventName, WebhookEventState, WebhookQueueItem
from core.views import health_check
from subscriptions.lemonsqueezy_handlers import HandleOrderCreated
from testing_utils import WEBHOOK_SECRET, encode, make_lemonsqueezy_event, sign


class SignatureVerificationTest(TestCase):

    def setUp(self):
        self.body = encode(make_lemonsqueezy_event(user_id=1))

    def test_valid_signature_passes(self):
        self.assertIsNone(verify_signature(self.body, sign(self.body), WEBHOOK_SECRET))

    def test_missing_header_raises(self):
        with self.assertRaises(SignatureMissing) as ctx:
            verify_signature(self.body, None, WEBHOOK_SECRET)
        self.assertEqual(str(ctx.exception), "Missing x-signature header")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_unconfigured_secret_is_server_error(self):
        with self.assertLogs("prmanager.core.lemonsqueezy.signature", level="CRITICAL"):
            with self.assertRaises(ServerMisconfigured) as ctx:
                verify_signature(self.body, sign(self.body), "")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertFalse(ctx.exception.expected)

    def test_length_mismatch_raises(self):
        with self.assertRaises(SignatureInvalid) as ctx:
            verify_signature(self.body, "abc123", WEBHOOK_SECRET)
        self.assertEqual(ctx.exception.context["reason"], "length")

    def test_digest_mismatch_raises(self):
        with self.assertRaises(SignatureInvalid) as ctx:
            verify_signature(self.body, sign(self.body, secret="other_secret"), WEBHOOK_SECRET)
        self.assertEqual(ctx.exception.context["reason"], "digest")

    def test_signature_covers_exact_bytes(self):
        reformatted = self.body.replace(b", ", b",")
        with self.assertRaises(SignatureInvalid):
            verify_signature(reformatted, sign(self.body), WEBHOOK_SECRET)


class PayloadParsingTest(TestCase):

    def test_subscription_event_is_typed(self):
        payload = make_lemonsqueezy_event("subscription_updated", user_id=7, subscription_id="555")
        event, decoded = parse_webhook(encode(payload))

        self.assertIsInstance(event, LemonSqueezySubscriptionEvent)
        self.assertEqual(decoded, payload)
        self.assertEqual(event.meta.user_id, "7")
        self.assertEqual(event.data.attributes.status, "active")
        self.assertIsNotNone(event.data.attributes.current_period_end.tzinfo)

    def test_numeric_data_id_is_coerced(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=1)
        payload["data"]["id"] = 12345
        event, _ = parse_webhook(encode(payload))
        self.assertEqual(event.data.id, "12345")

    def test_invoice_event_resolves_parent_subscription(self):
        payload = make_lemonsqueezy_event("subscription_payment_failed", subscription_id="321")
        event, _ = parse_webhook(encode(payload))
        self.assertIsInstance(event, LemonSqueezyInvoiceEvent)
        self.assertEqual(event.subscription_id, "321")

    def test_order_event_is_typed(self):
        event, _ = parse_webhook(encode(make_lemonsqueezy_event("order_created", user_id=1)))
        self.assertIsInstance(event, LemonSqueezyOrderEvent)

    def test_unknown_event_uses_envelope(self):
        payload = {"meta": {"event_name": "license_key_created"}, "data": {"id": "1", "attributes": {}}}
        event, _ = parse_webhook(encode(payload))
        self.assertIs(type(event), LemonSqueezyWebhook)
        self.assertEqual(event.event_name, "license_key_created")

    def test_invalid_json_is_unparseable(self):
        with self.assertRaises(PayloadUnparseable) as ctx:
            parse_webhook(b"{not json")
        self.assertTrue(str(ctx.exception).startswith("Webhook Error: "))

    def test_non_object_is_unparseable(self):
        with self.assertRaises(PayloadUnparseable):
            parse_webhook(b"[1, 2, 3]")

    def test_missing_event_name_is_unparseable(self):
        with self.assertRaises(PayloadUnparseable) as ctx:
            parse_webhook(encode({"meta": {}, "data": {"id": "1"}}))
        self.assertIn("meta.event_name", str(ctx.exception))

    def test_subscription_without_status_is_unparseable(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=1)
        del payload["data"]["attributes"]["status"]
        with self.assertRaises(PayloadUnparseable) as ctx:
            parse_webhook(encode(payload))
        self.assertIn("data.attributes.status", str(ctx.exception))

    def test_missing_user_id_still_parses(self):
        event, _ = parse_webhook(encode(make_lemonsqueezy_event("subscription_created")))
        self.assertIsNone(event.meta.user_id)


class ExternalEventIdTest(TestCase):

    def test_prefers_webhook_id(self):
        body = encode(make_lemonsqueezy_event(webhook_id="wh_abc", user_id=1))
        event, _ = parse_webhook(body)
        self.assertEqual(get_external_event_id(event, body), "wh_abc")

    def test_falls_back_to_body_digest(self):
        body = encode(make_lemonsqueezy_event(user_id=1))
        event, _ = parse_webhook(body)
        self.assertEqual(get_external_event_id(event, body), hashlib.sha256(body).hexdigest())

    def test_events_for_same_subscription_get_distinct_ids(self):
        first = encode(make_lemonsqueezy_event("subscription_created", user_id=1, subscription_id="77"))
        second = encode(make_lemonsqueezy_event("subscription_cancelled", user_id=1, subscription_id="77"))
        self.assertNotEqual(
            get_external_event_id(parse_webhook(first)[0], first),
            get_external_event_id(parse_webhook(second)[0], second),
        )


class WebhookHandlerRegistryTest(TestCase):

    def test_every_event_name_has_a_handler(self):
        self.assertEqual(WebhookHandler.missing_handlers(), [])
        WebhookHandler.check_exhaustive()

    def test_missing_handler_fails_exhaustiveness_check(self):
        with patch.dict(WebhookHandler.__handlers__):
            del WebhookHandler.__handlers__[WebhookEventName.ORDER_CREATED]
            with self.assertRaises(ImproperlyConfigured) as ctx:
                WebhookHandler.check_exhaustive()
        self.assertIn("order_created", str(ctx.exception))
        self.assertIs(WebhookHandler.handler_for("order_created"), HandleOrderCreated)

    def test_unknown_event_name_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            class _UnknownHandler(WebhookHandler):
                __event__ = "subscription_teleported"

    def test_second_handler_for_same_event_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            class _DuplicateOrderHandler(WebhookHandler):
                __event__ = WebhookEventName.ORDER_CREATED

        self.assertIs(WebhookHandler.handler_for(WebhookEventName.ORDER_CREATED), HandleOrderCreated)

    def test_dispatch_calls_handler(self):
        with patch.object(HandleOrderCreated, "handle") as mock_handle:
            handled = dispatch_event("order_created", {"key": "value"})

        self.assertTrue(handled)
        mock_handle.assert_called_once_with({"key": "value"})

    def test_dispatch_unknown_event_is_a_noop(self):
        with self.assertLogs("prmanager.core.lemonsqueezy.event_handler", level="WARNING"):
            handled = dispatch_event("license_key_created", {})
        self.assertFalse(handled)

    def test_handler_errors_propagate(self):
        with patch.object(HandleOrderCreated, "handle", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                dispatch_event("order_created", {})


@override_settings(WEBHOOK_MAX_RETRY_ATTEMPTS=5)
class WebhookEventStateTest(TestCase):

    def _event(self, **kwargs):
        return WebhookEvent.objects.create(
            external_event_id=f"evt_state_{WebhookEvent.objects.count()}",
            event_name="subscription_created",
            payload={},
            **kwargs,
        )

    def test_new_event_is_pending(self):
        self.assertEqual(self._event().state, WebhookEventState.PENDING)

    def test_queued_event_is_pending_retry(self):
        event = self._event(error_count=1, error="boom")
        WebhookQueueItem.objects.create(webhook_event=event, next_retry=timezone.now() + timedelta(minutes=5))
        event.refresh_from_db()
        self.assertEqual(event.state, WebhookEventState.PENDING_RETRY)

    def test_processed_event(self):
        self.assertEqual(self._event(processed=True, processed_at=timezone.now()).state, WebhookEventState.PROCESSED)

    def test_exhausted_event_is_permanently_failed(self):
        event = self._event(error_count=5, error="Max retries exceeded: boom")
        self.assertEqual(event.state, WebhookEventState.PERMANENTLY_FAILED)


class HealthCheckViewTest(TestCase):

    def setUp(self):
        self.factory = RequestFactory()

    @patch("core.views._check_database", return_value=None)
    @patch("core.views._check_redis", return_value=None)
    @patch("core.views._check_celery", return_value=None)
    def test_all_healthy(self, *mocks):
        request = self.factory.get("/api/health/")
        response = health_check(request)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "healthy")

    @patch("core.views._check_database", return_value=None)
    @patch("core.views._check_redis", return_value="connection refused")
    @patch("core.views._check_celery", return_value=None)
    def test_service_down(self, *mocks):
        request = self.factory.get("/api/health/")
        response = health_check(request)
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["status"], "down")
        self.assertEqual(response.data["service_details"]["redis"], "connection refused")


class WebhookExceptionTest(TestCase):

    def test_webhook_skip_has_correct_flags(self):
        e = WebhookSkip("test skip")
        self.assertTrue(e.expected)
        self.assertFalse(e.retryable)
        self.assertEqual(e.key, "webhook@skipped")

    def test_webhook_retry_has_correct_flags(self):
        e = WebhookRetry("test retry")
        self.assertFalse(e.expected)
        self.assertTrue(e.retryable)
        self.assertEqual(e.key, "webhook@retry")

    def test_missing_user_reference_is_not_retryable(self):
        e = MissingUserReference("no user_id")
        self.assertIs(e.retryable, False)

    def test_unparseable_message_is_prefixed(self):
        self.assertEqual(str(PayloadUnparseable("bad json")), "Webhook Error: bad json")

    def test_repr_is_meaningful(self):
        e = WebhookSkip("test", context={"subscription_id": "123"})
        r = repr(e)
        self.assertIn("WebhookSkip", r)
        self.assertIn("retryable=False", r)
