from datetime import timedelta

from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from core.exceptions import MissingUserReference, WebhookRetry
from core.lemonsqueezy import dispatch_event
from core.lemonsqueezy.models import LemonSqueezySubscriptionEvent
from subscriptions.lemonsqueezy_handlers import resolve_user
from subscriptions.models import Subscription, SubscriptionStatus
from subscriptions.tasks import sync_expired_subscriptions
from testing_utils import make_lemonsqueezy_event, make_subscription, make_subscription_attributes, make_user


class SubscriptionUpsertHandlerTest(TestCase):

    def setUp(self):
        self.user = make_user()

    def test_created_inserts_row(self):
        renews_at = timezone.now() + timedelta(days=30)
        payload = make_lemonsqueezy_event(
            "subscription_created",
            user_id=self.user.pk,
            subscription_id="3003",
            attributes=make_subscription_attributes(status="on_trial", renews_at=renews_at, trial_ends_at=renews_at),
        )

        dispatch_event("subscription_created", payload)

        subscription = Subscription.objects.get(user=self.user)
        self.assertEqual(subscription.lemonsqueezy_subscription_id, "3003")
        self.assertEqual(subscription.status, SubscriptionStatus.ON_TRIAL)
        self.assertEqual(subscription.lemonsqueezy_customer_id, "5001")
        self.assertEqual(subscription.lemonsqueezy_variant_id, "42")
        self.assertEqual(subscription.current_period_end, renews_at)
        self.assertEqual(subscription.trial_ends_at, renews_at)
        self.assertFalse(subscription.cancel_at_period_end)

    def test_applying_same_payload_twice_is_idempotent(self):
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk, subscription_id="3004")

        dispatch_event("subscription_created", payload)
        first = Subscription.objects.get(user=self.user)
        dispatch_event("subscription_created", payload)

        self.assertEqual(Subscription.objects.count(), 1)
        second = Subscription.objects.get(user=self.user)
        self.assertEqual(second.pk, first.pk)
        self.assertEqual(second.status, first.status)
        self.assertEqual(second.current_period_end, first.current_period_end)

    def test_updated_changes_status_and_rolls_period(self):
        subscription = make_subscription(user=self.user, lemonsqueezy_subscription_id="3005")
        old_end = subscription.current_period_end
        new_end = old_end + timedelta(days=30)
        payload = make_lemonsqueezy_event(
            "subscription_updated",
            user_id=self.user.pk,
            subscription_id="3005",
            attributes=make_subscription_attributes(status="past_due", renews_at=new_end, variant_id=99),
        )

        dispatch_event("subscription_updated", payload)

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.PAST_DUE)
        self.assertEqual(subscription.current_period_start, old_end)
        self.assertEqual(subscription.current_period_end, new_end)
        self.assertEqual(subscription.lemonsqueezy_variant_id, "99")

    def test_resubscribe_reuses_the_users_row(self):
        make_subscription(user=self.user, lemonsqueezy_subscription_id="old-sub", status=SubscriptionStatus.EXPIRED)
        payload = make_lemonsqueezy_event("subscription_created", user_id=self.user.pk, subscription_id="new-sub")

        dispatch_event("subscription_created", payload)

        subscription = Subscription.objects.get(user=self.user)
        self.assertEqual(subscription.lemonsqueezy_subscription_id, "new-sub")
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)

    def test_paused_and_resumed_follow_payload_status(self):
        subscription = make_subscription(user=self.user, lemonsqueezy_subscription_id="3006")

        dispatch_event(
            "subscription_paused",
            make_lemonsqueezy_event("subscription_paused", user_id=self.user.pk, subscription_id="3006", status="paused"),
        )
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.PAUSED)

        dispatch_event(
            "subscription_resumed",
            make_lemonsqueezy_event("subscription_resumed", user_id=self.user.pk, subscription_id="3006", status="active"),
        )
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)

    def test_cancelled_sets_cancel_at_period_end(self):
        subscription = make_subscription(user=self.user, lemonsqueezy_subscription_id="3007")

        dispatch_event(
            "subscription_cancelled",
            make_lemonsqueezy_event("subscription_cancelled", user_id=self.user.pk, subscription_id="3007"),
        )

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.CANCELLED)
        self.assertTrue(subscription.cancel_at_period_end)

    def test_expired_sets_status(self):
        subscription = make_subscription(user=self.user, lemonsqueezy_subscription_id="3008")

        dispatch_event(
            "subscription_expired",
            make_lemonsqueezy_event("subscription_expired", user_id=self.user.pk, subscription_id="3008"),
        )

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.EXPIRED)

    def test_unexpected_transition_is_logged(self):
        make_subscription(user=self.user, lemonsqueezy_subscription_id="3009", status=SubscriptionStatus.EXPIRED)

        with self.assertLogs("prmanager.subscriptions", level="WARNING") as logs:
            dispatch_event(
                "subscription_updated",
                make_lemonsqueezy_event("subscription_updated", user_id=self.user.pk, subscription_id="3009"),
            )

        self.assertTrue(any("Unexpected transition expired -> active" in line for line in logs.output))


class ResolveUserTest(TestCase):

    def _event(self, user_id):
        return LemonSqueezySubscriptionEvent.model_validate(make_lemonsqueezy_event(user_id=user_id))

    def test_resolves_existing_user(self):
        user = make_user()
        self.assertEqual(resolve_user(self._event(user.pk)), user)

    def test_missing_user_id_is_not_retryable(self):
        with self.assertRaises(MissingUserReference):
            resolve_user(self._event(None))

    def test_malformed_user_id_is_not_retryable(self):
        with self.assertRaises(MissingUserReference):
            resolve_user(self._event("not-a-number"))

    def test_unknown_user_is_retryable(self):
        with self.assertRaises(WebhookRetry):
            resolve_user(self._event(999999))


class PaymentHandlerTest(TestCase):

    def test_payment_failed_marks_past_due(self):
        subscription = make_subscription(lemonsqueezy_subscription_id="4001")

        dispatch_event("subscription_payment_failed", make_lemonsqueezy_event("subscription_payment_failed", subscription_id="4001"))

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.PAST_DUE)

    def test_payment_failed_before_subscription_exists_is_retryable(self):
        with self.assertRaises(WebhookRetry):
            dispatch_event(
                "subscription_payment_failed",
                make_lemonsqueezy_event("subscription_payment_failed", subscription_id="4404"),
            )

    def test_payment_success_reactivates_past_due(self):
        subscription = make_subscription(lemonsqueezy_subscription_id="4002", status=SubscriptionStatus.PAST_DUE)

        dispatch_event("subscription_payment_success", make_lemonsqueezy_event("subscription_payment_success", subscription_id="4002"))

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)

    def test_payment_handlers_touch_updated_at(self):
        stale = timezone.now() - timedelta(days=3)
        subscription = make_subscription(lemonsqueezy_subscription_id="4004")
        Subscription.objects.filter(pk=subscription.pk).update(updated_at=stale)

        dispatch_event("subscription_payment_failed", make_lemonsqueezy_event("subscription_payment_failed", subscription_id="4004"))
        subscription.refresh_from_db()
        self.assertGreater(subscription.updated_at, stale)

        Subscription.objects.filter(pk=subscription.pk).update(updated_at=stale)
        dispatch_event("subscription_payment_success", make_lemonsqueezy_event("subscription_payment_success", subscription_id="4004"))
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertGreater(subscription.updated_at, stale)

    def test_payment_success_leaves_other_statuses_alone(self):
        subscription = make_subscription(lemonsqueezy_subscription_id="4003", status=SubscriptionStatus.CANCELLED)

        dispatch_event("subscription_payment_success", make_lemonsqueezy_event("subscription_payment_success", subscription_id="4003"))

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.CANCELLED)


class LogOnlyHandlerTest(TestCase):

    def test_trial_will_end_logs(self):
        user = make_user()
        with self.assertLogs("prmanager.subscriptions.lemonsqueezy_handlers", level="INFO"):
            dispatch_event(
                "subscription_trial_will_end",
                make_lemonsqueezy_event("subscription_trial_will_end", user_id=user.pk, status="on_trial"),
            )
        self.assertFalse(Subscription.objects.exists())

    def test_trial_will_end_requires_user(self):
        with self.assertRaises(MissingUserReference):
            dispatch_event("subscription_trial_will_end", make_lemonsqueezy_event("subscription_trial_will_end"))

    def test_order_created_has_no_effect(self):
        dispatch_event("order_created", make_lemonsqueezy_event("order_created", user_id=1))
        self.assertFalse(Subscription.objects.exists())


class SyncExpiredSubscriptionsTest(TestCase):

    def test_expires_lapsed_subscriptions(self):
        lapsed = make_subscription(period_days=-1)
        current = make_subscription(period_days=10)
        trial_over = make_subscription(
            status=SubscriptionStatus.ON_TRIAL,
            period_days=10,
            trial_ends_at=timezone.now() - timedelta(hours=1),
        )
        cancelled = make_subscription(status=SubscriptionStatus.CANCELLED, period_days=-1)

        count = sync_expired_subscriptions()

        self.assertEqual(count, 2)
        for subscription, expected in [
            (lapsed, SubscriptionStatus.EXPIRED),
            (current, SubscriptionStatus.ACTIVE),
            (trial_over, SubscriptionStatus.EXPIRED),
            (cancelled, SubscriptionStatus.CANCELLED),
        ]:
            subscription.refresh_from_db()
            self.assertEqual(subscription.status, expected)

    def test_nothing_to_expire(self):
        make_subscription(period_days=10)
        self.assertEqual(sync_expired_subscriptions(), 0)


class MySubscriptionViewTest(APITestCase):

    def setUp(self):
        self.user = make_user()
        self.url = reverse("subscriptions:me")

    def test_returns_own_subscription(self):
        make_subscription(user=self.user, lemonsqueezy_subscription_id="5001")
        make_subscription(lemonsqueezy_subscription_id="5002")
        self.client.force_authenticate(self.user)

        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["lemonsqueezy_subscription_id"], "5001")
        self.assertEqual(response.data["status"], SubscriptionStatus.ACTIVE)
        self.assertTrue(response.data["is_active"])

    def test_no_subscription_returns_404(self):
        self.client.force_authenticate(self.user)
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_requires_authentication(self):
        response = self.client.get(self.url)
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))
