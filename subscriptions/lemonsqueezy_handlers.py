import logging
from typing import Optional

from django.contrib.auth import get_user_model
from django.utils import timezone

from core.exceptions import MissingUserReference, WebhookRetry
from core.lemonsqueezy.event_handler import WebhookHandler
from core.lemonsqueezy.models import (
    LemonSqueezyInvoiceEvent,
    LemonSqueezyOrderEvent,
    LemonSqueezySubscriptionEvent,
)
from core.models import WebhookEventName
from subscriptions.models import Subscription, SubscriptionStatus

log = logging.getLogger("prmanager.subscriptions.lemonsqueezy_handlers")

User = get_user_model()


def resolve_user(event) -> User:
    raw_user_id = event.meta.user_id
    context = {"subscription_id": event.data.id}

    if raw_user_id is None:
        raise MissingUserReference(f"No user_id in custom_data for {event.event_name} {event.data.id}", context=context)

    try:
        user_id = int(raw_user_id)
    except ValueError:
        raise MissingUserReference(f"Malformed user_id {raw_user_id!r} in custom_data", context=context)

    try:
        return User.objects.get(pk=user_id)
    except User.DoesNotExist:
        raise WebhookRetry(
            f"No user with id={user_id}, may not be committed yet",
            context={**context, "user_id": user_id},
        )


def upsert_subscription(event: LemonSqueezySubscriptionEvent, status: Optional[str] = None) -> Subscription:
    """
    Create or update the user's subscription row from a subscription_* payload.

    Rows are matched on the Lemon Squeezy subscription id first, then on the user,
    so a re-subscribing user keeps a single row. Applying the same payload twice
    leaves the row unchanged.
    """
    user = resolve_user(event)
    attributes = event.data.attributes
    new_status = status or attributes.status

    subscription = (
        Subscription.objects.select_for_update().filter(lemonsqueezy_subscription_id=event.data.id).first()
        or Subscription.objects.select_for_update().filter(user=user).first()
    )

    if subscription is None:
        subscription = Subscription.objects.create(
            user=user,
            lemonsqueezy_subscription_id=event.data.id,
            lemonsqueezy_customer_id=str(attributes.customer_id or ""),
            lemonsqueezy_variant_id=str(attributes.variant_id or ""),
            status=new_status,
            current_period_start=attributes.created_at,
            current_period_end=attributes.current_period_end,
            cancel_at_period_end=attributes.cancelled,
            trial_ends_at=attributes.trial_ends_at,
        )
        log.info(f"Created subscription {subscription.pk} ({event.data.id}) for user {user.pk}: {new_status}")
        return subscription

    if subscription.user_id != user.pk:
        log.warning(
            f"Subscription {event.data.id} belongs to user {subscription.user_id}, "
            f"payload references user {user.pk}; keeping the existing owner"
        )

    new_period_end = attributes.current_period_end
    if subscription.current_period_end and new_period_end and new_period_end > subscription.current_period_end:
        subscription.current_period_start = subscription.current_period_end
    elif subscription.current_period_start is None:
        subscription.current_period_start = attributes.created_at

    subscription.lemonsqueezy_subscription_id = event.data.id
    if attributes.customer_id is not None:
        subscription.lemonsqueezy_customer_id = str(attributes.customer_id)
    if attributes.variant_id is not None:
        subscription.lemonsqueezy_variant_id = str(attributes.variant_id)
    subscription.current_period_end = new_period_end
    subscription.cancel_at_period_end = attributes.cancelled
    subscription.trial_ends_at = attributes.trial_ends_at
    subscription.apply_new_status(new_status)
    subscription.save()

    log.info(f"Updated subscription {subscription.pk} ({event.data.id}) for user {user.pk}: {subscription.status}")
    return subscription


class HandleSubscriptionCreated(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_CREATED

    @classmethod
    def handle(cls, payload: dict):
        upsert_subscription(LemonSqueezySubscriptionEvent.model_validate(payload))


class HandleSubscriptionUpdated(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_UPDATED

    @classmethod
    def handle(cls, payload: dict):
        upsert_subscription(LemonSqueezySubscriptionEvent.model_validate(payload))


class HandleSubscriptionPaused(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_PAUSED

    @classmethod
    def handle(cls, payload: dict):
        upsert_subscription(LemonSqueezySubscriptionEvent.model_validate(payload))


class HandleSubscriptionResumed(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_RESUMED

    @classmethod
    def handle(cls, payload: dict):
        upsert_subscription(LemonSqueezySubscriptionEvent.model_validate(payload))


class HandleSubscriptionCancelled(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_CANCELLED

    @classmethod
    def handle(cls, payload: dict):
        event = LemonSqueezySubscriptionEvent.model_validate(payload)
        subscription = upsert_subscription(event, status=SubscriptionStatus.CANCELLED)

        if not subscription.cancel_at_period_end:
            subscription.cancel_at_period_end = True
            subscription.save(update_fields=["cancel_at_period_end", "updated_at"])

        log.info(f"Subscription {event.data.id} cancelled, access until {subscription.current_period_end}")


class HandleSubscriptionExpired(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_EXPIRED

    @classmethod
    def handle(cls, payload: dict):
        event = LemonSqueezySubscriptionEvent.model_validate(payload)
        upsert_subscription(event, status=SubscriptionStatus.EXPIRED)
        log.info(f"Subscription {event.data.id} expired")


class HandleSubscriptionTrialWillEnd(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_TRIAL_WILL_END
    __atomic__ = False

    @classmethod
    def handle(cls, payload: dict):
        event = LemonSqueezySubscriptionEvent.model_validate(payload)
        if event.meta.user_id is None:
            raise MissingUserReference(f"No user_id in custom_data for trial ending on {event.data.id}")

        # TODO: send the trial-ending email once the mailer service exists
        log.info(
            f"Trial ending for user {event.meta.user_id} "
            f"(subscription {event.data.id}) at {event.data.attributes.trial_ends_at}"
        )


class HandleSubscriptionPaymentSuccess(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_PAYMENT_SUCCESS

    @classmethod
    def handle(cls, payload: dict):
        event = LemonSqueezyInvoiceEvent.model_validate(payload)

        recovered = Subscription.objects.filter(
            lemonsqueezy_subscription_id=event.subscription_id,
            status__in=[SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID],
        ).update(status=SubscriptionStatus.ACTIVE, updated_at=timezone.now())

        if recovered:
            log.info(f"Payment succeeded for subscription {event.subscription_id}, reactivated")
        else:
            log.info(f"Payment succeeded for subscription {event.subscription_id}")


class HandleSubscriptionPaymentFailed(WebhookHandler):
    __event__ = WebhookEventName.SUBSCRIPTION_PAYMENT_FAILED

    @classmethod
    def handle(cls, payload: dict):
        event = LemonSqueezyInvoiceEvent.model_validate(payload)

        updated = Subscription.objects.filter(
            lemonsqueezy_subscription_id=event.subscription_id,
        ).update(status=SubscriptionStatus.PAST_DUE, updated_at=timezone.now())

        if not updated:
            raise WebhookRetry(
                f"Subscription {event.subscription_id} not found for failed payment, may arrive out of order",
                context={"subscription_id": event.subscription_id},
            )

        log.warning(f"Payment failed for subscription {event.subscription_id}, marked past_due")


class HandleOrderCreated(WebhookHandler):
    __event__ = WebhookEventName.ORDER_CREATED
    __atomic__ = False

    @classmethod
    def handle(cls, payload: dict):
        event = LemonSqueezyOrderEvent.model_validate(payload)
        attributes = event.data.attributes

        # the subscription row itself is created by subscription_created
        log.info(
            f"Order {attributes.order_number or event.data.id} created "
            f"for {attributes.user_email or 'unknown customer'} (user {event.meta.user_id})"
        )


__all__ = (
    "resolve_user",
    "upsert_subscription",
    "HandleSubscriptionCreated",
    "HandleSubscriptionUpdated",
    "HandleSubscriptionPaused",
    "HandleSubscriptionResumed",
    "HandleSubscriptionCancelled",
    "HandleSubscriptionExpired",
    "HandleSubscriptionTrialWillEnd",
    "HandleSubscriptionPaymentSuccess",
    "HandleSubscriptionPaymentFailed",
    "HandleOrderCreated",
)
