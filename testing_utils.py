import itertools
import json
from datetime import timedelta

from django.contrib.auth import get_user_model
from django.utils import timezone

from core.lemonsqueezy.signature import compute_signature
from subscriptions.models import Subscription, SubscriptionStatus

User = get_user_model()

WEBHOOK_SECRET = "ls_whsec_test_secret"

_counter = itertools.count(1)


def _next_id():
    return next(_counter)


def make_user(email=None, username=None, password="testpass123", **kwargs):
    n = _next_id()
    email = email or f"test{n}@example.com"
    username = username or f"testuser{n}"
    return User.objects.create_user(username=username, email=email, password=password, **kwargs)


def make_subscription(
    user=None,
    lemonsqueezy_subscription_id=None,
    status=SubscriptionStatus.ACTIVE,
    period_days=30,
    trial_ends_at=None,
    cancel_at_period_end=False,
):
    n = _next_id()
    if user is None:
        user = make_user()
    lemonsqueezy_subscription_id = lemonsqueezy_subscription_id or f"{1000 + n}"
    now = timezone.now()
    return Subscription.objects.create(
        user=user,
        lemonsqueezy_subscription_id=lemonsqueezy_subscription_id,
        lemonsqueezy_customer_id=f"{5000 + n}",
        lemonsqueezy_variant_id="42",
        status=status,
        current_period_start=now,
        current_period_end=now + timedelta(days=period_days),
        cancel_at_period_end=cancel_at_period_end,
        trial_ends_at=trial_ends_at,
    )


def make_subscription_attributes(
    status="active",
    customer_id=5001,
    variant_id=42,
    renews_at=None,
    ends_at=None,
    trial_ends_at=None,
    cancelled=False,
    user_email="customer@example.com",
):
    now = timezone.now()
    renews_at = renews_at or now + timedelta(days=30)
    return {
        "store_id": 1,
        "customer_id": customer_id,
        "order_id": 7001,
        "product_id": 11,
        "variant_id": variant_id,
        "product_name": "PR Manager Pro",
        "variant_name": "Monthly",
        "user_email": user_email,
        "status": status,
        "cancelled": cancelled,
        "trial_ends_at": trial_ends_at.isoformat() if trial_ends_at else None,
        "renews_at": renews_at.isoformat(),
        "ends_at": ends_at.isoformat() if ends_at else None,
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
    }


def make_lemonsqueezy_event(
    event_name="subscription_created",
    user_id=None,
    subscription_id="1001",
    webhook_id=None,
    attributes=None,
    data_type=None,
    **attribute_overrides,
):
    """
    Build a Lemon Squeezy webhook payload.

    Subscription payloads get full subscription attributes, subscription_payment_*
    payloads an invoice pointing at ``subscription_id``, order_created an order.
    """
    if attributes is None:
        if event_name.startswith("subscription_payment_"):
            attributes = {"subscription_id": int(subscription_id), "customer_id": 5001, "status": "paid", "total": 999}
            data_type = data_type or "subscription-invoices"
            data_id = str(9000 + _next_id())
        elif event_name == "order_created":
            attributes = {"order_number": 7001, "user_email": "customer@example.com", "status": "paid", "total": 999}
            data_type = data_type or "orders"
            data_id = "7001"
        else:
            attributes = make_subscription_attributes()
            data_type = data_type or "subscriptions"
            data_id = subscription_id
    else:
        data_type = data_type or "subscriptions"
        data_id = subscription_id

    attributes = {**attributes, **attribute_overrides}

    meta = {"event_name": event_name, "test_mode": True}
    if webhook_id is not None:
        meta["webhook_id"] = webhook_id
    if user_id is not None:
        meta["custom_data"] = {"user_id": str(user_id)}

    return {
        "meta": meta,
        "data": {"type": data_type, "id": data_id, "attributes": attributes},
    }


def encode(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def sign(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(raw_body, secret)
