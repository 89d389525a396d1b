import hashlib
import json
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError, computed_field, field_validator

from core.exceptions import PayloadUnparseable
from core.models import WebhookEventName


class LemonSqueezyMeta(BaseModel):
    event_name: str
    webhook_id: Optional[str] = None
    test_mode: bool = False
    custom_data: Optional[dict] = None

    @computed_field
    @property
    def user_id(self) -> Optional[str]:
        raw = (self.custom_data or {}).get("user_id")
        return str(raw) if raw not in (None, "") else None


class LemonSqueezyData(BaseModel):
    id: str
    type: str = ""
    attributes: dict = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value) if isinstance(value, int) else value


class LemonSqueezyWebhook(BaseModel):
    """Envelope shared by every Lemon Squeezy webhook."""

    meta: LemonSqueezyMeta
    data: LemonSqueezyData

    @property
    def event_name(self) -> str:
        return self.meta.event_name


# --- subscription_* ---

class LemonSqueezySubscriptionAttributes(BaseModel):
    store_id: Optional[int] = None
    customer_id: Optional[Union[int, str]] = None
    order_id: Optional[int] = None
    product_id: Optional[int] = None
    variant_id: Optional[Union[int, str]] = None
    product_name: str = ""
    variant_name: str = ""
    user_email: Optional[str] = None
    status: str
    cancelled: bool = False
    trial_ends_at: Optional[datetime] = None
    renews_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def current_period_end(self) -> Optional[datetime]:
        return self.ends_at or self.renews_at


class LemonSqueezySubscriptionData(LemonSqueezyData):
    attributes: LemonSqueezySubscriptionAttributes


class LemonSqueezySubscriptionEvent(LemonSqueezyWebhook):
    data: LemonSqueezySubscriptionData


# --- subscription_payment_* ---

class LemonSqueezyInvoiceAttributes(BaseModel):
    subscription_id: Optional[Union[int, str]] = None
    customer_id: Optional[Union[int, str]] = None
    billing_reason: Optional[str] = None
    status: str = ""
    total: Optional[int] = None


class LemonSqueezyInvoiceData(LemonSqueezyData):
    attributes: LemonSqueezyInvoiceAttributes = Field(default_factory=LemonSqueezyInvoiceAttributes)


class LemonSqueezyInvoiceEvent(LemonSqueezyWebhook):
    data: LemonSqueezyInvoiceData

    @computed_field
    @property
    def subscription_id(self) -> str:
        # subscription-invoices carry the parent id, older payloads are the subscription itself
        if self.data.attributes.subscription_id is not None:
            return str(self.data.attributes.subscription_id)
        return self.data.id


# --- order_created ---

class LemonSqueezyOrderAttributes(BaseModel):
    order_number: Optional[int] = None
    user_email: Optional[str] = None
    status: str = ""
    total: Optional[int] = None
    currency: Optional[str] = None


class LemonSqueezyOrderData(LemonSqueezyData):
    attributes: LemonSqueezyOrderAttributes = Field(default_factory=LemonSqueezyOrderAttributes)


class LemonSqueezyOrderEvent(LemonSqueezyWebhook):
    data: LemonSqueezyOrderData


EVENT_MODELS: dict[str, type[LemonSqueezyWebhook]] = {
    WebhookEventName.SUBSCRIPTION_CREATED: LemonSqueezySubscriptionEvent,
    WebhookEventName.SUBSCRIPTION_UPDATED: LemonSqueezySubscriptionEvent,
    WebhookEventName.SUBSCRIPTION_CANCELLED: LemonSqueezySubscriptionEvent,
    WebhookEventName.SUBSCRIPTION_EXPIRED: LemonSqueezySubscriptionEvent,
    WebhookEventName.SUBSCRIPTION_PAUSED: LemonSqueezySubscriptionEvent,
    WebhookEventName.SUBSCRIPTION_RESUMED: LemonSqueezySubscriptionEvent,
    WebhookEventName.SUBSCRIPTION_TRIAL_WILL_END: LemonSqueezySubscriptionEvent,
    WebhookEventName.SUBSCRIPTION_PAYMENT_SUCCESS: LemonSqueezyInvoiceEvent,
    WebhookEventName.SUBSCRIPTION_PAYMENT_FAILED: LemonSqueezyInvoiceEvent,
    WebhookEventName.ORDER_CREATED: LemonSqueezyOrderEvent,
}


def model_for(event_name: str) -> type[LemonSqueezyWebhook]:
    return EVENT_MODELS.get(event_name, LemonSqueezyWebhook)


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def parse_webhook(raw_body: bytes) -> tuple[LemonSqueezyWebhook, dict]:
    """
    Decode and validate a signed delivery.

    Returns the typed event (variant picked by ``meta.event_name``) together with the
    decoded payload, which is what gets stored verbatim in the audit trail.
    """
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadUnparseable(str(e))

    if not isinstance(payload, dict):
        raise PayloadUnparseable("payload must be a JSON object")

    try:
        envelope = LemonSqueezyWebhook.model_validate(payload)
        event = model_for(envelope.event_name).model_validate(payload)
    except ValidationError as e:
        raise PayloadUnparseable(_describe(e))

    return event, payload


def get_external_event_id(event: LemonSqueezyWebhook, raw_body: bytes) -> str:
    if event.meta.webhook_id:
        return event.meta.webhook_id
    # identical redeliveries are byte-identical, so the body digest is a stable key
    return hashlib.sha256(raw_body).hexdigest()


__all__ = (
    "LemonSqueezyMeta",
    "LemonSqueezyData",
    "LemonSqueezyWebhook",
    "LemonSqueezySubscriptionAttributes",
    "LemonSqueezySubscriptionEvent",
    "LemonSqueezyInvoiceEvent",
    "LemonSqueezyOrderEvent",
    "EVENT_MODELS",
    "model_for",
    "parse_webhook",
    "get_external_event_id",
)
