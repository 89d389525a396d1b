from core.lemonsqueezy.event_handler import WebhookHandler, dispatch_event
from core.lemonsqueezy.models import get_external_event_id, parse_webhook
from core.lemonsqueezy.signature import SIGNATURE_HEADER, compute_signature, verify_signature

__all__ = (
    "WebhookHandler",
    "dispatch_event",
    "get_external_event_id",
    "parse_webhook",
    "SIGNATURE_HEADER",
    "compute_signature",
    "verify_signature",
)
