import logging
from rest_framework.views import exception_handler

log = logging.getLogger("prmanager.core.exceptions")


class WebhookError(Exception):
    def __init__(self, message: str, key: str = "", context=None, expected=True, *, retryable=None):
        super().__init__(message)
        self.message = message
        self.key = key
        self.context = context or {}
        self.expected = expected
        self.retryable = retryable

    def __str__(self):
        return self.message

    def __repr__(self):
        return f"{self.__class__.__name__}(key={self.key!r}, retryable={self.retryable})"


# --- Ingestion: surfaced to the HTTP caller ---

class InvalidSignature(WebhookError):
    status_code = 400

    def __init__(self, message: str, key: str = "webhook@signature", context=None):
        super().__init__(message, key, context, expected=True, retryable=False)


class SignatureMissing(InvalidSignature):
    def __init__(self, header: str = "x-signature", context=None):
        super().__init__(f"Missing {header} header", key="webhook@signature_missing", context=context)


class SignatureInvalid(InvalidSignature):
    def __init__(self, context=None):
        super().__init__("Invalid signature", key="webhook@signature_invalid", context=context)


class ServerMisconfigured(InvalidSignature):
    status_code = 500

    def __init__(self, message: str = "Server configuration error", context=None):
        super().__init__(message, key="webhook@misconfigured", context=context)
        self.expected = False


class PayloadUnparseable(WebhookError):
    status_code = 400

    def __init__(self, message: str, context=None):
        super().__init__(f"Webhook Error: {message}", key="webhook@unparseable", context=context, retryable=False)


# --- Dispatch: captured in the audit trail, never surfaced to the provider ---

class WebhookSkip(WebhookError):
    def __init__(self, message: str, key: str = "webhook@skipped", context=None):
        super().__init__(message, key, context, expected=True, retryable=False)


class WebhookRetry(WebhookError):
    def __init__(self, message: str, key: str = "webhook@retry", context=None):
        super().__init__(message, key, context, expected=False, retryable=True)


class MissingUserReference(WebhookError):
    """The payload carries no usable ``meta.custom_data.user_id``; retrying cannot fix that."""

    def __init__(self, message: str, context=None):
        super().__init__(message, key="webhook@missing_user", context=context, expected=False, retryable=False)


def drf_exception_handler(exc, context):
    response = exception_handler(exc, context)

    if response is not None and response.status_code >= 500:
        log.exception(
            f"DRF server error in {context.get('view', 'unknown')}",
            extra={
                "view": str(context.get("view")),
                "status_code": response.status_code,
            },
        )
    elif response is not None and response.status_code >= 400:
        log.warning(f"DRF client error {response.status_code} in {context.get('view', 'unknown')}")

    return response


__all__ = (
    "WebhookError",
    "InvalidSignature",
    "SignatureMissing",
    "SignatureInvalid",
    "ServerMisconfigured",
    "PayloadUnparseable",
    "WebhookSkip",
    "WebhookRetry",
    "MissingUserReference",
    "drf_exception_handler",
)
