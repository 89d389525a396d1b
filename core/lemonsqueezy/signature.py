import hashlib
import hmac
import logging
from typing import Optional

from core.exceptions import ServerMisconfigured, SignatureInvalid, SignatureMissing

log = logging.getLogger("prmanager.core.lemonsqueezy.signature")

SIGNATURE_HEADER = "x-signature"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    """
    Check that ``raw_body`` was signed by Lemon Squeezy with ``secret``.

    ``raw_body`` must be the exact bytes received; re-serialized JSON will not match.
    Raises a subclass of InvalidSignature, returns None when the signature is valid.
    """
    if not signature:
        raise SignatureMissing(SIGNATURE_HEADER)

    if not secret:
        log.critical("LEMONSQUEEZY_WEBHOOK_SECRET is not configured, rejecting webhook delivery")
        raise ServerMisconfigured()

    expected = compute_signature(raw_body, secret).encode("utf-8")
    provided = signature.strip().encode("utf-8")

    if len(provided) != len(expected):
        raise SignatureInvalid(context={"reason": "length"})

    if not hmac.compare_digest(provided, expected):
        raise SignatureInvalid(context={"reason": "digest"})


__all__ = (
    "SIGNATURE_HEADER",
    "compute_signature",
    "verify_signature",
)
