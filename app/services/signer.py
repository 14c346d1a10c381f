"""
Webhook payload signing.

The signature is an HMAC-SHA256 hex digest over the exact bytes sent as
the request body, so receivers can recompute it from what they received.
"""
import hashlib
import hmac
import json
from typing import Any

from app.exceptions import SignatureSetupError


SIGNATURE_PREFIX = "sha256="


def canonical_body(payload: Any) -> bytes:
    """Serialize a payload to the compact, key-sorted JSON bytes that are sent."""
    return json.dumps(
        payload,
        separators=(",", ":"),
        sort_keys=True,
        default=str,
    ).encode("utf-8")


def _secret_bytes(secret: str | bytes | None) -> bytes:
    if secret is None:
        raise SignatureSetupError("Webhook secret is missing")
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise SignatureSetupError("Webhook secret is empty")
    return secret


def sign(secret: str | bytes | None, raw_body: bytes) -> str:
    """
    Generate the HMAC-SHA256 signature for a webhook body.

    Raises:
        SignatureSetupError: if the secret is missing or empty
    """
    return hmac.new(_secret_bytes(secret), raw_body, hashlib.sha256).hexdigest()


def verify(signature: str | None, secret: str | bytes | None, raw_body: bytes) -> bool:
    """
    Check a signature in constant time.

    Accepts the bare hex digest or the "sha256=" prefixed form. Returns
    False rather than raising when the secret or signature is absent.
    """
    if not signature:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    try:
        expected = sign(secret, raw_body)
    except SignatureSetupError:
        return False
    return hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("ascii"))
