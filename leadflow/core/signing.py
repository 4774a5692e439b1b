import hashlib
import hmac
import json
import secrets
from typing import Any

SIGNATURE_PREFIX = "sha256="


def generate_signing_secret() -> str:
    return secrets.token_hex(32)


def encode_webhook_body(event_type: str, payload: dict[str, Any]) -> bytes:
    """Serialize a webhook envelope exactly once; the signature covers these bytes."""
    return json.dumps(
        {"event": event_type, "data": payload},
        separators=(",", ":"),
        sort_keys=True,
        default=str,
    ).encode("utf-8")


def sign_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, secret: str, signature_header: str | None) -> bool:
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = sign_body(body, secret)
    return hmac.compare_digest(expected, signature_header.strip())
