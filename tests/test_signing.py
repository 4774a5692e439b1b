import hashlib
import hmac

from leadflow.core.signing import (
    SIGNATURE_PREFIX,
    encode_webhook_body,
    generate_signing_secret,
    sign_body,
    verify_signature,
)


def test_body_is_compact_and_key_sorted() -> None:
    body = encode_webhook_body("job.completed", {"zip": "08081", "job_id": "j-1"})
    assert body == b'{"data":{"job_id":"j-1","zip":"08081"},"event":"job.completed"}'


def test_signature_matches_hmac_sha256_hex() -> None:
    body = b'{"data":{},"event":"test.event"}'
    expected = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
    assert sign_body(body, "secret") == f"{SIGNATURE_PREFIX}{expected}"


def test_verify_rejects_wrong_secret_and_missing_header() -> None:
    body = encode_webhook_body("test.event", {"ok": True})
    signature = sign_body(body, "secret")

    assert verify_signature(body, "secret", signature)
    assert not verify_signature(body, "other", signature)
    assert not verify_signature(body, "secret", None)
    assert not verify_signature(body, "secret", signature.removeprefix(SIGNATURE_PREFIX))


def test_generated_secrets_are_unique_hex() -> None:
    first, second = generate_signing_secret(), generate_signing_secret()
    assert first != second
    assert len(first) == 64
    int(first, 16)
