"""Webhook body serialization and HMAC-SHA256 signatures."""

import hashlib
import hmac
import json
from typing import Any


SIGNATURE_HEADER = "X-Webhook-Signature"


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Compact JSON bytes; the exact bytes that are both signed and sent."""

    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of a received signature header."""

    return hmac.compare_digest(sign_payload(secret, body), signature)
