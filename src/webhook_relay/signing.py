import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

SIGNATURE_HEADER = "X-Webhook-Signature"


def canonical_json(envelope: Mapping[str, Any]) -> bytes:
    return json.dumps(envelope, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_body(secret: str, body: bytes) -> str:
    return f"sha256={hmac_sha256(secret, body)}"


def verify_body(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_body(secret, body).encode(), signature.encode("utf-8", "surrogateescape"))


def parse_gateway_signature(header: str) -> tuple[str | None, str]:
    # A header without both ts and v1 is a bare digest.
    parts = dict(part.strip().split("=", 1) for part in header.split(",") if "=" in part)
    if "ts" in parts and "v1" in parts:
        return parts["ts"], parts["v1"]
    return None, header.strip()


def gateway_message(timestamp: str, path: str, raw_body: bytes) -> bytes:
    return timestamp.encode("utf-8") + b"POST" + path.encode("utf-8") + raw_body


def verify_gateway_signature(secret: str, path: str, raw_body: bytes, header: str, fallback_timestamp: str) -> bool:
    timestamp, digest = parse_gateway_signature(header)
    expected = hmac_sha256(secret, gateway_message(timestamp or fallback_timestamp, path, raw_body))
    return hmac.compare_digest(expected.encode(), digest.encode("utf-8", "surrogateescape"))
