import hashlib
import hmac
import secrets

API_KEY_PREFIX = "rfk_live_"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key_material() -> tuple[str, str, str]:
    token = secrets.token_urlsafe(32).replace("-", "x").replace("_", "y")
    api_key = f"{API_KEY_PREFIX}{token}"
    key_prefix = api_key[:20]
    key_hash = hash_api_key(api_key)
    return api_key, key_prefix, key_hash


def build_webhook_signature(*, signing_secret: str, payload_bytes: bytes) -> str:
    digest = hmac.new(
        signing_secret.encode("utf-8"),
        payload_bytes,
        hashlib.sha256,
    ).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(*, signing_secret: str, payload_bytes: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    expected = build_webhook_signature(signing_secret=signing_secret, payload_bytes=payload_bytes)
    return hmac.compare_digest(expected, signature.strip())
