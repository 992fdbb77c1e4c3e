# crm_sync/webhooks/verification.py
import base64
import hashlib
import hmac
from typing import Mapping


def b64_hmac_sha256(secret: str, body: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(mac).decode("utf-8")


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """
    HMAC-SHA256 over the exact request bytes, base64, constant-time compare.

    Pass the body as received. Re-serialising parsed JSON changes key order
    and whitespace and the signature will not match.
    Never raises; anything missing or malformed is simply False.
    """
    if not secret or not signature_header or raw_body is None:
        return False
    try:
        expected = b64_hmac_sha256(secret, bytes(raw_body))
        return hmac.compare_digest(signature_header.strip().encode("utf-8"), expected.encode("utf-8"))
    except (TypeError, ValueError, UnicodeError):
        return False


def redact(headers: Mapping[str, str], *names: str) -> dict[str, str]:
    hidden = {n.lower() for n in names}
    return {k: ("<redacted>" if k.lower() in hidden else v) for k, v in headers.items()}
