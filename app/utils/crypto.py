"""HMAC-SHA256 signing helpers for URL-embedded action tokens."""

import base64
import secrets

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from app.config import settings


def b64url_encode(data: bytes) -> str:
    """Base64-URL encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def b64url_decode(text: str) -> bytes:
    """Inverse of :func:`b64url_encode`. Raises ``ValueError`` on bad input."""
    if not text or not text.isascii():
        raise ValueError("empty or non-ascii base64 segment")
    if "+" in text or "/" in text or "=" in text:
        raise ValueError("not an unpadded base64url segment")
    padded = text + "=" * (-len(text) % 4)
    return base64.b64decode(padded.encode(), altchars=b"-_", validate=True)


def _secret(key: str | None) -> bytes:
    return (key if key is not None else settings.token_secret).encode()


def sign(message: bytes, key: str | None = None) -> bytes:
    h = hmac.HMAC(_secret(key), hashes.SHA256())
    h.update(message)
    return h.finalize()


def verify(message: bytes, signature: bytes, key: str | None = None) -> bool:
    """Constant-time check of ``signature`` against ``message``."""
    h = hmac.HMAC(_secret(key), hashes.SHA256())
    h.update(message)
    try:
        h.verify(signature)
    except InvalidSignature:
        return False
    return True


def random_token_id() -> str:
    """128 bits from the OS CSPRNG, url-safe."""
    return secrets.token_urlsafe(16)
