"""Redaction helpers applied to everything that reaches a log line.

Strings are handled by length:
 - longer than MAX_STR_LOG: replaced by a length + sha256 marker
 - longer than MAX_STR_FOR_REGEX: redacted whole if it carries a credential
   marker, otherwise passed through (no regex on long input)
 - otherwise: every credential / email match is replaced in place

Raw webhook bodies are never logged; callers log payload_hash_bytes() instead.
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

REDACTED = "[REDACTED]"

# Lower-cased dict keys whose values never reach a log line
SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "api_key", "secret", "signature",
    "stripe_signature", "webhook_secret",
    "password", "temp_password", "temporary_password", "password_hash",
    "email", "customer_email", "phone",
    "card", "cvc", "payment_method",
})

# Cheap substring markers used when a string is too long for the regexes
_CREDENTIAL_MARKERS: tuple[str, ...] = ("Bearer ", "Basic ", "sk_live_", "sk_test_", "whsec_")

_SECRET_RE = re.compile(
    r"(?:Bearer|Basic) \S+"          # Authorization header values
    r"|sk_(?:live|test)_\S+"         # processor API keys
    r"|whsec_\S+"                    # webhook signing secrets
    r"|v1=[0-9a-f]{16,}"             # Stripe-Signature digests
)
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")


def payload_hash_bytes(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def is_sensitive_key(key: Any) -> bool:
    return isinstance(key, str) and key.lower() in SENSITIVE_KEYS


def _truncation_marker(s: str) -> str:
    digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
    return f"[TRUNCATED len={len(s)} sha256={digest}]"


def sanitize_str(s: str) -> str:
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    if len(s) > MAX_STR_LOG:
        return _truncation_marker(s)

    if len(s) > MAX_STR_FOR_REGEX:
        return REDACTED if any(marker in s for marker in _CREDENTIAL_MARKERS) else s

    return _EMAIL_RE.sub(REDACTED, _SECRET_RE.sub(REDACTED, s))


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    Dict values under sensitive keys are replaced outright; lists and tuples
    come back as lists; strings go through sanitize_str().
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"
    if isinstance(obj, str):
        return sanitize_str(obj)
    if isinstance(obj, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else sanitize_obj(value, depth + 1)
            for key, value in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]
    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Sanitized traceback text for an exc_info tuple.

    Frame locals (temporary passwords, API keys) are never captured.
    """
    value = exc_info[1]
    if value is None:
        return ""
    try:
        lines = traceback.TracebackException.from_exception(value, capture_locals=False).format()
        return sanitize_str("".join(lines))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
