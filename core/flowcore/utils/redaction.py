"""Secret redaction for payloads that get persisted or logged."""

import re
from typing import Any

REDACTED = "[REDACTED]"

# Matched against normalised keys (lowercase, "-" and " " folded to "_")
_SECRET_KEY_PATTERN = re.compile(
    r"(password|passwd|secret|token|api_?key|authorization|credential|cookie|"
    r"webhook_?url|private_?key|access_?key)"
)

# Header names whose values never go to logs
SENSITIVE_HEADERS = frozenset(
    {"authorization", "x-api-key", "api-key", "cookie", "set-cookie", "proxy-authorization"}
)


def is_secret_key(key: str) -> bool:
    normalised = key.lower().replace("-", "_").replace(" ", "_")
    return bool(_SECRET_KEY_PATTERN.search(normalised))


def redact_secrets(value: Any) -> Any:
    """
    Return a copy of ``value`` with secret-looking keys replaced.

    Walks dicts and lists recursively. Non-container values are returned
    as-is; the input is never mutated.
    """
    if isinstance(value, dict):
        return {
            k: (REDACTED if isinstance(k, str) and is_secret_key(k) else redact_secrets(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact_secrets(v) for v in value]
    return value


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Mask sensitive HTTP header values for logging."""
    return {k: (REDACTED if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}
