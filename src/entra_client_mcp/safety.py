"""Safety helpers.

Deterministic credential detection/redaction. Tool arguments that look like
credentials are rejected without echoing them, and log records are scrubbed of
bearer tokens and JWT-looking values before they reach any handler.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .errors import USER_INPUT, SafeError

_CRED_FIELD_NAMES = {
    "token",
    "access_token",
    "refresh_token",
    "id_token",
    "authorization",
    "password",
    "client_secret",
}

_JWT_LIKE_RE = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")
_BEARER_IN_TEXT_RE = re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+")
_JWT_IN_TEXT_RE = re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]*")


def looks_like_secret_value(value: str) -> bool:
    """Return True if the value looks like a credential.

    Matching rules (minimum):
    - bearer prefix treated case-insensitively
    - JWT-looking value treated as secret-like (conservative)
    """
    if not isinstance(value, str):
        return False
    trimmed = value.strip()
    if trimmed.lower().startswith("bearer "):
        return True
    if len(trimmed) >= 40 and _JWT_LIKE_RE.match(trimmed):
        return True
    return False


def looks_like_credential_field_name(field_name: str) -> bool:
    """Return True if a key name looks like a credential field."""
    if not isinstance(field_name, str):
        return False
    return field_name.strip().lower() in _CRED_FIELD_NAMES


def validate_no_secrets(obj: Any) -> None:
    """Reject any agent-provided input that appears to contain credentials.

    Raises SafeError without echoing any suspected secret values.
    """
    if isinstance(obj, dict):
        for k, v in obj.items():
            if looks_like_credential_field_name(str(k)):
                raise SafeError(code=USER_INPUT, message="Credential-like fields are not allowed")
            validate_no_secrets(v)
        return
    if isinstance(obj, list):
        for item in obj:
            validate_no_secrets(item)
        return
    if isinstance(obj, str):
        if looks_like_secret_value(obj):
            raise SafeError(code=USER_INPUT, message="Credential-like values are not allowed")
        return


def redact_text(text: str) -> str:
    """Return `text` with bearer credentials and JWT-like substrings masked."""
    if not isinstance(text, str):
        return "<non-string>"
    text = _BEARER_IN_TEXT_RE.sub(r"\1<redacted>", text)
    return _JWT_IN_TEXT_RE.sub("<redacted>", text)


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs credentials from formatted messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_text(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True
