"""Safe error types and serialization helpers.

Errors returned to callers must be non-secret and stable: they never carry
access tokens, refresh credentials, authorization codes, or raw ID tokens.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# Acquisition taxonomy
NO_ACCOUNT = "NoAccount"
INTERACTION_REQUIRED = "InteractionRequired"
INTERACTION_FAILED = "InteractionFailed"
TRANSIENT_AUTH_FAILURE = "TransientAuthFailure"
TIMEOUT = "Timeout"

# Call taxonomy
UNAUTHENTICATED = "Unauthenticated"
INTERACTION_PENDING = "InteractionPending"
API = "Api"
NETWORK = "Network"

# Host / agent input
CONFIG = "Config"
USER_INPUT = "UserInput"
INTERNAL = "Internal"


@dataclass(frozen=True, slots=True)
class SafeError(Exception):
    """An error safe to expose to callers.

    This must never include secrets (tokens, authorization codes, client secrets).
    """

    code: str
    message: str
    hint: str | None = None
    status_code: int | None = None


def no_account_error() -> SafeError:
    """No authenticated identity is available to act on behalf of."""
    return SafeError(
        code=NO_ACCOUNT,
        message="No signed-in account is available",
        hint="Sign in before requesting a token",
    )


def interaction_failed(message: str, *, hint: str | None = None) -> SafeError:
    """The user cancelled or the provider rejected an interactive flow."""
    return SafeError(code=INTERACTION_FAILED, message=message, hint=hint)


def transient_auth_failure(message: str, *, hint: str | None = None) -> SafeError:
    """Network or server failure while talking to the identity provider."""
    return SafeError(code=TRANSIENT_AUTH_FAILURE, message=message, hint=hint)


def timeout_error(message: str = "Token acquisition timed out") -> SafeError:
    return SafeError(code=TIMEOUT, message=message)


def unauthenticated_error() -> SafeError:
    """A protected call was attempted outside an authenticated session."""
    return SafeError(
        code=UNAUTHENTICATED,
        message="Not signed in",
        hint="Call login first",
    )


def safe_error_to_result(err: SafeError) -> dict[str, Any]:
    """Convert a SafeError into the standard tool envelope."""
    out = to_error_result(code=err.code, message=err.message, hint=err.hint)
    if err.status_code is not None:
        out["status_code"] = err.status_code
    return out


def to_error_result(*, code: str, message: str, hint: str | None = None) -> dict[str, Any]:
    """Build a standard tool error envelope."""
    out: dict[str, Any] = {"ok": False, "code": code, "message": message}
    if hint:
        out["hint"] = hint
    return out


def user_input_error(message: str, hint: str | None = None) -> dict[str, Any]:
    """Error for invalid tool arguments or unsupported operations."""
    return to_error_result(code=USER_INPUT, message=message, hint=hint)


def internal_error(message: str = "Internal error") -> dict[str, Any]:
    """Error for unexpected failures."""
    return to_error_result(code=INTERNAL, message=message)
