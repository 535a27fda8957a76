"""Core value types: accounts, scope requests, tokens and tagged outcomes."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Union

from .errors import SafeError, safe_error_to_result


class SessionState(str, Enum):
    """Process-wide sign-in state."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SIGNING_OUT = "signing_out"


class InteractionMode(str, Enum):
    """How an interactive sign-in surface is presented."""

    POPUP = "popup"
    REDIRECT = "redirect"


@dataclass(frozen=True, slots=True)
class Account:
    """A signed-in identity.

    `home_account_id` is `<object id>.<tenant id>`; together with the authority
    host (`environment`) it identifies the account across sessions.
    """

    home_account_id: str
    environment: str
    tenant_id: str
    username: str
    name: str | None = None
    id_token_claims: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> str:
        return f"{self.home_account_id}@{self.environment}"

    def with_claims(self, claims: Mapping[str, Any], *, name: str | None = None) -> Account:
        """Return a copy carrying refreshed ID-token claims."""
        return dataclasses.replace(self, id_token_claims=dict(claims), name=name or self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "home_account_id": self.home_account_id,
            "environment": self.environment,
            "tenant_id": self.tenant_id,
            "username": self.username,
            "name": self.name,
            "id_token_claims": dict(self.id_token_claims),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Account:
        return cls(
            home_account_id=str(data["home_account_id"]),
            environment=str(data["environment"]),
            tenant_id=str(data.get("tenant_id") or ""),
            username=str(data.get("username") or ""),
            name=data.get("name"),
            id_token_claims=dict(data.get("id_token_claims") or {}),
        )


@dataclass(frozen=True, slots=True)
class ScopeRequest:
    """Scopes wanted for one acquisition, optionally pinned to an account."""

    scopes: tuple[str, ...]
    account: Account | None = None

    @classmethod
    def of(cls, scopes: Iterable[str], account: Account | None = None) -> ScopeRequest:
        ordered: list[str] = []
        for raw in scopes:
            scope = raw.strip() if isinstance(raw, str) else ""
            if not scope:
                raise ValueError("Scopes must be non-empty strings")
            if scope not in ordered:
                ordered.append(scope)
        if not ordered:
            raise ValueError("At least one scope is required")
        return cls(scopes=tuple(ordered), account=account)

    @property
    def scope_set(self) -> frozenset[str]:
        return frozenset(self.scopes)


@dataclass(frozen=True, slots=True)
class Token:
    """An access token issued to one account for a set of scopes."""

    access_token: str = field(repr=False)
    scopes: frozenset[str]
    expires_at: datetime
    account: Account

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def covers(self, scopes: Iterable[str]) -> bool:
        return self.scopes >= frozenset(scopes)


@dataclass(frozen=True, slots=True)
class Success:
    token: Token


@dataclass(frozen=True, slots=True)
class InteractionRequired:
    """Silent acquisition cannot proceed without the user."""

    reason: str


@dataclass(frozen=True, slots=True)
class Failed:
    error: SafeError


@dataclass(frozen=True, slots=True)
class RedirectStarted:
    """A redirect sign-in was opened; its result arrives on a later boot."""

    auth_uri: str


AuthOutcome = Union[Success, InteractionRequired, Failed, RedirectStarted]


@dataclass(frozen=True, slots=True)
class CallResult:
    """Result of an authorized (or public) resource call."""

    ok: bool
    body: Any = None
    error: SafeError | None = None
    # session | auth | api
    source: str | None = None

    def __post_init__(self) -> None:
        if not self.ok and self.error is None:
            raise ValueError("A failed CallResult needs an error")

    @classmethod
    def success(cls, body: Any) -> CallResult:
        return cls(ok=True, body=body)

    @classmethod
    def failure(cls, error: SafeError, *, source: str) -> CallResult:
        return cls(ok=False, error=error, source=source)

    def to_result(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "data": self.body}
        out = safe_error_to_result(self.error) if self.error is not None else {"ok": False}
        out["source"] = self.source
        return out
