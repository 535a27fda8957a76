"""Identity-provider collaborator.

The core only depends on the success/failure contract of these calls:

- silent acquisition (cached refresh credential, no user interaction)
- interactive acquisition in a system browser (the popup analogue)
- auth-code redirect flow whose state survives a process restart
- local sign-out plus the provider end-session URL

`MsalIdentityProvider` implements the contract on top of msal. msal is blocking, so
every call runs in a worker thread. Token signature validation stays inside msal and
the resource servers; claims read here are informational only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence
from urllib.parse import parse_qs, urlencode, urlsplit

import jwt
import msal
import requests

from .config import AppConfig
from .errors import interaction_failed, transient_auth_failure
from .models import Account, AuthOutcome, Failed, InteractionRequired, RedirectStarted, Success, Token

logger = logging.getLogger(__name__)

# msal adds these itself and rejects them in explicit requests.
RESERVED_SCOPES = frozenset({"openid", "profile", "offline_access"})

# Silent-path errors that only a user interaction can fix.
INTERACTION_ERRORS = frozenset({"interaction_required", "login_required", "consent_required", "invalid_grant"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class PendingRedirect:
    """A redirect sign-in that has been opened but not yet completed."""

    auth_uri: str
    started_at: datetime


class IdentityProvider(Protocol):
    """Contract the acquisition engine and session controller rely on."""

    async def list_accounts(self) -> list[Account]: ...

    async def acquire_token_silent(self, scopes: Sequence[str], account: Account) -> AuthOutcome: ...

    async def acquire_token_interactive(
        self, scopes: Sequence[str], *, login_hint: str | None = None
    ) -> AuthOutcome: ...

    async def begin_redirect(self, scopes: Sequence[str], *, login_hint: str | None = None) -> AuthOutcome: ...

    async def complete_redirect(self, auth_response: Mapping[str, str]) -> AuthOutcome: ...

    def pending_redirect(self) -> PendingRedirect | None: ...

    def discard_pending_redirect(self) -> None: ...

    async def sign_out(self, account: Account) -> str: ...

    async def forget_all_accounts(self) -> None: ...


def parse_auth_response(value: str) -> dict[str, str]:
    """Turn a redirect URL (or bare query string) into the mapping msal expects."""
    text = value.strip()
    parts = urlsplit(text)
    if parts.query:
        query = parts.query
    elif parts.fragment:
        query = parts.fragment
    elif "=" in text and not parts.scheme:
        query = text.lstrip("?#")
    else:
        return {}
    parsed = parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items() if v}


def _write_private_json(path: Path, data: Any) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(data if isinstance(data, str) else json.dumps(data))
    tmp.replace(path)


class MsalIdentityProvider:
    """msal-backed public client (no client secret)."""

    def __init__(
        self,
        *,
        config: AppConfig,
        app: Any | None = None,
        cache: msal.SerializableTokenCache | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Create the provider.

        Args:
            config: Registration and authority settings.
            app: Optional pre-built msal application (tests inject a stub).
            cache: Optional token cache; defaults to one loaded from the state dir.
            clock: UTC clock used to stamp token expiry.
        """
        self._config = config
        self._clock = clock
        self._environment = urlsplit(config.authority).netloc
        self._cache_path = config.token_cache_path
        self._flow_path = config.pending_flow_path
        self._app_lock = threading.Lock()
        self._app = app
        self._pending: dict[str, Any] | None = None

        self._cache = cache if cache is not None else msal.SerializableTokenCache()
        self._cache_loaded = False
        if cache is None and self._cache_path is not None and self._cache_path.exists():
            self._cache.deserialize(self._cache_path.read_text(encoding="utf-8"))
            self._cache_loaded = True

        if self._flow_path is not None and self._flow_path.exists():
            try:
                self._pending = json.loads(self._flow_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("Pending sign-in state unreadable; discarding")
                self.discard_pending_redirect()

    # msal plumbing

    def _get_app(self) -> Any:
        # Construction performs authority discovery, so defer it to first use.
        with self._app_lock:
            if self._app is None:
                self._app = msal.PublicClientApplication(
                    self._config.client_id,
                    authority=self._config.authority,
                    token_cache=self._cache,
                )
            return self._app

    def _has_provider_state(self) -> bool:
        return self._app is not None or self._cache_loaded

    def _save_cache(self) -> None:
        if self._cache_path is None or not self._cache.has_state_changed:
            return
        _write_private_json(self._cache_path, self._cache.serialize())

    @staticmethod
    def _msal_scopes(scopes: Sequence[str]) -> list[str]:
        return [s for s in scopes if s not in RESERVED_SCOPES]

    def _find_msal_account(self, app: Any, account: Account) -> dict[str, Any] | None:
        candidates = app.get_accounts(username=account.username or None)
        for candidate in candidates:
            if candidate.get("home_account_id") == account.home_account_id:
                return candidate
        # Accounts recorded from ID-token claims carry oid.tid, not msal's uid.utid.
        same_realm = [c for c in candidates if c.get("realm") == account.tenant_id]
        return same_realm[0] if len(same_realm) == 1 else None

    def _match_signed_in(self, app: Any, claims: Mapping[str, Any]) -> dict[str, Any] | None:
        """Find msal's record of the account that just signed in.

        msal keys accounts by client_info (`uid.utid`), which differs from the ID
        token's `oid.tid` for guests and personal accounts.
        """
        username = claims.get("preferred_username") or claims.get("upn") or claims.get("email")
        if not username:
            return None
        candidates = app.get_accounts(username=str(username))
        for candidate in candidates:
            if candidate.get("realm") == claims.get("tid") and candidate.get("local_account_id") in (
                None,
                claims.get("oid"),
            ):
                return candidate
        return candidates[0] if len(candidates) == 1 else None

    def _account_from_msal(self, data: Mapping[str, Any]) -> Account:
        return Account(
            home_account_id=str(data.get("home_account_id") or ""),
            environment=str(data.get("environment") or self._environment),
            tenant_id=str(data.get("realm") or ""),
            username=str(data.get("username") or ""),
        )

    @staticmethod
    def _claims_from_result(result: Mapping[str, Any]) -> dict[str, Any]:
        claims = result.get("id_token_claims")
        if isinstance(claims, dict):
            return dict(claims)
        raw = result.get("id_token")
        if not isinstance(raw, str):
            return {}
        try:
            return jwt.decode(raw, options={"verify_signature": False})
        except jwt.PyJWTError:
            logger.warning("ID token in provider response could not be decoded")
            return {}

    def _account_from_claims(
        self,
        claims: Mapping[str, Any],
        fallback: Account | None,
        msal_account: Mapping[str, Any] | None = None,
    ) -> Account | None:
        if fallback is not None:
            if not claims:
                return fallback
            return fallback.with_claims(claims, name=claims.get("name"))
        if msal_account is not None and claims:
            return self._account_from_msal(msal_account).with_claims(claims, name=claims.get("name"))
        object_id = claims.get("oid") or claims.get("sub")
        tenant_id = claims.get("tid") or self._config.tenant_id
        if not object_id:
            return None
        username = claims.get("preferred_username") or claims.get("upn") or claims.get("email") or ""
        return Account(
            home_account_id=f"{object_id}.{tenant_id}",
            environment=self._environment,
            tenant_id=str(tenant_id),
            username=str(username),
            name=claims.get("name"),
            id_token_claims=dict(claims),
        )

    def _success(
        self,
        result: Mapping[str, Any],
        scopes: Sequence[str],
        fallback: Account | None,
        msal_account: Mapping[str, Any] | None = None,
    ) -> AuthOutcome:
        account = self._account_from_claims(self._claims_from_result(result), fallback, msal_account)
        if account is None:
            return Failed(interaction_failed("Provider response is missing account claims"))
        try:
            expires_in = int(result.get("expires_in", 0))
        except (TypeError, ValueError):
            expires_in = 0
        granted = str(result.get("scope") or "").split()
        token = Token(
            access_token=str(result["access_token"]),
            scopes=frozenset(scopes) | frozenset(granted),
            expires_at=self._clock() + timedelta(seconds=expires_in),
            account=account,
        )
        return Success(token)

    # Blocking bodies (worker thread)

    def _list_accounts_blocking(self) -> list[dict[str, Any]]:
        return list(self._get_app().get_accounts())

    def _silent_blocking(self, scopes: Sequence[str], account: Account) -> dict[str, Any] | None:
        app = self._get_app()
        msal_account = self._find_msal_account(app, account)
        if msal_account is None:
            return None
        result = app.acquire_token_silent_with_error(self._msal_scopes(scopes), account=msal_account)
        self._save_cache()
        return result

    def _interactive_blocking(
        self, scopes: Sequence[str], login_hint: str | None
    ) -> tuple[dict[str, Any], dict[str, Any] | None]:
        app = self._get_app()
        result = app.acquire_token_interactive(
            self._msal_scopes(scopes),
            login_hint=login_hint,
            prompt=None if login_hint else "select_account",
            timeout=self._config.limits.acquire_timeout_s,
        )
        self._save_cache()
        return result, self._signed_in_account(app, result)

    def _begin_redirect_blocking(self, scopes: Sequence[str], login_hint: str | None) -> dict[str, Any]:
        return self._get_app().initiate_auth_code_flow(
            self._msal_scopes(scopes),
            redirect_uri=self._config.redirect_uri,
            login_hint=login_hint,
        )

    def _complete_redirect_blocking(
        self, flow: dict[str, Any], auth_response: dict[str, str]
    ) -> tuple[dict[str, Any], dict[str, Any] | None]:
        app = self._get_app()
        result = app.acquire_token_by_auth_code_flow(flow, auth_response)
        self._save_cache()
        return result, self._signed_in_account(app, result)

    def _signed_in_account(self, app: Any, result: Mapping[str, Any]) -> dict[str, Any] | None:
        if "access_token" not in result:
            return None
        return self._match_signed_in(app, self._claims_from_result(result))

    def _remove_account_blocking(self, account: Account) -> None:
        app = self._get_app()
        for candidate in app.get_accounts():
            if candidate.get("home_account_id") == account.home_account_id:
                app.remove_account(candidate)
        self._save_cache()

    def _forget_all_blocking(self) -> None:
        if self._app is not None:
            for candidate in self._app.get_accounts():
                self._app.remove_account(candidate)
        else:
            self._cache = msal.SerializableTokenCache()
        self._cache_loaded = False
        if self._cache_path is not None:
            self._cache_path.unlink(missing_ok=True)

    # IdentityProvider

    async def list_accounts(self) -> list[Account]:
        if not self._has_provider_state():
            return []
        try:
            raw = await asyncio.to_thread(self._list_accounts_blocking)
        except requests.exceptions.RequestException as exc:
            logger.warning("Could not read provider accounts: %s", type(exc).__name__)
            return []
        return [self._account_from_msal(a) for a in raw if a.get("home_account_id")]

    async def acquire_token_silent(self, scopes: Sequence[str], account: Account) -> AuthOutcome:
        try:
            result = await asyncio.to_thread(self._silent_blocking, scopes, account)
        except requests.exceptions.RequestException as exc:
            logger.warning("Silent acquisition transport failure: %s", type(exc).__name__)
            return Failed(transient_auth_failure("Could not reach the identity provider"))

        if result is None:
            return InteractionRequired("No refresh credential is cached for this account")
        if "access_token" in result:
            return self._success(result, scopes, account)

        error = str(result.get("error") or "")
        description = str(result.get("error_description") or error or "Silent acquisition failed")
        if error in INTERACTION_ERRORS:
            return InteractionRequired(description)
        logger.warning("Silent acquisition failed: %s", error or "<no error code>")
        return Failed(transient_auth_failure("Silent token acquisition failed", hint=error or None))

    async def acquire_token_interactive(
        self, scopes: Sequence[str], *, login_hint: str | None = None
    ) -> AuthOutcome:
        try:
            result, msal_account = await asyncio.to_thread(self._interactive_blocking, scopes, login_hint)
        except requests.exceptions.RequestException as exc:
            logger.warning("Interactive acquisition transport failure: %s", type(exc).__name__)
            return Failed(transient_auth_failure("Could not reach the identity provider"))

        if "access_token" in result:
            return self._success(result, scopes, None, msal_account)
        error = str(result.get("error") or "")
        logger.info("Interactive sign-in did not complete: %s", error or "<no error code>")
        return Failed(
            interaction_failed(
                str(result.get("error_description") or "Interactive sign-in was cancelled or rejected"),
                hint=error or None,
            )
        )

    async def begin_redirect(self, scopes: Sequence[str], *, login_hint: str | None = None) -> AuthOutcome:
        try:
            flow = await asyncio.to_thread(self._begin_redirect_blocking, scopes, login_hint)
        except requests.exceptions.RequestException as exc:
            logger.warning("Redirect sign-in could not start: %s", type(exc).__name__)
            return Failed(transient_auth_failure("Could not reach the identity provider"))
        except ValueError as exc:
            return Failed(interaction_failed("Redirect sign-in could not start", hint=str(exc)))

        auth_uri = flow.get("auth_uri") if isinstance(flow, dict) else None
        if not auth_uri:
            return Failed(interaction_failed("Provider did not return a sign-in URL"))

        record = {"flow": flow, "scopes": list(scopes), "started_at": self._clock().isoformat()}
        self._pending = record
        if self._flow_path is not None:
            _write_private_json(self._flow_path, record)
        logger.info("Redirect sign-in started")
        return RedirectStarted(auth_uri=str(auth_uri))

    async def complete_redirect(self, auth_response: Mapping[str, str]) -> AuthOutcome:
        record = self._pending
        if record is None:
            return Failed(interaction_failed("No sign-in redirect is pending"))
        # A flow can be redeemed once; a replayed response must not reuse it.
        self.discard_pending_redirect()

        if "error" in auth_response:
            return Failed(
                interaction_failed(
                    str(auth_response.get("error_description") or "Sign-in was cancelled or rejected"),
                    hint=str(auth_response["error"]),
                )
            )
        try:
            result, msal_account = await asyncio.to_thread(
                self._complete_redirect_blocking, record["flow"], dict(auth_response)
            )
        except requests.exceptions.RequestException as exc:
            logger.warning("Redirect completion transport failure: %s", type(exc).__name__)
            return Failed(transient_auth_failure("Could not reach the identity provider"))
        except ValueError:
            return Failed(interaction_failed("Sign-in response does not match the pending request"))

        if "access_token" in result:
            return self._success(result, record.get("scopes") or [], None, msal_account)
        error = str(result.get("error") or "")
        return Failed(
            interaction_failed(
                str(result.get("error_description") or "Redirect sign-in failed"),
                hint=error or None,
            )
        )

    def pending_redirect(self) -> PendingRedirect | None:
        record = self._pending
        if record is None:
            return None
        try:
            return PendingRedirect(
                auth_uri=str(record["flow"]["auth_uri"]),
                started_at=datetime.fromisoformat(record["started_at"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def discard_pending_redirect(self) -> None:
        self._pending = None
        if self._flow_path is not None:
            self._flow_path.unlink(missing_ok=True)

    def logout_url(self) -> str:
        query = urlencode({"post_logout_redirect_uri": self._config.post_logout_redirect_uri})
        return f"{self._config.authority}/oauth2/v2.0/logout?{query}"

    async def sign_out(self, account: Account) -> str:
        if self._has_provider_state():
            await asyncio.to_thread(self._remove_account_blocking, account)
        logger.info("Provider sign-out prepared")
        return self.logout_url()

    async def forget_all_accounts(self) -> None:
        """Drop every cached account and delete the persisted token cache."""
        await asyncio.to_thread(self._forget_all_blocking)
        logger.info("Provider token cache cleared")
