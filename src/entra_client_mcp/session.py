"""Session state machine.

    unauthenticated --login--> authenticating --success--> authenticated
    authenticating --failure/cancel--> unauthenticated
    authenticated --logout--> signing_out --done--> unauthenticated
    authenticated --login--> authenticated (another account; sign-in runs alongside)

A redirect sign-in leaves the process; it is resumed from the provider's pending
flow plus the redirect response on the next boot (or via `complete_login`), never
from in-memory continuations.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Sequence

from .account_store import AccountStore
from .engine import TokenAcquisitionEngine
from .errors import USER_INPUT, SafeError
from .identity import IdentityProvider
from .models import Account, AuthOutcome, Failed, InteractionMode, RedirectStarted, SessionState, Success

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthSessionController:
    """Owns the single process-wide SessionState."""

    def __init__(
        self,
        *,
        store: AccountStore,
        engine: TokenAcquisitionEngine,
        provider: IdentityProvider,
        login_scopes: Sequence[str],
        redirect_timeout_s: float = 600.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._engine = engine
        self._provider = provider
        self._login_scopes = tuple(login_scopes)
        self._redirect_timeout = timedelta(seconds=redirect_timeout_s)
        self._clock = clock

        self._state = SessionState.UNAUTHENTICATED
        self._login_task: asyncio.Task[AuthOutcome] | None = None
        self._pending_auth_uri: str | None = None
        self._last_error: SafeError | None = None

    def session_state(self) -> SessionState:
        return self._state

    def current_accounts(self) -> list[Account]:
        return self._store.list_accounts()

    def active_account(self) -> Account | None:
        accounts = self._store.list_accounts()
        return accounts[0] if accounts else None

    @property
    def last_error(self) -> SafeError | None:
        return self._last_error

    @property
    def pending_auth_uri(self) -> str | None:
        return self._pending_auth_uri

    async def bootstrap(self, redirect_response: Mapping[str, str] | None = None) -> SessionState:
        """Settle the initial state once at startup.

        Valid paths into `authenticated` without a user action: a returned redirect,
        an account persisted in the store, or an account known to the provider cache.
        """
        pending = self._provider.pending_redirect()
        if pending is not None and redirect_response:
            self._state = SessionState.AUTHENTICATING
            outcome = await self._engine.complete_redirect(redirect_response)
            self._apply_login_outcome(outcome)
            if isinstance(outcome, Failed):
                logger.warning("Redirect sign-in failed on boot: %s", outcome.error.code)
        elif pending is not None:
            if self._clock() - pending.started_at > self._redirect_timeout:
                logger.info("Abandoned redirect sign-in discarded")
                self._provider.discard_pending_redirect()
            else:
                self._pending_auth_uri = pending.auth_uri
        elif redirect_response:
            logger.warning("Redirect response received with no pending sign-in; ignored")

        if not self._store.list_accounts():
            for account in await self._provider.list_accounts():
                self._store.add_or_replace(account)

        self._settle()
        if self._pending_auth_uri is not None and self._state is SessionState.UNAUTHENTICATED:
            self._state = SessionState.AUTHENTICATING
        logger.info("Session bootstrapped: %s", self._state.value)
        return self._state

    async def login(self, mode: InteractionMode = InteractionMode.POPUP) -> AuthOutcome:
        """Start an interactive sign-in.

        While a sign-in is already in progress this is a no-op that returns the
        in-flight outcome (popup) or the pending redirect URL. Adding an account
        from `authenticated` keeps the session usable until the new sign-in lands.
        """
        if self._state is SessionState.SIGNING_OUT:
            return Failed(SafeError(code=USER_INPUT, message="Sign-out is in progress"))
        self._expire_stale_redirect()
        if self._login_task is not None:
            return await asyncio.shield(self._login_task)
        if self._pending_auth_uri is not None:
            return RedirectStarted(auth_uri=self._pending_auth_uri)

        if self._state is not SessionState.AUTHENTICATED:
            self._state = SessionState.AUTHENTICATING
        self._last_error = None

        if mode is InteractionMode.REDIRECT:
            try:
                outcome = await self._engine.acquire_interactive(self._login_scopes, mode=InteractionMode.REDIRECT)
            except Exception:
                self._settle()
                raise
            if isinstance(outcome, RedirectStarted):
                self._pending_auth_uri = outcome.auth_uri
            else:
                self._apply_login_outcome(outcome)
            return outcome

        self._login_task = asyncio.ensure_future(self._login_popup())
        return await asyncio.shield(self._login_task)

    async def _login_popup(self) -> AuthOutcome:
        try:
            outcome = await self._engine.acquire_interactive(self._login_scopes, mode=InteractionMode.POPUP)
        except Exception:
            self._login_task = None
            self._settle()
            raise
        self._login_task = None
        self._apply_login_outcome(outcome)
        return outcome

    async def complete_login(self, auth_response: Mapping[str, str]) -> AuthOutcome:
        """Finish a redirect sign-in with the provider's redirect response."""
        if self._state is SessionState.SIGNING_OUT:
            return Failed(SafeError(code=USER_INPUT, message="Sign-out is in progress"))
        if self._state is not SessionState.AUTHENTICATED:
            self._state = SessionState.AUTHENTICATING
        try:
            outcome = await self._engine.complete_redirect(auth_response)
        except Exception:
            self._pending_auth_uri = None
            self._settle()
            raise
        self._apply_login_outcome(outcome)
        return outcome

    def _apply_login_outcome(self, outcome: AuthOutcome) -> None:
        self._pending_auth_uri = None
        if isinstance(outcome, Success):
            self._state = SessionState.AUTHENTICATED
            logger.info("Sign-in completed")
            return
        if isinstance(outcome, Failed):
            self._last_error = outcome.error
            logger.info("Sign-in did not complete: %s", outcome.error.code)
        self._settle()

    def _settle(self) -> None:
        self._state = SessionState.AUTHENTICATED if self._store.list_accounts() else SessionState.UNAUTHENTICATED

    def _discard_redirect(self) -> None:
        self._pending_auth_uri = None
        self._provider.discard_pending_redirect()

    def _expire_stale_redirect(self) -> None:
        if self._pending_auth_uri is None:
            return
        pending = self._provider.pending_redirect()
        if pending is not None and self._clock() - pending.started_at <= self._redirect_timeout:
            return
        logger.info("Abandoned redirect sign-in discarded")
        self._discard_redirect()
        self._settle()

    async def logout(self) -> str | None:
        """Sign every account out, clear the store and drop any pending redirect.

        Every account gets a provider sign-out attempt. If any attempt fails the
        provider cache is wiped as a whole and the first error is re-raised after
        local state is cleared. Returns the provider end-session URL, if any.
        """
        if self._state is SessionState.AUTHENTICATING and self._pending_auth_uri is not None:
            self._discard_redirect()
            self._settle()
            logger.info("Pending redirect sign-in cancelled")
            return None
        if self._state is not SessionState.AUTHENTICATED:
            return None

        self._state = SessionState.SIGNING_OUT
        logout_url: str | None = None
        errors: list[Exception] = []
        try:
            for account in self._store.list_accounts():
                try:
                    logout_url = await self._provider.sign_out(account)
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    logger.warning("Provider sign-out failed: %s", type(exc).__name__)
                    errors.append(exc)
            if errors:
                await self._provider.forget_all_accounts()
        finally:
            self._store.clear()
            self._discard_redirect()
            self._state = SessionState.UNAUTHENTICATED
            logger.info("Signed out")
        if errors:
            raise errors[0]
        return logout_url
