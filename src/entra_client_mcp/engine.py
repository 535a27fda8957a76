"""Token acquisition engine.

Per call: resolve the account, try the store, try silent refresh, and escalate to
exactly one interactive attempt when (and only when) the silent path reports that
interaction is required. Outcomes are tagged values; the engine never raises for
an authentication failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Sequence

from .account_store import AccountStore
from .errors import interaction_failed, no_account_error, timeout_error
from .identity import IdentityProvider
from .models import (
    Account,
    AuthOutcome,
    Failed,
    InteractionMode,
    InteractionRequired,
    ScopeRequest,
    Success,
    Token,
)

logger = logging.getLogger(__name__)

InflightKey = tuple[str, frozenset[str]]


class TokenAcquisitionEngine:
    """Silent-first token acquisition with a single interactive escalation."""

    def __init__(
        self,
        *,
        store: AccountStore,
        provider: IdentityProvider,
        default_mode: InteractionMode = InteractionMode.POPUP,
    ) -> None:
        self._store = store
        self._provider = provider
        self._default_mode = default_mode
        self._inflight: dict[InflightKey, asyncio.Task[AuthOutcome]] = {}

    def resolve_account(self, request: ScopeRequest) -> Account | None:
        """Explicit account first, else the first stored account."""
        if request.account is not None:
            return request.account
        accounts = self._store.list_accounts()
        return accounts[0] if accounts else None

    async def acquire_token(self, request: ScopeRequest, *, mode: InteractionMode | None = None) -> AuthOutcome:
        account = self.resolve_account(request)
        if account is None:
            return Failed(no_account_error())

        cached = self._store.find_cached_token(account, request.scopes)
        if cached is not None:
            logger.debug("Token served from store")
            return Success(cached)

        silent = await self._provider.acquire_token_silent(request.scopes, account)
        if isinstance(silent, Success):
            self._store_success(silent.token)
            return silent
        if isinstance(silent, InteractionRequired):
            logger.info("Silent acquisition needs interaction: %s", silent.reason)
            return await self._escalate(request, account, mode or self._default_mode)
        return silent

    async def _escalate(self, request: ScopeRequest, account: Account, mode: InteractionMode) -> AuthOutcome:
        outcome = await self.acquire_interactive(request.scopes, account=account, mode=mode)
        if isinstance(outcome, InteractionRequired):
            # Interactive surfaces never ask for more interaction; do not loop.
            return Failed(interaction_failed(outcome.reason))
        return outcome

    async def acquire_interactive(
        self,
        scopes: Sequence[str],
        *,
        account: Account | None = None,
        mode: InteractionMode | None = None,
    ) -> AuthOutcome:
        """Open one interactive surface for `scopes`.

        Concurrent popup requests for the same account and scope set share the
        in-flight attempt instead of opening a second window. A request without an
        account is keyed to the active account, so a sign-in and an escalation for
        that account share one window.
        """
        mode = mode or self._default_mode
        login_hint = account.username if account is not None and account.username else None

        if mode is InteractionMode.REDIRECT:
            return await self._provider.begin_redirect(scopes, login_hint=login_hint)

        owner = account if account is not None else self.resolve_account(ScopeRequest(scopes=tuple(scopes)))
        key: InflightKey = (owner.key if owner is not None else "*", frozenset(scopes))
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_popup(scopes, login_hint))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.info("Reusing in-flight interactive sign-in")
        return await asyncio.shield(task)

    def _forget(self, key: InflightKey, task: asyncio.Task[AuthOutcome]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _run_popup(self, scopes: Sequence[str], login_hint: str | None) -> AuthOutcome:
        outcome = await self._provider.acquire_token_interactive(scopes, login_hint=login_hint)
        if isinstance(outcome, Success):
            self._store_success(outcome.token)
        return outcome

    async def complete_redirect(self, auth_response: Mapping[str, str]) -> AuthOutcome:
        """Finish a redirect sign-in started in this or an earlier process."""
        outcome = await self._provider.complete_redirect(auth_response)
        if isinstance(outcome, Success):
            self._store_success(outcome.token)
        return outcome

    def _store_success(self, token: Token) -> None:
        self._store.add_or_replace(token.account)
        self._store.put_token(token)

    async def acquire_token_within(
        self,
        request: ScopeRequest,
        *,
        timeout_s: float,
        mode: InteractionMode | None = None,
    ) -> AuthOutcome:
        """`acquire_token` bounded by a caller deadline."""
        try:
            return await asyncio.wait_for(self.acquire_token(request, mode=mode), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Token acquisition exceeded %.1fs", timeout_s)
            return Failed(timeout_error())

    def invalidate(self, token: Token) -> None:
        """Drop a token the resource server rejected so the next call re-acquires."""
        self._store.evict_token(token)
