"""Authorized HTTP dispatch.

Provides:
- session gate (no network call outside an authenticated session)
- bearer credential from the acquisition engine
- exactly one HTTP attempt per call, no redirects, finite timeouts
- safe error translation into CallResult
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from .config import LimitsConfig
from .engine import TokenAcquisitionEngine
from .errors import API, INTERACTION_PENDING, NETWORK, TIMEOUT, SafeError, unauthenticated_error
from .models import CallResult, Failed, InteractionMode, RedirectStarted, ScopeRequest, SessionState, Success
from .session import AuthSessionController

logger = logging.getLogger(__name__)


class AuthorizedRequestDispatcher:
    """Calls protected resources on behalf of the signed-in account."""

    def __init__(
        self,
        *,
        session: AuthSessionController,
        engine: TokenAcquisitionEngine,
        limits: LimitsConfig,
        interaction_mode: InteractionMode | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a dispatcher.

        Args:
            session: Session controller gating every protected call.
            engine: Token source for bearer credentials.
            limits: Timeouts.
            interaction_mode: Mode used if a silent acquisition must escalate.
            transport: Optional httpx transport for tests.
        """
        self._session = session
        self._engine = engine
        self._limits = limits
        self._interaction_mode = interaction_mode
        self._transport = transport

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            timeout=self._limits.total_timeout_s,
            connect=self._limits.connect_timeout_s,
            read=self._limits.read_timeout_s,
        )

    async def call_protected_resource(self, endpoint: str, request: ScopeRequest) -> CallResult:
        """GET `endpoint` with a bearer token for `request`."""
        if self._session.session_state() is not SessionState.AUTHENTICATED:
            return CallResult.failure(unauthenticated_error(), source="session")

        outcome = await self._engine.acquire_token_within(
            request,
            timeout_s=self._limits.acquire_timeout_s,
            mode=self._interaction_mode,
        )
        if isinstance(outcome, Failed):
            return CallResult.failure(outcome.error, source="auth")
        if isinstance(outcome, RedirectStarted):
            err = SafeError(
                code=INTERACTION_PENDING,
                message="Sign-in redirect started; complete it and retry",
                hint=outcome.auth_uri,
            )
            return CallResult.failure(err, source="auth")
        if not isinstance(outcome, Success):
            # InteractionRequired never leaves the engine.
            raise AssertionError(f"unexpected acquisition outcome: {type(outcome).__name__}")

        result = await self._send(endpoint, outcome.token.access_token)
        if not result.ok and result.error is not None and result.error.status_code == 401:
            # No retry against a token the server refuses; only make the next call re-acquire.
            self._engine.invalidate(outcome.token)
        return result

    async def call_public_resource(self, endpoint: str) -> CallResult:
        """GET an endpoint that needs no credential (health checks)."""
        return await self._send(endpoint, None)

    async def _send(self, endpoint: str, token: str | None) -> CallResult:
        try:
            async with httpx.AsyncClient(
                follow_redirects=False,
                timeout=self._timeout(),
                transport=self._transport,
            ) as client:
                resp = await client.get(endpoint, headers=self._headers(token))
        except httpx.TimeoutException as exc:
            logger.warning("Request timed out: %s", type(exc).__name__)
            return CallResult.failure(SafeError(code=TIMEOUT, message="Request timed out"), source="api")
        except httpx.HTTPError as exc:
            logger.warning("Request transport failure: %s", type(exc).__name__)
            return CallResult.failure(SafeError(code=NETWORK, message="Network request failed"), source="api")

        if resp.status_code < 200 or resp.status_code >= 300:
            return CallResult.failure(self._http_error(resp), source="api")

        if not resp.content:
            return CallResult.success({})
        try:
            data: Any = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            if resp.headers.get("content-type", "").startswith("text/"):
                return CallResult.success(resp.text)
            return CallResult.failure(
                SafeError(code=API, message="Resource returned invalid JSON", status_code=resp.status_code),
                source="api",
            )
        return CallResult.success(data)

    @staticmethod
    def _http_error(resp: httpx.Response) -> SafeError:
        server_message: str | None = None
        try:
            payload = resp.json()
            if isinstance(payload, dict) and isinstance(payload.get("message"), str):
                server_message = payload["message"]
        except (json.JSONDecodeError, UnicodeDecodeError):
            server_message = None

        logger.info("Resource responded %s", resp.status_code)
        return SafeError(
            code=API,
            message=server_message or f"Request failed with status code {resp.status_code}",
            status_code=resp.status_code,
        )
