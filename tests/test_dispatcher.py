"""Authorized request dispatch against httpx.MockTransport."""

from __future__ import annotations

import httpx
import pytest

from entra_client_mcp.account_store import AccountStore
from entra_client_mcp.config import LimitsConfig
from entra_client_mcp.dispatcher import AuthorizedRequestDispatcher
from entra_client_mcp.engine import TokenAcquisitionEngine
from entra_client_mcp.errors import API, INTERACTION_PENDING, NETWORK, TIMEOUT, TRANSIENT_AUTH_FAILURE, UNAUTHENTICATED
from entra_client_mcp.models import InteractionMode, InteractionRequired, ScopeRequest
from entra_client_mcp.session import AuthSessionController
from fakes import API_SCOPE, FakeProvider, live_token, make_account, transient

HELLO = "http://api.test/api/hello"


class Recorder:
    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


async def _dispatcher(
    handler: Recorder,
    *,
    provider: FakeProvider | None = None,
    signed_in: bool = True,
    cached: bool = True,
    mode: InteractionMode | None = None,
) -> tuple[AuthorizedRequestDispatcher, AccountStore]:
    provider = provider or FakeProvider()
    store = AccountStore()
    account = make_account()
    if signed_in:
        store.add_or_replace(account)
        if cached:
            store.put_token(live_token(account, value="api-token"))
    engine = TokenAcquisitionEngine(store=store, provider=provider)
    session = AuthSessionController(store=store, engine=engine, provider=provider, login_scopes=("User.Read",))
    await session.bootstrap()
    dispatcher = AuthorizedRequestDispatcher(
        session=session,
        engine=engine,
        limits=LimitsConfig(),
        interaction_mode=mode,
        transport=httpx.MockTransport(handler),
    )
    return dispatcher, store


@pytest.mark.asyncio
async def test_protected_call_sends_bearer_and_returns_body_unchanged() -> None:
    handler = Recorder(httpx.Response(200, json={"message": "Hello, Test User"}))
    dispatcher, _ = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.ok is True
    assert result.body == {"message": "Hello, Test User"}
    assert len(handler.requests) == 1
    request = handler.requests[0]
    assert request.method == "GET"
    assert request.headers["Authorization"] == "Bearer api-token"
    assert request.headers["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_unauthenticated_session_makes_no_request() -> None:
    handler = Recorder(httpx.Response(200, json={}))
    dispatcher, _ = await _dispatcher(handler, signed_in=False)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.ok is False
    assert result.source == "session"
    assert result.error is not None and result.error.code == UNAUTHENTICATED
    assert handler.requests == []


@pytest.mark.asyncio
async def test_acquisition_failure_is_reported_without_request() -> None:
    handler = Recorder(httpx.Response(200, json={}))
    dispatcher, _ = await _dispatcher(handler, provider=FakeProvider(silent=transient()), cached=False)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.ok is False
    assert result.source == "auth"
    assert result.error is not None and result.error.code == TRANSIENT_AUTH_FAILURE
    assert handler.requests == []


@pytest.mark.asyncio
async def test_redirect_escalation_reports_pending_interaction() -> None:
    handler = Recorder(httpx.Response(200, json={}))
    provider = FakeProvider(silent=InteractionRequired("expired"))
    dispatcher, _ = await _dispatcher(handler, provider=provider, cached=False, mode=InteractionMode.REDIRECT)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.ok is False
    assert result.error is not None
    assert result.error.code == INTERACTION_PENDING
    assert result.error.hint == "https://login.example/authorize?state=s1"
    assert handler.requests == []


@pytest.mark.asyncio
async def test_server_error_message_is_surfaced() -> None:
    handler = Recorder(httpx.Response(500, json={"message": "Database unavailable"}))
    dispatcher, _ = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.ok is False
    assert result.source == "api"
    assert result.error is not None
    assert result.error.code == API
    assert result.error.message == "Database unavailable"
    assert result.error.status_code == 500


@pytest.mark.asyncio
async def test_error_without_message_uses_status_code() -> None:
    handler = Recorder(httpx.Response(404, text="Not Found"))
    dispatcher, _ = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.error is not None
    assert result.error.message == "Request failed with status code 404"


@pytest.mark.asyncio
async def test_unauthorized_evicts_token_without_retry() -> None:
    handler = Recorder(httpx.Response(401, json={"message": "Unauthorized"}))
    dispatcher, store = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.ok is False
    assert result.error is not None and result.error.status_code == 401
    assert len(handler.requests) == 1
    assert store.find_cached_token(make_account(), [API_SCOPE]) is None


@pytest.mark.asyncio
async def test_forbidden_keeps_token() -> None:
    handler = Recorder(httpx.Response(403, json={"message": "Forbidden"}))
    dispatcher, store = await _dispatcher(handler)

    await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert store.find_cached_token(make_account(), [API_SCOPE]) is not None


@pytest.mark.asyncio
async def test_transport_error_maps_to_network() -> None:
    handler = Recorder(httpx.ConnectError("connection refused"))
    dispatcher, _ = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.error is not None and result.error.code == NETWORK
    assert result.source == "api"


@pytest.mark.asyncio
async def test_timeout_maps_to_timeout() -> None:
    handler = Recorder(httpx.ReadTimeout("slow"))
    dispatcher, _ = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.error is not None and result.error.code == TIMEOUT


@pytest.mark.asyncio
async def test_invalid_json_is_an_api_error() -> None:
    handler = Recorder(httpx.Response(200, content=b"{broken", headers={"content-type": "application/json"}))
    dispatcher, _ = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.error is not None
    assert result.error.message == "Resource returned invalid JSON"


@pytest.mark.asyncio
async def test_empty_body_is_empty_object() -> None:
    handler = Recorder(httpx.Response(204))
    dispatcher, _ = await _dispatcher(handler)

    result = await dispatcher.call_protected_resource(HELLO, ScopeRequest.of([API_SCOPE]))

    assert result.ok is True
    assert result.body == {}


@pytest.mark.asyncio
async def test_public_health_needs_no_session() -> None:
    handler = Recorder(httpx.Response(200, text="OK"))
    dispatcher, _ = await _dispatcher(handler, signed_in=False)

    result = await dispatcher.call_public_resource("http://api.test/api/public/health")

    assert result.ok is True
    assert result.body == "OK"
    assert "Authorization" not in handler.requests[0].headers
