"""Smoke tests for the MCP server surface."""

from __future__ import annotations

import json

import pytest
from entra_client_mcp import server
from entra_client_mcp.server import list_resources, list_tools, read_resource


@pytest.mark.asyncio
async def test_server_lists_all_tools() -> None:
    tools = await list_tools()
    assert {t.name for t in tools} == {
        "session_status",
        "list_accounts",
        "login",
        "complete_login",
        "logout",
        "call_api",
        "get_profile",
        "api_health",
    }


@pytest.mark.asyncio
async def test_server_lists_resources_ok() -> None:
    resources = await list_resources()
    assert [str(r.uri) for r in resources] == [
        "entra-client-mcp://session-status",
        "entra-client-mcp://capabilities",
    ]


@pytest.mark.asyncio
async def test_tools_do_not_emit_secrets_in_metadata() -> None:
    tools = await list_tools()
    as_json = json.dumps([t.model_dump() for t in tools], sort_keys=True)

    assert "Bearer " not in as_json
    assert "eyJ" not in as_json


@pytest.mark.asyncio
async def test_capabilities_resource() -> None:
    caps = json.loads(await read_resource("entra-client-mcp://capabilities"))
    assert caps["safety"]["tokens_never_returned"] is True
    assert "call_api" in caps["allow_listed_operations"]


@pytest.mark.asyncio
async def test_session_status_resource_without_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(server, "ensure_runtime", _raise_config)

    status = json.loads(await read_resource("entra-client-mcp://session-status"))
    assert status["configured"] is False


@pytest.mark.asyncio
async def test_unknown_resource() -> None:
    out = json.loads(await read_resource("entra-client-mcp://nope"))
    assert out["code"] == "NotFound"


async def _raise_config():  # noqa: ANN202
    from entra_client_mcp.errors import CONFIG, SafeError

    raise SafeError(code=CONFIG, message="Missing required configuration")


def test_cli_accepts_redirect_response() -> None:
    from entra_client_mcp.__main__ import build_parser

    args = build_parser().parse_args(["--redirect-response", "http://localhost/?code=abc&state=s1"])
    assert args.redirect_response == "http://localhost/?code=abc&state=s1"
    assert args.test is False


@pytest.mark.asyncio
async def test_self_check_builds_listings(capsys: pytest.CaptureFixture[str]) -> None:
    await server.test_server()
    assert "8 tools, 2 resources" in capsys.readouterr().err
