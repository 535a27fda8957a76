"""MCP stdio server for entra-client-mcp.

Tool calls go through `tools.dispatch_tool`; results are returned as JSON text.
All log output goes to stderr (stdout carries the MCP protocol) with bearer
tokens and JWT-looking values redacted.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

try:
    from mcp.server import Server
    from mcp.types import Resource, TextContent, Tool
except ImportError as exc:  # pragma: no cover
    raise ImportError("MCP library not installed. Install with: pip install mcp") from exc

from . import __version__
from .errors import SafeError, internal_error
from .identity import parse_auth_response
from .safety import RedactingFilter
from .tools import TOOL_METADATA, dispatch_tool, ensure_runtime, initialize_runtime_from_env


def _configure_logging() -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RedactingFilter())
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[handler],
    )
    # msal logs request details at INFO.
    logging.getLogger("msal").setLevel(logging.WARNING)


_configure_logging()
logger = logging.getLogger(__name__)

server = Server("entra-client-mcp")

SESSION_STATUS_URI = "entra-client-mcp://session-status"
CAPABILITIES_URI = "entra-client-mcp://capabilities"

_RESOURCES = (
    (SESSION_STATUS_URI, "Session Status", "Sign-in state and non-secret configuration"),
    (CAPABILITIES_URI, "Capabilities", "Allow-listed operations and safety constraints"),
)


def _tool_list() -> list[Tool]:
    return [
        Tool(name=name, description=meta["description"], inputSchema=meta["inputSchema"])
        for name, meta in TOOL_METADATA.items()
    ]


def _resource_list() -> list[Resource]:
    return [Resource(uri=uri, name=name, description=description) for uri, name, description in _RESOURCES]


@server.list_tools()
async def list_tools() -> list[Tool]:
    tools = _tool_list()
    logger.info("Listed %s tools", len(tools))
    return tools


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    logger.info("Tool called: %s", name)
    try:
        payload = await dispatch_tool(name, arguments if isinstance(arguments, dict) else {})
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.error("Tool %s failed: %s", name, type(exc).__name__)
        payload = internal_error("Tool execution failed")
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


@server.list_resources()
async def list_resources() -> list[Resource]:
    return _resource_list()


def _capabilities() -> dict[str, Any]:
    return {
        "server": "entra-client-mcp",
        "version": __version__,
        "allow_listed_operations": sorted(TOOL_METADATA),
        "interaction_modes": ["popup", "redirect"],
        "safety": {
            "tokens_never_returned": True,
            "single_interactive_escalation": True,
            "no_retry_on_401": True,
        },
    }


async def _session_status() -> dict[str, Any]:
    status: dict[str, Any] = {
        "server": "entra-client-mcp",
        "version": __version__,
        "tools_available": len(TOOL_METADATA),
        "configured": False,
    }
    try:
        runtime = await ensure_runtime()
    except SafeError:
        return status

    config = runtime.config
    status.update(
        configured=True,
        session_state=runtime.session.session_state().value,
        accounts=len(runtime.session.current_accounts()),
        interaction_mode=config.interaction_mode.value,
        api_base_url=config.api_base_url,
        persistent_state=config.state_dir is not None,
        audit={"file_sink_enabled": config.audit_log_path is not None},
    )
    return status


@server.read_resource()
async def read_resource(uri: Any) -> str:
    uri_s = str(uri)
    if uri_s == CAPABILITIES_URI:
        return json.dumps(_capabilities(), indent=2)
    if uri_s == SESSION_STATUS_URI:
        return json.dumps(await _session_status(), indent=2)
    return json.dumps({"ok": False, "code": "NotFound", "message": "Unknown resource"}, indent=2)


async def run_server(redirect_response: str | None = None) -> None:
    """Serve over stdio.

    `redirect_response` is the URL the browser landed on after a redirect sign-in
    started by an earlier process; the session bootstrap redeems it.
    """
    try:
        initialize_runtime_from_env()
    except SafeError as exc:
        logger.error("Startup configuration error: %s", exc.message)
        raise

    runtime = await ensure_runtime(parse_auth_response(redirect_response) if redirect_response else None)
    logger.info("Session state at startup: %s", runtime.session.session_state().value)

    from mcp.server.stdio import stdio_server

    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


async def test_server() -> None:
    """Self-check that the tool and resource listings build."""
    tools = _tool_list()
    resources = _resource_list()
    print(f"entra-client-mcp {__version__}: {len(tools)} tools, {len(resources)} resources", file=sys.stderr)
