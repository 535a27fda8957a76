"""Tool registry and dispatch layer.

This module:
- defines the allow-listed tools (public contract surface)
- builds the process-wide runtime from host-provided config and bootstraps the session once
- creates a correlation_id per operation attempt
- rejects credential-like input before executing any tool implementation
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .account_store import AccountStore
from .audit import AuditLogger, build_event, new_correlation_id
from .config import AppConfig, load_config_from_env
from .dispatcher import AuthorizedRequestDispatcher
from .engine import TokenAcquisitionEngine
from .errors import (
    API,
    CONFIG,
    USER_INPUT,
    SafeError,
    internal_error,
    safe_error_to_result,
    unauthenticated_error,
)
from .identity import MsalIdentityProvider, parse_auth_response
from .models import (
    Account,
    AuthOutcome,
    CallResult,
    Failed,
    InteractionMode,
    RedirectStarted,
    ScopeRequest,
    SessionState,
    Success,
)
from .safety import validate_no_secrets
from .session import AuthSessionController

logger = logging.getLogger(__name__)

TOOL_METADATA: dict[str, dict[str, Any]] = {
    "session_status": {
        "description": "Report the sign-in state and the active account (no secrets).",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
    "list_accounts": {
        "description": "List signed-in accounts in sign-in order; the first one is active.",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
    "login": {
        "description": "Sign in interactively (popup opens the system browser; redirect returns a sign-in URL).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "mode": {"type": "string", "enum": ["popup", "redirect"]},
            },
            "additionalProperties": False,
        },
    },
    "complete_login": {
        "description": "Finish a redirect sign-in with the full URL the browser was redirected to.",
        "inputSchema": {
            "type": "object",
            "required": ["redirect_response"],
            "properties": {
                "redirect_response": {"type": "string", "minLength": 1},
            },
            "additionalProperties": False,
        },
    },
    "logout": {
        "description": "Sign out every account, clear cached tokens, and return the provider sign-out URL.",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
    "call_api": {
        "description": "Call the protected backend GET /hello with a bearer token for the API scope.",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
    "get_profile": {
        "description": "Show account information, the Graph /me profile, and ID-token claims.",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
    "api_health": {
        "description": "Call the backend public health endpoint (no credential).",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
}


@dataclass(frozen=True, slots=True)
class Runtime:
    """Process-wide dependencies shared across tool calls."""

    config: AppConfig
    audit: AuditLogger
    store: AccountStore
    provider: MsalIdentityProvider
    engine: TokenAcquisitionEngine
    session: AuthSessionController
    dispatcher: AuthorizedRequestDispatcher


_RUNTIME: Runtime | None = None
_BOOTSTRAPPED = False
_BOOT_LOCK = asyncio.Lock()


def _check_property(name: str, spec: Mapping[str, Any], value: Any) -> None:
    if spec.get("type") == "string":
        if not isinstance(value, str):
            raise SafeError(code=USER_INPUT, message=f"Field '{name}' must be a string")
        min_len = spec.get("minLength")
        if isinstance(min_len, int) and len(value) < min_len:
            raise SafeError(code=USER_INPUT, message=f"Field '{name}' must be at least {min_len} characters")
    allowed = spec.get("enum")
    if allowed is not None and value not in allowed:
        raise SafeError(code=USER_INPUT, message=f"Field '{name}' must be one of: {', '.join(allowed)}")


def validate_tool_arguments(tool_name: str, arguments: dict[str, Any]) -> None:
    """Check arguments against the tool's declared input schema.

    Covers only what the schemas above use: required fields, closed objects,
    and string/minLength/enum properties.
    """
    metadata = TOOL_METADATA.get(tool_name)
    if metadata is None:
        raise SafeError(code=USER_INPUT, message="Unknown tool")

    schema = metadata["inputSchema"]
    props: dict[str, Any] = schema.get("properties", {})

    missing = [k for k in schema.get("required", []) if k not in arguments]
    if missing:
        raise SafeError(code=USER_INPUT, message=f"Missing required field: {missing[0]}")
    if schema.get("additionalProperties", True) is False and any(k not in props for k in arguments):
        raise SafeError(code=USER_INPUT, message="Unexpected fields are not allowed")

    for name, value in arguments.items():
        if name in props:
            _check_property(name, props[name], value)


def build_runtime(config: AppConfig) -> Runtime:
    """Wire the core components for one process."""
    audit = AuditLogger(
        sink_path=config.audit_log_path,
        max_bytes=config.audit_max_bytes,
        max_backups=config.audit_max_backups,
    )
    store = AccountStore(snapshot_path=config.session_snapshot_path)
    provider = MsalIdentityProvider(config=config)
    engine = TokenAcquisitionEngine(store=store, provider=provider, default_mode=config.interaction_mode)
    session = AuthSessionController(
        store=store,
        engine=engine,
        provider=provider,
        login_scopes=config.login_scopes,
        redirect_timeout_s=config.limits.redirect_timeout_s,
    )
    dispatcher = AuthorizedRequestDispatcher(
        session=session,
        engine=engine,
        limits=config.limits,
        interaction_mode=config.interaction_mode,
    )
    return Runtime(
        config=config,
        audit=audit,
        store=store,
        provider=provider,
        engine=engine,
        session=session,
        dispatcher=dispatcher,
    )


def initialize_runtime_from_env() -> Runtime:
    """Initialize and cache runtime from environment.

    Called at server startup (fail-fast), and can also be used lazily.
    """
    global _RUNTIME  # pylint: disable=global-statement
    if _RUNTIME is not None:
        return _RUNTIME

    _RUNTIME = build_runtime(load_config_from_env())
    return _RUNTIME


async def ensure_runtime(redirect_response: Mapping[str, str] | None = None) -> Runtime:
    """Return the runtime, bootstrapping the session exactly once."""
    global _BOOTSTRAPPED  # pylint: disable=global-statement
    runtime = initialize_runtime_from_env()
    async with _BOOT_LOCK:
        if not _BOOTSTRAPPED:
            await runtime.session.bootstrap(redirect_response)
            _BOOTSTRAPPED = True
    return runtime


def _account_summary(account: Account) -> dict[str, Any]:
    return {
        "name": account.name,
        "username": account.username,
        "environment": account.environment,
        "tenant_id": account.tenant_id,
    }


def _outcome_to_result(runtime: Runtime, outcome: AuthOutcome) -> dict[str, Any]:
    if isinstance(outcome, Failed):
        raise outcome.error
    out: dict[str, Any] = {"state": runtime.session.session_state().value}
    if isinstance(outcome, RedirectStarted):
        out["auth_uri"] = outcome.auth_uri
        out["next_step"] = "Open auth_uri, sign in, then pass the final redirected URL to complete_login"
    elif isinstance(outcome, Success):
        out["account"] = _account_summary(outcome.token.account)
    return out


async def _tool_session_status(runtime: Runtime, _arguments: dict[str, Any]) -> dict[str, Any]:
    session = runtime.session
    active = session.active_account()
    status: dict[str, Any] = {
        "state": session.session_state().value,
        "accounts": len(session.current_accounts()),
        "active_account": _account_summary(active) if active else None,
        "pending_redirect": session.pending_auth_uri is not None,
    }
    if session.last_error is not None:
        status["last_error"] = safe_error_to_result(session.last_error)
    return status


async def _tool_list_accounts(runtime: Runtime, _arguments: dict[str, Any]) -> dict[str, Any]:
    return {"accounts": [_account_summary(a) for a in runtime.session.current_accounts()]}


async def _tool_login(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    mode = InteractionMode(arguments.get("mode") or runtime.config.interaction_mode.value)
    outcome = await runtime.session.login(mode)
    return _outcome_to_result(runtime, outcome)


async def _tool_complete_login(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    auth_response = parse_auth_response(arguments["redirect_response"])
    if not auth_response:
        raise SafeError(code=USER_INPUT, message="redirect_response must be the redirected URL or its query string")
    outcome = await runtime.session.complete_login(auth_response)
    return _outcome_to_result(runtime, outcome)


async def _tool_logout(runtime: Runtime, _arguments: dict[str, Any]) -> dict[str, Any]:
    logout_url = await runtime.session.logout()
    return {"state": runtime.session.session_state().value, "logout_url": logout_url}


async def _tool_call_api(runtime: Runtime, _arguments: dict[str, Any]) -> CallResult:
    request = ScopeRequest.of(runtime.config.api_scopes, account=runtime.session.active_account())
    return await runtime.dispatcher.call_protected_resource(f"{runtime.config.api_base_url}/hello", request)


async def _tool_get_profile(runtime: Runtime, _arguments: dict[str, Any]) -> dict[str, Any]:
    session = runtime.session
    account = session.active_account()
    if session.session_state() is not SessionState.AUTHENTICATED or account is None:
        raise unauthenticated_error()

    request = ScopeRequest.of(runtime.config.login_scopes, account=account)
    graph = await runtime.dispatcher.call_protected_resource(runtime.config.graph_me_endpoint, request)

    # Refresh claims may have arrived with the Graph token.
    account = session.active_account() or account
    profile: dict[str, Any] = {
        "account": _account_summary(account),
        "id_token_claims": dict(account.id_token_claims),
        "graph": None,
    }
    if graph.ok and isinstance(graph.body, dict):
        body = graph.body
        profile["graph"] = {
            "display_name": body.get("displayName"),
            "email": body.get("mail") or body.get("userPrincipalName"),
            "job_title": body.get("jobTitle") or "N/A",
            "office_location": body.get("officeLocation") or "N/A",
        }
    elif graph.ok:
        profile["graph_error"] = safe_error_to_result(SafeError(code=API, message="Unexpected profile response"))
    else:
        profile["graph_error"] = graph.to_result()
    return profile


async def _tool_api_health(runtime: Runtime, _arguments: dict[str, Any]) -> CallResult:
    return await runtime.dispatcher.call_public_resource(f"{runtime.config.api_base_url}/public/health")


_TOOL_FUNCS: dict[str, Any] = {
    "session_status": _tool_session_status,
    "list_accounts": _tool_list_accounts,
    "login": _tool_login,
    "complete_login": _tool_complete_login,
    "logout": _tool_logout,
    "call_api": _tool_call_api,
    "get_profile": _tool_get_profile,
    "api_health": _tool_api_health,
}

_TOOL_TARGETS: dict[str, str] = {
    "call_api": "api",
    "api_health": "api",
    "get_profile": "graph",
}


def _emit_audit(
    runtime: Runtime | None,
    started: float | None,
    *,
    correlation_id: str,
    operation: str,
    outcome: str,
    reason: str | None = None,
) -> None:
    # Without a runtime (configuration failed) the event still reaches stderr.
    sink = runtime.audit if runtime is not None else AuditLogger(sink_path=None)
    sink.write_event(
        build_event(
            correlation_id=correlation_id,
            operation=operation,
            target=_TOOL_TARGETS.get(operation, "session"),
            outcome=outcome,
            session_state=runtime.session.session_state().value if runtime is not None else None,
            reason=reason,
            duration_ms=sink.elapsed_ms(started) if started is not None else None,
        )
    )


async def _run_tool(runtime: Runtime, name: str, arguments: dict[str, Any]) -> dict[str, Any] | CallResult:
    validate_no_secrets(arguments)
    if name not in TOOL_METADATA:
        raise SafeError(
            code=USER_INPUT,
            message=f"Unknown tool: {name}",
            hint=f"Available tools: {', '.join(sorted(TOOL_METADATA))}",
        )
    validate_tool_arguments(name, arguments)
    return await _TOOL_FUNCS[name](runtime, arguments)


async def dispatch_tool(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Run one tool call and return its JSON envelope.

    Every envelope carries a fresh correlation_id, and every call produces exactly
    one audit event: `succeeded`, `failed`, or `denied` for rejected input and
    configuration problems.
    """
    correlation_id = new_correlation_id()
    runtime: Runtime | None = None
    started: float | None = None

    try:
        runtime = await ensure_runtime()
        started = runtime.audit.start_timer()
        result = await _run_tool(runtime, name, arguments)
    except SafeError as err:
        outcome = "denied" if err.code in {USER_INPUT, CONFIG} else "failed"
        _emit_audit(runtime, started, correlation_id=correlation_id, operation=name, outcome=outcome, reason=err.message)
        return {**safe_error_to_result(err), "correlation_id": correlation_id}
    except Exception:  # pylint: disable=broad-exception-caught
        logger.exception("Tool %s failed", name)
        _emit_audit(
            runtime, started, correlation_id=correlation_id, operation=name, outcome="failed", reason="Internal error"
        )
        return {**internal_error("Internal error"), "correlation_id": correlation_id}

    if isinstance(result, CallResult):
        if not result.ok:
            _emit_audit(
                runtime,
                started,
                correlation_id=correlation_id,
                operation=name,
                outcome="failed",
                reason=result.error.message if result.error is not None else None,
            )
            return {**result.to_result(), "correlation_id": correlation_id}
        result = {"data": result.body}

    _emit_audit(runtime, started, correlation_id=correlation_id, operation=name, outcome="succeeded")
    return {"ok": True, "correlation_id": correlation_id, **result}
