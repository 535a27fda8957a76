"""Configuration loading for entra-client-mcp.

Configuration is supplied by the host environment (e.g., MCP client config), read once
at startup, and immutable for the process lifetime. The client id and tenant are not
secrets, but nothing here is ever echoed back in tool errors beyond variable names.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from .errors import CONFIG, SafeError
from .models import InteractionMode

DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"
DEFAULT_REDIRECT_URI = "http://localhost"
DEFAULT_API_URL = "http://localhost:8080/api"
DEFAULT_GRAPH_ME_ENDPOINT = "https://graph.microsoft.com/v1.0/me"
DEFAULT_LOGIN_SCOPES = ("User.Read", "openid", "profile", "email")


@dataclass(frozen=True, slots=True)
class LimitsConfig:
    """Non-functional limits."""

    # Network
    total_timeout_s: float = 30.0
    connect_timeout_s: float = 5.0
    read_timeout_s: float = 20.0

    # Acquisition
    acquire_timeout_s: float = 300.0
    redirect_timeout_s: float = 600.0


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Identity-provider registration and resource endpoints."""

    client_id: str
    tenant_id: str
    authority: str
    redirect_uri: str
    post_logout_redirect_uri: str
    api_scope: str
    api_base_url: str
    graph_me_endpoint: str
    login_scopes: tuple[str, ...]
    interaction_mode: InteractionMode

    state_dir: Path | None
    audit_log_path: Path | None
    audit_max_bytes: int
    audit_max_backups: int
    limits: LimitsConfig

    @property
    def api_scopes(self) -> tuple[str, ...]:
        return (self.api_scope,)

    @property
    def token_cache_path(self) -> Path | None:
        return self.state_dir / "msal_cache.json" if self.state_dir else None

    @property
    def session_snapshot_path(self) -> Path | None:
        return self.state_dir / "session.json" if self.state_dir else None

    @property
    def pending_flow_path(self) -> Path | None:
        return self.state_dir / "pending_flow.json" if self.state_dir else None


def _parse_scopes(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if not value:
        return default
    parts = [p.strip() for p in value.replace(",", " ").split()]
    scopes = tuple(dict.fromkeys(p for p in parts if p))
    return scopes or default


def _require_http_url(name: str, value: str) -> str:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise SafeError(code=CONFIG, message=f"{name} must be an absolute http(s) URL")
    return value.rstrip("/")


def _optional_abs_path(name: str, value: str | None) -> Path | None:
    if not value:
        return None
    p = Path(value)
    if not p.is_absolute():
        raise SafeError(code=CONFIG, message=f"{name} must be an absolute path when set")
    return p


def load_config_from_env() -> AppConfig:
    """Load and validate configuration from environment variables.

    Raises:
        SafeError: If configuration is missing/invalid.
    """
    client_id = (os.getenv("ENTRA_CLIENT_ID") or "").strip()
    tenant_id = (os.getenv("ENTRA_TENANT_ID") or "").strip()
    api_scope = (os.getenv("ENTRA_API_SCOPE") or "").strip()

    if not client_id or not tenant_id or not api_scope:
        raise SafeError(
            code=CONFIG,
            message="Missing required configuration (ENTRA_CLIENT_ID, ENTRA_TENANT_ID, ENTRA_API_SCOPE)",
        )

    authority = _require_http_url(
        "ENTRA_AUTHORITY",
        os.getenv("ENTRA_AUTHORITY") or f"{DEFAULT_AUTHORITY_HOST}/{tenant_id}",
    )
    if not authority.startswith("https://"):
        raise SafeError(code=CONFIG, message="ENTRA_AUTHORITY must use https")

    redirect_uri = _require_http_url("ENTRA_REDIRECT_URI", os.getenv("ENTRA_REDIRECT_URI") or DEFAULT_REDIRECT_URI)
    post_logout = _require_http_url(
        "ENTRA_POST_LOGOUT_REDIRECT_URI",
        os.getenv("ENTRA_POST_LOGOUT_REDIRECT_URI") or redirect_uri,
    )
    api_base_url = _require_http_url("ENTRA_API_URL", os.getenv("ENTRA_API_URL") or DEFAULT_API_URL)
    graph_me = _require_http_url(
        "ENTRA_GRAPH_ME_ENDPOINT",
        os.getenv("ENTRA_GRAPH_ME_ENDPOINT") or DEFAULT_GRAPH_ME_ENDPOINT,
    )

    mode_raw = (os.getenv("ENTRA_INTERACTION_MODE") or InteractionMode.POPUP.value).strip().lower()
    try:
        mode = InteractionMode(mode_raw)
    except ValueError as exc:
        raise SafeError(code=CONFIG, message="ENTRA_INTERACTION_MODE must be popup or redirect") from exc

    return AppConfig(
        client_id=client_id,
        tenant_id=tenant_id,
        authority=authority,
        redirect_uri=redirect_uri,
        post_logout_redirect_uri=post_logout,
        api_scope=api_scope,
        api_base_url=api_base_url,
        graph_me_endpoint=graph_me,
        login_scopes=_parse_scopes(os.getenv("ENTRA_LOGIN_SCOPES"), DEFAULT_LOGIN_SCOPES),
        interaction_mode=mode,
        state_dir=_optional_abs_path("ENTRA_CLIENT_MCP_STATE_DIR", os.getenv("ENTRA_CLIENT_MCP_STATE_DIR")),
        audit_log_path=_optional_abs_path(
            "ENTRA_CLIENT_MCP_AUDIT_LOG_PATH", os.getenv("ENTRA_CLIENT_MCP_AUDIT_LOG_PATH")
        ),
        audit_max_bytes=5 * 1024 * 1024,
        audit_max_backups=2,
        limits=LimitsConfig(),
    )
