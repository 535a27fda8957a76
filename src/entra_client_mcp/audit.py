"""Audit trail for tool calls.

One JSON line per tool call on stderr, mirrored to an optional size-capped file.
Events name the operation and its outcome only; tokens, authorization codes,
usernames and ID-token claims never appear.
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """A single audit event; `None` fields are left out of the JSON line."""

    timestamp: str
    correlation_id: str
    operation: str
    target: str
    outcome: str
    session_state: str | None = None
    reason: str | None = None
    duration_ms: int | None = None

    def to_json(self) -> str:
        payload = {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class AuditLogger:
    """Emits audit events to stderr and, when configured, to a rotating JSONL file."""

    def __init__(
        self,
        *,
        sink_path: Path | None,
        max_bytes: int = 5 * 1024 * 1024,
        max_backups: int = 2,
    ) -> None:
        self._sink_path = sink_path
        self._max_bytes = max_bytes
        self._max_backups = max_backups

    def write_event(self, event: AuditEvent) -> None:
        line = event.to_json()
        print(line, file=sys.stderr)
        if self._sink_path is None:
            return
        try:
            self._append(self._sink_path, line)
        except OSError as exc:
            # Best-effort sink; tool calls never fail on it.
            logger.warning("Audit file sink unavailable: %s", type(exc).__name__)

    def _append(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() and path.stat().st_size >= self._max_bytes:
            self._rotate(path)
        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _rotate(self, path: Path) -> None:
        if self._max_backups <= 0:
            path.write_text("", encoding="utf-8")
            return
        # audit.jsonl -> .1 -> .2 ... ; the oldest backup falls off the end.
        backups = [path.with_name(f"{path.name}.{i}") for i in range(1, self._max_backups + 1)]
        backups[-1].unlink(missing_ok=True)
        for newer, older in zip(reversed(backups[:-1]), reversed(backups[1:])):
            if newer.exists():
                newer.replace(older)
        path.replace(backups[0])

    @staticmethod
    def start_timer() -> float:
        return time.monotonic()

    @staticmethod
    def elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def build_event(
    *,
    correlation_id: str,
    operation: str,
    target: str,
    outcome: str,
    session_state: str | None = None,
    reason: str | None = None,
    duration_ms: int | None = None,
) -> AuditEvent:
    """Stamp an event with the current UTC time (RFC 3339, `Z` suffix)."""
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return AuditEvent(
        timestamp=stamp,
        correlation_id=correlation_id,
        operation=operation,
        target=target,
        outcome=outcome,
        session_state=session_state,
        reason=reason,
        duration_ms=duration_ms,
    )
