"""Audit logger events and rotation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from entra_client_mcp.audit import AuditLogger, build_event


def test_audit_event_is_single_sorted_json_line(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sink = tmp_path / "audit.jsonl"
    logger = AuditLogger(sink_path=sink)

    logger.write_event(
        build_event(
            correlation_id="c1",
            operation="call_api",
            target="api",
            outcome="failed",
            session_state="unauthenticated",
            reason="Not signed in",
            duration_ms=3,
        )
    )

    err = capsys.readouterr().err.strip()
    payload = json.loads(err)
    assert payload["operation"] == "call_api"
    assert payload["session_state"] == "unauthenticated"
    assert payload["timestamp"].endswith("Z")
    assert sink.read_text(encoding="utf-8").strip() == err


def test_audit_event_omits_empty_fields(capsys: pytest.CaptureFixture[str]) -> None:
    AuditLogger(sink_path=None).write_event(
        build_event(correlation_id="c1", operation="login", target="session", outcome="denied")
    )

    payload = json.loads(capsys.readouterr().err)
    assert "reason" not in payload
    assert "duration_ms" not in payload
    assert "session_state" not in payload


def test_audit_logger_rotates_when_exceeding_max_bytes(tmp_path: Path) -> None:
    sink = tmp_path / "audit.jsonl"
    logger = AuditLogger(sink_path=sink, max_bytes=1, max_backups=2)

    for cid in ("c1", "c2", "c3"):
        logger.write_event(build_event(correlation_id=cid, operation="op", target="session", outcome="succeeded"))

    assert sink.exists()
    assert (tmp_path / "audit.jsonl.1").exists()
    assert (tmp_path / "audit.jsonl.2").exists()
    assert json.loads(sink.read_text(encoding="utf-8"))["correlation_id"] == "c3"


def test_audit_logger_truncates_when_backups_disabled(tmp_path: Path) -> None:
    sink = tmp_path / "audit.jsonl"
    logger = AuditLogger(sink_path=sink, max_bytes=1, max_backups=0)

    logger.write_event(build_event(correlation_id="c1", operation="op", target="session", outcome="succeeded"))
    logger.write_event(build_event(correlation_id="c2", operation="op", target="session", outcome="succeeded"))

    lines = sink.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert not (tmp_path / "audit.jsonl.1").exists()
