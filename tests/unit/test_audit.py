"""Unit tests for the security audit log."""

from __future__ import annotations

import json
from pathlib import Path

from agentos.pipeline.audit import SecurityAuditLog, SecurityEventType


def test_events_are_kept_in_memory() -> None:
    audit = SecurityAuditLog()

    audit.record(
        SecurityEventType.CONTAINER_CREATED, session_id="s1", success=True, container_id="c1"
    )
    audit.record(SecurityEventType.FIREWALL_INIT, session_id="s1", success=False, error="denied")

    assert [e.type for e in audit.events] == [
        SecurityEventType.CONTAINER_CREATED,
        SecurityEventType.FIREWALL_INIT,
    ]
    assert audit.events[1].error == "denied"


def test_in_memory_history_is_bounded() -> None:
    audit = SecurityAuditLog(keep=3)

    for i in range(5):
        audit.record(SecurityEventType.CONTAINER_DESTROYED, session_id=f"s{i}", success=True)

    assert [e.session_id for e in audit.events] == ["s2", "s3", "s4"]


def test_events_appended_as_json_lines(tmp_path: Path) -> None:
    path = tmp_path / "audit" / "security.jsonl"
    audit = SecurityAuditLog(path)

    audit.record(
        SecurityEventType.CONTAINER_HEALTH_CHECK,
        session_id="s1",
        success=True,
        container_id="c1",
        step="mount",
    )

    lines = path.read_text().splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["type"] == "container_health_check"
    assert record["details"] == {"step": "mount"}
