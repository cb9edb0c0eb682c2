# Egress Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the egress audit emitter."""

import json
import time

from egress_waypoint.audit import AuditEmitter, AuditEntry
from egress_waypoint.models import ConnectionMetadata, Decision, ReasonCode


def _meta(host="203.0.113.10", port=5432):
    return ConnectionMetadata(
        requested_host=host,
        requested_port=port,
        peer_identity="ns-a",
        identity_verified=True,
        client_address="10.0.0.5",
        connection_id="conn-1",
    )


ALLOW = Decision.allow("pg1", "p1", "ns-a", "203.0.113.10")
DENY = Decision.deny(ReasonCode.NO_MATCHING_POLICY, "pg1", "ns-b")


class TestAuditEntry:
    """Tests for AuditEntry construction."""

    def test_allowed_entry_names_upstream(self):
        entry = AuditEntry.from_decision(ALLOW, _meta())
        assert entry.event_type == "allowed"
        assert entry.verdict == "ALLOW"
        assert entry.upstream == "203.0.113.10:5432"
        assert entry.destination_id == "pg1"
        assert entry.matched_policy_id == "p1"

    def test_denied_entry_has_reason_and_no_upstream(self):
        entry = AuditEntry.from_decision(DENY, _meta())
        assert entry.event_type == "denied"
        assert entry.reason_code == "no_matching_policy"
        assert entry.upstream == ""

    def test_abandoned_entry(self):
        entry = AuditEntry.abandoned(_meta())
        assert entry.event_type == "abandoned"
        assert entry.reason_code == "abandoned"
        assert entry.detail

    def test_to_json(self):
        data = json.loads(AuditEntry.from_decision(DENY, _meta()).to_json())
        assert data["reason_code"] == "no_matching_policy"
        assert data["connection_id"] == "conn-1"

    def test_timestamp_is_recent(self):
        before = time.time()
        entry = AuditEntry.from_decision(ALLOW, _meta())
        after = time.time()
        assert before <= entry.timestamp <= after


class TestAuditEmitter:
    """Tests for AuditEmitter sinks."""

    def test_writes_json_lines(self, tmp_path):
        log_path = tmp_path / "audit.log"
        with AuditEmitter(log_path) as audit:
            audit.record(ALLOW, _meta())
            audit.record(DENY, _meta())
            audit.record_abandoned(_meta())

        lines = log_path.read_text().strip().splitlines()
        assert len(lines) == 3
        assert [json.loads(line)["event_type"] for line in lines] == [
            "allowed",
            "denied",
            "abandoned",
        ]

    def test_entry_count(self, tmp_path):
        with AuditEmitter(tmp_path / "audit.log") as audit:
            assert audit.entry_count == 0
            audit.record(ALLOW, _meta())
            audit.record(DENY, _meta())
            assert audit.entry_count == 2

    def test_read_recent_from_file(self, tmp_path):
        log_path = tmp_path / "audit.log"
        with AuditEmitter(log_path) as audit:
            for i in range(10):
                audit.record(DENY, _meta(host=f"10.0.0.{i}"))

        reader = AuditEmitter(log_path)
        recent = reader.read_recent(5)
        assert len(recent) == 5
        assert recent[-1].requested_host == "10.0.0.9"
        reader.close()

    def test_memory_only(self):
        audit = AuditEmitter()
        audit.record(ALLOW, _meta())
        assert audit.path is None
        assert [e.event_type for e in audit.read_recent()] == ["allowed"]

    def test_creates_parent_dirs(self, tmp_path):
        log_path = tmp_path / "nested" / "dir" / "audit.log"
        with AuditEmitter(log_path) as audit:
            audit.record(DENY, _meta())
        assert log_path.exists()

    def test_write_failure_is_swallowed_and_counted(self, tmp_path):
        log_path = tmp_path / "audit.log"
        log_path.mkdir()  # a directory cannot be opened for append
        audit = AuditEmitter(log_path)
        audit.record(DENY, _meta())
        audit.record(ALLOW, _meta())
        assert audit.failed_count == 2
        assert audit.entry_count == 0

    def test_get_stats(self, tmp_path):
        with AuditEmitter(tmp_path / "audit.log") as audit:
            audit.record(ALLOW, _meta())
            audit.record(DENY, _meta())
            audit.record(Decision.deny(ReasonCode.NO_DESTINATION), _meta())
            audit.record(Decision.deny(ReasonCode.NO_IDENTITY), _meta())
            audit.record_abandoned(_meta())
            stats = audit.get_stats()

        assert stats["total"] == 5
        assert stats["allowed"] == 1
        assert stats["denied"] == 3
        assert stats["abandoned"] == 1
        assert stats["deny_reasons"]["no_destination"] == 1
        assert stats["deny_reasons"]["no_identity"] == 1
        assert stats["unique_destinations"] == 1

    def test_read_recent_skips_corrupt_lines(self, tmp_path):
        log_path = tmp_path / "audit.log"
        with AuditEmitter(log_path) as audit:
            audit.record(DENY, _meta())
        with open(log_path, "a", encoding="utf-8") as f:
            f.write("not json\n")
        assert len(AuditEmitter(log_path).read_recent()) == 1
