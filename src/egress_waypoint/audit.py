# Egress Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Egress Waypoint.
#
# Egress Waypoint is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Egress audit emitter.

Every evaluated connection produces exactly one record, whatever the
verdict. Allowed records name the upstream the connection was sent to,
so operators can verify that denied traffic never reached a real
destination; denied records carry the reason code.

Records go to a JSON Lines file (one object per line) when a path is
configured, and are always mirrored to the ``egress_waypoint.audit``
logger. Emitting never raises: failures are counted and logged.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TextIO

from .models import ConnectionMetadata, Decision

logger = logging.getLogger("egress_waypoint.audit")

_RECENT_BUFFER = 1000


@dataclass
class AuditEntry:
    """A single auditable connection event."""

    timestamp: float
    event_type: str  # "allowed", "denied", "abandoned"
    connection_id: str
    requested_host: str
    requested_port: int
    verdict: str = "DENY"
    reason_code: str = ""
    source_namespace: str = ""
    client_address: str = ""
    destination_id: str = ""
    matched_policy_id: str = ""
    upstream: str = ""  # host:port actually dialled (allowed only)
    detail: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_decision(
        cls,
        decision: Decision,
        metadata: ConnectionMetadata,
    ) -> AuditEntry:
        upstream = ""
        if decision.allowed and decision.upstream_host:
            upstream = f"{decision.upstream_host}:{metadata.requested_port}"
        return cls(
            timestamp=time.time(),
            event_type="allowed" if decision.allowed else "denied",
            connection_id=metadata.connection_id,
            requested_host=metadata.requested_host,
            requested_port=metadata.requested_port,
            verdict=decision.verdict.value,
            reason_code=decision.reason_code.value,
            source_namespace=decision.source_namespace or "",
            client_address=metadata.client_address,
            destination_id=decision.destination_id or "",
            matched_policy_id=decision.matched_policy_id or "",
            upstream=upstream,
        )

    @classmethod
    def abandoned(cls, metadata: ConnectionMetadata, detail: str = "") -> AuditEntry:
        return cls(
            timestamp=time.time(),
            event_type="abandoned",
            connection_id=metadata.connection_id,
            requested_host=metadata.requested_host,
            requested_port=metadata.requested_port,
            reason_code="abandoned",
            client_address=metadata.client_address,
            detail=detail or "connection aborted before a verdict",
        )


class AuditEmitter:
    """Thread-safe audit sink.

    ``log_path=None`` disables the file sink; records are then only
    logged and kept in a bounded in-memory buffer.
    """

    def __init__(self, log_path: str | Path | None = None) -> None:
        self._path = Path(log_path) if log_path else None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._file: TextIO | None = None
        self._recent: deque[AuditEntry] = deque(maxlen=_RECENT_BUFFER)
        self._entry_count = 0
        self._failed_count = 0

    def _ensure_open(self) -> TextIO:
        """Lazily open the log file."""
        if self._file is None or self._file.closed:
            self._file = open(self._path, "a", encoding="utf-8")
        return self._file

    def record(self, decision: Decision, metadata: ConnectionMetadata) -> None:
        """Record the verdict for one connection. Never raises."""
        try:
            entry = AuditEntry.from_decision(decision, metadata)
        except Exception as exc:
            self._fail(exc)
            return
        self.emit(entry)

    def record_abandoned(self, metadata: ConnectionMetadata, detail: str = "") -> None:
        """Best-effort record for a connection dropped before its verdict."""
        try:
            entry = AuditEntry.abandoned(metadata, detail)
        except Exception as exc:
            self._fail(exc)
            return
        self.emit(entry)

    def emit(self, entry: AuditEntry) -> None:
        try:
            line = entry.to_json()
            if entry.event_type == "allowed":
                logger.info(
                    "ALLOW %s -> %s:%d dest=%s policy=%s upstream=%s",
                    entry.source_namespace or "-",
                    entry.requested_host,
                    entry.requested_port,
                    entry.destination_id,
                    entry.matched_policy_id,
                    entry.upstream or "-",
                )
            else:
                logger.info(
                    "%s %s -> %s:%d reason=%s",
                    "DENY" if entry.event_type == "denied" else "ABANDON",
                    entry.source_namespace or "-",
                    entry.requested_host,
                    entry.requested_port,
                    entry.reason_code,
                )
            with self._lock:
                if self._path is not None:
                    f = self._ensure_open()
                    f.write(line + "\n")
                    f.flush()
                self._recent.append(entry)
                self._entry_count += 1
        except Exception as exc:
            self._fail(exc)

    def _fail(self, exc: Exception) -> None:
        with self._lock:
            self._failed_count += 1
        logger.error("Failed to write audit entry: %s", exc)

    def close(self) -> None:
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
                self._file = None

    @property
    def entry_count(self) -> int:
        """Records written in this session."""
        return self._entry_count

    @property
    def failed_count(self) -> int:
        """Records that could not be emitted."""
        return self._failed_count

    @property
    def path(self) -> Path | None:
        return self._path

    def read_recent(self, n: int = 50) -> list[AuditEntry]:
        """Read the N most recent audit entries."""
        if self._path is None:
            with self._lock:
                return list(self._recent)[-n:] if n > 0 else []
        if not self._path.exists() or n <= 0:
            return []

        entries: list[AuditEntry] = []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
            for line in lines[-n:]:
                try:
                    entries.append(AuditEntry(**json.loads(line)))
                except (json.JSONDecodeError, TypeError):
                    continue
        except OSError as exc:
            logger.error("Failed to read audit log: %s", exc)
        return entries

    def get_stats(self) -> dict:
        """Summary counts over the most recent 1000 records."""
        entries = self.read_recent(1000)
        reasons: dict[str, int] = {}
        for e in entries:
            if e.event_type != "allowed":
                reasons[e.reason_code] = reasons.get(e.reason_code, 0) + 1
        return {
            "total": len(entries),
            "allowed": sum(1 for e in entries if e.event_type == "allowed"),
            "denied": sum(1 for e in entries if e.event_type == "denied"),
            "abandoned": sum(1 for e in entries if e.event_type == "abandoned"),
            "deny_reasons": reasons,
            "unique_destinations": len({e.destination_id for e in entries if e.destination_id}),
            "emit_failures": self._failed_count,
        }

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
