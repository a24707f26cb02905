"""
Queue audit log — records every queue transition as a discrete event.

Events are kept in memory for the caller (API responses, tests) and
persisted to Postgres via features.queue.db when DATABASE_URL is set.
A database failure is logged and never fails the queue operation.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from features.queue import db as queue_db

log = logging.getLogger(__name__)


class AuditEvent(str, Enum):
    ENQUEUED = "enqueued"
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"
    CIRCUIT_BROKEN = "circuit_broken"
    QUARANTINED = "quarantined"
    CLEARED = "cleared"
    PAUSED = "paused"
    RESUMED = "resumed"


# Transitions that permanently remove work from the queue
DESTRUCTIVE = {AuditEvent.CIRCUIT_BROKEN, AuditEvent.QUARANTINED, AuditEvent.CLEARED}


@dataclass
class AuditRecord:
    event: AuditEvent
    bead_id: str = ""
    rig: str = ""
    actor: str = ""
    detail: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: str = ""


class QueueAuditLog:
    """Collects queue events; persists each one as it happens."""

    def __init__(self, actor: str = "", persist: bool | None = None):
        self.actor = actor
        self.records: list[AuditRecord] = []
        self._persist_enabled = queue_db.is_configured() if persist is None else persist

    def _persist(self, record: AuditRecord) -> None:
        if not self._persist_enabled:
            return
        try:
            row = asdict(record)
            row["event"] = record.event.value
            queue_db.insert_event(row)
        except Exception as e:
            log.warning("[QUEUE] Failed to persist %s event for %s: %s", record.event.value, record.bead_id, e)

    def record(self, event: AuditEvent, bead_id: str = "", rig: str = "",
               detail: str = "", **data: Any) -> AuditRecord:
        rec = AuditRecord(
            event=event,
            bead_id=bead_id,
            rig=rig,
            actor=self.actor,
            detail=detail,
            data=data,
            occurred_at=datetime.now(timezone.utc).isoformat(),
        )
        self.records.append(rec)
        level = logging.WARNING if event in DESTRUCTIVE else logging.INFO
        log.log(level, "[QUEUE] %s: %s%s%s", event.value, bead_id or "-",
                f" → {rig}" if rig else "", f" ({detail})" if detail else "")
        self._persist(rec)
        return rec

    def events(self, event: AuditEvent | None = None) -> list[AuditRecord]:
        if event is None:
            return list(self.records)
        return [r for r in self.records if r.event == event]

    def to_list(self, event: AuditEvent | None = None) -> list[dict]:
        out = []
        for r in self.events(event):
            d = asdict(r)
            d["event"] = r.event.value
            out.append(d)
        return out

    def summary(self) -> dict:
        counts: dict[str, int] = {}
        for r in self.records:
            counts[r.event.value] = counts.get(r.event.value, 0) + 1
        return {"total_events": len(self.records), "events": counts}
