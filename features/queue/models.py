"""
Data models for the queue feature.

QueueMetadata is the dispatch record embedded in a bead description;
the rest are in-memory projections used by the enqueue pipeline and the
dispatch engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class QueueLabel(str, Enum):
    QUEUED = "gt:queued"
    DISPATCHED = "gt:queue-dispatched"
    FAILED = "gt:dispatch-failed"


class TargetType(str, Enum):
    TASK = "task"
    CONVOY = "convoy"
    EPIC = "epic"


@dataclass
class QueueMetadata:
    """Execution parameters for a queued bead."""
    target_rig: str = ""
    formula: str = ""
    args: str = ""
    vars: list[str] = field(default_factory=list)  # ["key=value", ...]
    enqueued_at: str = ""
    merge: str = ""  # direct, mr, local
    convoy: str = ""
    base_branch: str = ""
    no_merge: bool = False
    hook_raw_bead: bool = False
    owned: bool = False
    account: str = ""
    agent: str = ""
    mode: str = ""
    dispatch_failures: int = 0
    last_failure: str = ""

    def is_valid(self) -> bool:
        return bool(self.target_rig)


@dataclass
class QueuedBead:
    """A bead carrying the queued label, as seen by the ready-set resolver."""
    id: str
    title: str
    status: str
    target_rig: str = ""
    blocked: bool = False
    description: str = ""
    rig_dir: str = ""

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "target_rig": self.target_rig,
        }
        if self.blocked:
            out["blocked"] = True
        return out


@dataclass
class QueueState:
    """Town-wide queue state persisted in .runtime/queue-state.json."""
    paused: bool = False
    paused_by: str = ""
    paused_at: str = ""
    last_dispatch_at: str = ""
    last_dispatch_count: int = 0


@dataclass
class EnqueueOptions:
    formula: str = ""
    args: str = ""
    vars: list[str] = field(default_factory=list)
    merge: str = ""
    base_branch: str = ""
    no_convoy: bool = False
    owned: bool = False
    no_merge: bool = False
    force: bool = False
    dry_run: bool = False
    account: str = ""
    agent: str = ""
    hook_raw_bead: bool = False
    mode: str = ""
    convoy: str = ""  # set when fanning out from a convoy


# Options that only make sense for a single task bead, never convoy/epic fan-out
TASK_ONLY_OPTIONS = (
    "account", "agent", "mode", "args", "vars",
    "merge", "base_branch", "no_convoy", "owned", "no_merge",
)


@dataclass
class EnqueueResult:
    bead_id: str
    rig: str
    queued: bool = False
    already_queued: bool = False
    dry_run: bool = False
    convoy: str = ""


@dataclass
class BatchResult:
    """Outcome of a multi-bead or fan-out enqueue."""
    source: str = ""
    queued: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # bead_id → error
    skipped: dict[str, int] = field(default_factory=dict)  # reason → count
    would_queue: list[str] = field(default_factory=list)

    def skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1


@dataclass
class DispatchCandidate:
    """A ready bead paired with its decoded metadata for one dispatch cycle."""
    bead: QueuedBead
    metadata: QueueMetadata | None


@dataclass
class DispatchResult:
    dispatched: int = 0
    failed: int = 0
    quarantined: int = 0
    circuit_broken: int = 0
    ready: int = 0
    active_polecats: int = 0
    admission: int = 0
    candidates: list[dict] = field(default_factory=list)
    dispatched_rigs: dict[str, int] = field(default_factory=dict)
    skipped_reason: str = ""
    dry_run: bool = False
