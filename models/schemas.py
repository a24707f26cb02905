"""
Dataclasses exchanged with external collaborators (bd, gt, tmux) and
with the Temporal dispatch workflow.

Queue-owned models live in features.queue.models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BeadStatus(str, Enum):
    OPEN = "open"
    HOOKED = "hooked"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    TOMBSTONE = "tombstone"


@dataclass
class BeadInfo:
    """A bead record as returned by ``bd show``."""
    id: str
    title: str = ""
    status: str = BeadStatus.OPEN.value
    assignee: str = ""
    description: str = ""
    issue_type: str = ""
    labels: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "BeadInfo":
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title") or "",
            status=data.get("status") or BeadStatus.OPEN.value,
            assignee=data.get("assignee") or "",
            description=data.get("description") or "",
            issue_type=data.get("issue_type") or data.get("type") or "",
            labels=list(data.get("labels") or []),
        )


@dataclass
class SlingParams:
    """Fully-resolved execution request handed to ``gt sling``."""
    bead_id: str
    rig: str
    formula: str = ""
    hook_raw_bead: bool = False
    args: str = ""
    vars: list[str] = field(default_factory=list)
    merge: str = ""
    base_branch: str = ""
    no_merge: bool = False
    owned: bool = False
    account: str = ""
    agent: str = ""
    mode: str = ""
    no_convoy: bool = True
    no_boot: bool = True
    context: str = ""


@dataclass
class SlingResult:
    ok: bool
    message: str = ""


class SessionRole(str, Enum):
    MAYOR = "mayor"
    DEACON = "deacon"
    WITNESS = "witness"
    REFINERY = "refinery"
    CREW = "crew"
    POLECAT = "polecat"


@dataclass
class SessionIdentity:
    role: SessionRole
    rig: str = ""
    name: str = ""


@dataclass
class DispatchRequest:
    """Arguments of one dispatch cycle run as a Temporal workflow."""
    town_root: str = ""  # empty: discover from GT_TOWN_ROOT / cwd
    actor: str = ""
    batch: int = 0
    max_polecats: int = 0
    dry_run: bool = False
    manual: bool = False  # manual runs ignore pause and queue.enabled
