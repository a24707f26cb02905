"""
Activity: Convoy and epic tracking.

Convoys live in the town-root database and track beads with ``tracks``
dependency edges. Epic children are beads that depend on the epic.
"""

from __future__ import annotations

import logging
from pathlib import Path

from activities.bd import BdStore
from features.queue.errors import StoreUnavailableError
from models.schemas import BeadInfo
from utils.workspace import resolve_bead_dir

log = logging.getLogger(__name__)

CONVOY_LABEL = "gt:convoy"
OWNED_LABEL = "gt:owned"
_CLOSED = {"closed", "tombstone"}


class ConvoyTracker:
    def __init__(self, store: BdStore, town_root: Path | str):
        self.store = store
        self.town_root = Path(town_root)

    def find_tracking_convoy(self, bead_id: str) -> str:
        """ID of an open convoy already tracking bead_id, or ''."""
        for dep in self.store.dep_list(bead_id, direction="up", dep_type="tracks", cwd=self.town_root):
            if dep.get("status") not in _CLOSED:
                return str(dep.get("id", ""))
        return ""

    def ensure_tracked(self, bead_id: str, title: str, owned: bool = False) -> str:
        """Return the convoy tracking bead_id, creating one if needed."""
        existing = self.find_tracking_convoy(bead_id)
        if existing:
            return existing
        labels = [CONVOY_LABEL]
        if owned:
            labels.append(OWNED_LABEL)
        convoy_id = self.store.create(
            title=f"Work: {title or bead_id}",
            issue_type="convoy",
            description=f"Auto-created convoy tracking {bead_id}",
            labels=labels,
            cwd=self.town_root,
        )
        self.store.dep_add(convoy_id, bead_id, "tracks", cwd=self.town_root)
        log.info("Created convoy %s tracking %s", convoy_id, bead_id)
        return convoy_id

    def tracked_issues(self, convoy_id: str) -> list[BeadInfo]:
        deps = self.store.dep_list(convoy_id, direction="down", dep_type="tracks", cwd=self.town_root)
        return self._expand(deps)

    def epic_children(self, epic_id: str) -> list[BeadInfo]:
        cwd = resolve_bead_dir(self.town_root, epic_id)
        deps = self.store.dep_list(epic_id, direction="down", dep_type="depends_on", cwd=cwd)
        return self._expand(deps)

    def _expand(self, deps: list[dict]) -> list[BeadInfo]:
        """Fetch labels/assignee for each dependency; fall back to the edge record."""
        out: list[BeadInfo] = []
        for dep in deps:
            dep_id = str(dep.get("id", ""))
            if not dep_id:
                continue
            try:
                info = self.store.show(dep_id)
            except StoreUnavailableError as e:
                log.warning("Could not look up %s: %s", dep_id, e)
                info = None
            if info is None:
                info = BeadInfo.from_json(dep)
            out.append(info)
        return out
