"""
Ready-set resolver — every queued bead across the town, with blocked status.

bd list/ready are CWD-scoped, so each rig database is queried separately
and the results merged. A rig whose database cannot be reached is skipped
with a warning; only when every partition fails is the store reported
unavailable.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import config
from features.queue.errors import StoreUnavailableError
from features.queue.metadata import parse_metadata
from features.queue.models import QueueLabel, QueuedBead

log = logging.getLogger(__name__)

# Beads already handed to a polecat (or finished) keep gt:queued as an audit
# trail but are no longer pending.
TERMINAL_STATUSES = {"hooked", "closed", "tombstone"}

_SKIP_DIRS = {"mayor", "settings"}


class LabelQueryStore(Protocol):
    def list_labeled(self, label: str, cwd: Path | str | None = None) -> list[dict]: ...
    def ready_labeled(self, label: str, cwd: Path | str | None = None) -> list[dict]: ...


def beads_search_dirs(town_root: Path | str) -> list[Path]:
    """Town root plus every rig directory that carries a bd database.

    A rig's database lives at ``<rig>/.beads`` or, for rigs that redirect to
    their canonical clone, ``<rig>/mayor/rig/.beads``.
    """
    root = Path(town_root)
    dirs = [root]
    seen = {root.resolve()}
    try:
        entries = sorted(root.iterdir())
    except OSError:
        return dirs

    for entry in entries:
        if not entry.is_dir() or entry.name.startswith(".") or entry.name in _SKIP_DIRS:
            continue
        for candidate in (entry, entry / "mayor" / "rig"):
            if not (candidate / ".beads").is_dir():
                continue
            key = candidate.resolve()
            if key in seen:
                continue
            seen.add(key)
            dirs.append(candidate)
    return dirs


def _circuit_broken(description: str) -> bool:
    meta = parse_metadata(description)
    return meta is not None and meta.dispatch_failures >= config.MAX_DISPATCH_FAILURES


def _ready_ids(dirs: list[Path], store: LabelQueryStore) -> set[str]:
    ready: set[str] = set()
    for d in dirs:
        try:
            records = store.ready_labeled(QueueLabel.QUEUED.value, cwd=d)
        except StoreUnavailableError as e:
            log.debug("Ready query failed in %s: %s", d, e)
            continue
        for r in records:
            if _circuit_broken(r.get("description") or ""):
                continue
            ready.add(str(r.get("id")))
    return ready


def list_queued_beads(town_root: Path | str, store: LabelQueryStore) -> list[QueuedBead]:
    """Pending queued beads in store order, partition by partition."""
    dirs = beads_search_dirs(town_root)
    ready = _ready_ids(dirs, store)

    result: list[QueuedBead] = []
    seen: set[str] = set()
    failures = 0
    last_err: Exception | None = None

    for d in dirs:
        try:
            records = store.list_labeled(QueueLabel.QUEUED.value, cwd=d)
        except StoreUnavailableError as e:
            failures += 1
            last_err = e
            log.warning("Could not list queued beads in %s: %s", d, e)
            continue

        for r in records:
            bead_id = str(r.get("id") or "")
            status = r.get("status") or ""
            if not bead_id or bead_id in seen or status in TERMINAL_STATUSES:
                continue
            description = r.get("description") or ""
            meta = parse_metadata(description)
            if meta is not None and meta.dispatch_failures >= config.MAX_DISPATCH_FAILURES:
                continue
            seen.add(bead_id)
            result.append(QueuedBead(
                id=bead_id,
                title=r.get("title") or "",
                status=status,
                target_rig=meta.target_rig if meta else "",
                blocked=bead_id not in ready,
                description=description,
                rig_dir=str(d),
            ))

    if dirs and failures == len(dirs):
        raise StoreUnavailableError(f"all {failures} bead directories failed (last: {last_err})")
    return result


def list_all_queue_labeled_ids(town_root: Path | str, store: LabelQueryStore) -> list[str]:
    """Every bead carrying gt:queued, with no status or circuit-breaker filtering."""
    ids: list[str] = []
    seen: set[str] = set()
    failures = 0
    last_err: Exception | None = None

    for d in beads_search_dirs(town_root):
        try:
            records = store.list_labeled(QueueLabel.QUEUED.value, cwd=d)
        except StoreUnavailableError as e:
            failures += 1
            last_err = e
            continue
        for r in records:
            bead_id = str(r.get("id") or "")
            if bead_id and bead_id not in seen:
                seen.add(bead_id)
                ids.append(bead_id)

    if failures and not ids:
        raise StoreUnavailableError(f"all directories failed (last: {last_err})")
    return ids


def ready_candidates(beads: list[QueuedBead]) -> list[QueuedBead]:
    return [b for b in beads if not b.blocked]


def summarize(beads: list[QueuedBead]) -> dict:
    return {
        "queued_total": len(beads),
        "queued_ready": sum(1 for b in beads if not b.blocked),
    }
