"""
Operator controls — status, pause, resume and clear.

Pause/resume only touch the state file, so they take effect without
waiting for a running dispatch cycle to release its lock.

A clear racing an in-flight dispatch cycle may still see that cycle
dispatch a bead from its earlier ready-set snapshot. That window is
accepted; clear does not take the dispatch lock.
"""

from __future__ import annotations

import logging

from features.queue.audit import AuditEvent
from features.queue.errors import StoreUnavailableError
from features.queue.labels import QUEUED, LabelEvent, transition
from features.queue.models import QueueState
from features.queue.ready import list_all_queue_labeled_ids, list_queued_beads, summarize
from features.queue.services import QueueServices
from features.queue.state import load_state, save_state, set_paused, set_resumed

log = logging.getLogger(__name__)


def queue_status(svc: QueueServices) -> dict:
    """Read-only projection of queue state plus the current queued set."""
    state = load_state(svc.town_root)
    beads = list_queued_beads(svc.town_root, svc.store)
    active = svc.sessions.count_active_polecats() if svc.sessions is not None else 0
    out = {
        "paused": state.paused,
        "paused_by": state.paused_by,
        "paused_at": state.paused_at,
        **summarize(beads),
        "active_polecats": active,
        "last_dispatch_at": state.last_dispatch_at,
        "last_dispatch_count": state.last_dispatch_count,
        "beads": [b.to_dict() for b in beads],
    }
    return out


def pause_queue(svc: QueueServices, actor: str) -> tuple[QueueState, bool]:
    """Pause dispatch town-wide. Returns (state, changed)."""
    state = load_state(svc.town_root)
    if state.paused:
        log.info("Queue is already paused (by %s)", state.paused_by)
        return state, False
    set_paused(state, actor)
    save_state(svc.town_root, state)
    svc.audit.record(AuditEvent.PAUSED, detail=f"by {actor}")
    return state, True


def resume_queue(svc: QueueServices) -> tuple[QueueState, bool]:
    """Resume dispatch. Returns (state, changed)."""
    state = load_state(svc.town_root)
    if not state.paused:
        log.info("Queue is not paused")
        return state, False
    set_resumed(state)
    save_state(svc.town_root, state)
    svc.audit.record(AuditEvent.RESUMED)
    return state, True


def dequeue_bead(svc: QueueServices, bead_id: str) -> None:
    """Remove gt:queued from one bead; its metadata stays behind, inert."""
    labels = transition({QUEUED}, LabelEvent.CLEARED)
    svc.store.update_labels(bead_id, add=labels.add, remove=labels.remove)
    svc.audit.record(AuditEvent.CLEARED, bead_id=bead_id)


def clear_queue(svc: QueueServices, bead_id: str = "") -> list[str]:
    """Clear one bead, or every bead carrying gt:queued. Returns cleared IDs."""
    if bead_id:
        dequeue_bead(svc, bead_id)
        return [bead_id]

    ids = list_all_queue_labeled_ids(svc.town_root, svc.store)
    cleared: list[str] = []
    for queued_id in ids:
        try:
            dequeue_bead(svc, queued_id)
        except StoreUnavailableError as e:
            log.warning("Could not clear %s: %s", queued_id, e)
            continue
        cleared.append(queued_id)
    log.info("Cleared %d/%d bead(s) from queue", len(cleared), len(ids))
    return cleared
