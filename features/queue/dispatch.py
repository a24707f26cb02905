"""
Dispatch engine — admits queued beads into execution under capacity limits.

One cycle, run under an exclusive per-town file lock:

  1. Skip when paused (automatic triggers only; manual runs always proceed)
  2. Load capacity config, apply overrides
  3. Count running polecats
  4. Fetch the ready set
  5. Admit min(free slots, batch size, ready) beads
  6. Dispatch each one: quarantine beads without metadata, sling the rest,
     and feed failures into the circuit breaker
  7. Wake the witnesses of rigs that received work
  8. Re-read queue state and record dispatch telemetry

Each cycle runs to completion before returning; the heartbeat (worker.py)
or an operator decides when the next one starts.
"""

from __future__ import annotations

import fcntl
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import config
from features.queue.audit import AuditEvent
from features.queue.capacity import admission_count, load_capacity
from features.queue.errors import ExecutionFailedError, QuarantinedError, StoreUnavailableError
from features.queue.labels import QUEUED, LabelEvent, transition
from features.queue.metadata import parse_metadata, strip_metadata, with_metadata
from features.queue.models import DispatchCandidate, DispatchResult, QueuedBead, QueueMetadata
from features.queue.ready import list_queued_beads, ready_candidates
from features.queue.services import QueueServices
from features.queue.state import load_state, record_dispatch, save_state
from models.schemas import SlingParams, SlingResult

log = logging.getLogger(__name__)


@contextmanager
def dispatch_lock(town_root: Path | str) -> Iterator[None]:
    """Exclusive cross-process lock serializing dispatch cycles for a town."""
    lock_path = Path(town_root) / config.RUNTIME_DIRNAME / config.DISPATCH_LOCK_FILENAME
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.touch(exist_ok=True)
    with lock_path.open("r+", encoding="utf-8") as handle:
        start = time.monotonic()
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        waited = time.monotonic() - start
        if waited > 1.0:
            log.info("Waited %.1fs for dispatch lock", waited)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def build_sling_params(bead_id: str, meta: QueueMetadata) -> SlingParams:
    """Rebuild execution parameters from stored queue metadata."""
    return SlingParams(
        bead_id=bead_id,
        rig=meta.target_rig,
        formula=meta.formula,
        hook_raw_bead=meta.hook_raw_bead,
        args=meta.args,
        vars=list(meta.vars),
        merge=meta.merge,
        base_branch=meta.base_branch,
        no_merge=meta.no_merge,
        owned=meta.owned,
        account=meta.account,
        agent=meta.agent,
        mode=meta.mode,
        no_convoy=True,  # enqueue already set up convoy tracking
        no_boot=True,  # the cycle wakes witnesses itself
        context=config.SLING_CONTEXT,
    )


def decode_candidate(bead: QueuedBead) -> DispatchCandidate:
    """Pair a ready bead with its metadata; QuarantinedError if it has none usable."""
    meta = parse_metadata(bead.description)
    if meta is None:
        raise QuarantinedError(f"{bead.id} has no queue metadata")
    if not meta.is_valid():
        raise QuarantinedError(f"{bead.id} queue metadata has no target rig")
    return DispatchCandidate(bead=bead, metadata=meta)


def dispatch_queued_work(
    svc: QueueServices,
    actor: str,
    batch_override: int = 0,
    max_override: int = 0,
    dry_run: bool = False,
    manual: bool = True,
) -> DispatchResult:
    """Run one dispatch cycle for svc.town_root."""
    with dispatch_lock(svc.town_root):
        return _dispatch_locked(svc, actor, batch_override, max_override, dry_run, manual)


def _dispatch_locked(svc: QueueServices, actor: str, batch_override: int, max_override: int,
                     dry_run: bool, manual: bool) -> DispatchResult:
    result = DispatchResult(dry_run=dry_run)

    state = load_state(svc.town_root)
    if state.paused and not manual:
        result.skipped_reason = f"queue paused by {state.paused_by or 'unknown'}"
        log.info("Dispatch skipped: %s", result.skipped_reason)
        return result

    cap = load_capacity(svc.town_root, batch_override, max_override)
    if not cap.enabled and not manual:
        result.skipped_reason = "queue dispatch disabled in town settings"
        log.info("Dispatch skipped: %s", result.skipped_reason)
        return result

    result.active_polecats = svc.sessions.count_active_polecats() if svc.sessions is not None else 0

    ready = ready_candidates(list_queued_beads(svc.town_root, svc.store))
    result.ready = len(ready)
    result.admission = admission_count(cap.max_polecats, result.active_polecats, cap.batch_size, len(ready))

    if result.admission == 0:
        if not ready:
            result.skipped_reason = "no ready beads"
        else:
            result.skipped_reason = f"at capacity ({result.active_polecats}/{cap.max_polecats} polecats)"
        log.info("Nothing to dispatch: %s", result.skipped_reason)
        return result

    admitted = ready[: result.admission]
    if dry_run:
        result.candidates = [b.to_dict() for b in admitted]
        log.info("Dry run: would dispatch %d of %d ready bead(s)", len(admitted), len(ready))
        return result

    log.info(
        "Dispatching %d bead(s) (ready=%d, active=%d, max=%d, batch=%d) as %s",
        len(admitted), len(ready), result.active_polecats, cap.max_polecats, cap.batch_size, actor,
    )

    spawned = False
    for bead in admitted:
        try:
            candidate = decode_candidate(bead)
        except QuarantinedError as e:
            _quarantine(svc, bead, str(e), result)
            continue

        if spawned and cap.spawn_delay > 0:
            svc.sleep(cap.spawn_delay)
        spawned = True

        try:
            _dispatch_one(svc, candidate, result)
        except StoreUnavailableError as e:
            log.error("[QUEUE] Store error while dispatching %s: %s", bead.id, e)

    for rig, count in result.dispatched_rigs.items():
        if svc.notifier is None:
            break
        try:
            svc.notifier.notify(rig, count, svc.town_root)
        except Exception as e:
            log.warning("Could not notify rig %s: %s", rig, e)

    if result.dispatched > 0:
        # Fresh read: a pause toggled during the loop must survive this write
        fresh = load_state(svc.town_root)
        record_dispatch(fresh, result.dispatched)
        save_state(svc.town_root, fresh)

    log.info(
        "Dispatch cycle done: %d dispatched, %d failed, %d circuit-broken, %d quarantined",
        result.dispatched, result.failed, result.circuit_broken, result.quarantined,
    )
    return result


def _quarantine(svc: QueueServices, bead: QueuedBead, reason: str, result: DispatchResult) -> None:
    labels = transition({QUEUED}, LabelEvent.QUARANTINED)
    try:
        svc.store.update_labels(bead.id, add=labels.add, remove=labels.remove)
    except StoreUnavailableError as e:
        log.error("[QUEUE] Could not quarantine %s: %s", bead.id, e)
        return
    result.quarantined += 1
    svc.audit.record(AuditEvent.QUARANTINED, bead_id=bead.id, detail=reason)


def _execute(svc: QueueServices, params: SlingParams) -> SlingResult:
    try:
        return svc.runner.run(params, svc.town_root)
    except ExecutionFailedError as e:
        return SlingResult(ok=False, message=str(e))


def _dispatch_one(svc: QueueServices, candidate: DispatchCandidate, result: DispatchResult) -> None:
    bead = candidate.bead
    meta = candidate.metadata
    outcome = _execute(svc, build_sling_params(bead.id, meta))

    if outcome.ok:
        result.dispatched += 1
        result.dispatched_rigs[meta.target_rig] = result.dispatched_rigs.get(meta.target_rig, 0) + 1
        svc.audit.record(AuditEvent.DISPATCHED, bead_id=bead.id, rig=meta.target_rig)
        svc.store.update_description(bead.id, strip_metadata(bead.description))
        labels = transition({QUEUED}, LabelEvent.DISPATCHED)
        svc.store.update_labels(bead.id, add=labels.add, remove=labels.remove)
        return

    result.failed += 1
    meta.dispatch_failures += 1
    meta.last_failure = outcome.message or "dispatch failed"
    svc.store.update_description(bead.id, with_metadata(bead.description, meta))

    if meta.dispatch_failures >= config.MAX_DISPATCH_FAILURES:
        labels = transition({QUEUED}, LabelEvent.CIRCUIT_BROKEN)
        svc.store.update_labels(bead.id, add=labels.add, remove=labels.remove)
        result.circuit_broken += 1
        svc.audit.record(
            AuditEvent.CIRCUIT_BROKEN, bead_id=bead.id, rig=meta.target_rig,
            detail=meta.last_failure, failures=meta.dispatch_failures,
        )
    else:
        svc.audit.record(
            AuditEvent.DISPATCH_FAILED, bead_id=bead.id, rig=meta.target_rig,
            detail=meta.last_failure, failures=meta.dispatch_failures,
        )
