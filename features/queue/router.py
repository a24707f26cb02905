"""
Target-type router — figures out what an ID refers to and queues it.

  gt-abc            task bead (rig resolved from its prefix)
  gt-abc gt-def     batch of task beads
  gt-abc gastown    task bead with an explicit rig
  hq-cv-abc         convoy: queue every open tracked issue
  gt-epic-123       epic: queue every open child
  mol-review on=gt-abc   formula-on-bead

Single-bead requests raise on failure. Batches and fan-outs record
per-bead failures and only raise when nothing could be queued.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from features.queue.enqueue import enqueue_bead
from features.queue.errors import (
    BatchEnqueueError,
    GuardRejectedError,
    NotFoundError,
    QueueError,
)
from features.queue.labels import has_queued_label
from features.queue.models import (
    TASK_ONLY_OPTIONS,
    BatchResult,
    EnqueueOptions,
    EnqueueResult,
    TargetType,
)
from features.queue.services import QueueServices
from models.schemas import BeadInfo
from utils.workspace import extract_prefix, is_rig_name, resolve_rig_for_bead

log = logging.getLogger(__name__)

CONVOY_PREFIX = "hq-cv-"
TYPE_LABELS = {"gt:epic": TargetType.EPIC, "gt:convoy": TargetType.CONVOY}

SKIP_CLOSED = "closed"
SKIP_ASSIGNED = "assigned"
SKIP_QUEUED = "already queued"
SKIP_NO_RIG = "no rig"


def detect_id_type(svc: QueueServices, bead_id: str) -> TargetType:
    if bead_id.startswith(CONVOY_PREFIX):
        return TargetType.CONVOY

    info = svc.store.show(bead_id)
    if info is None:
        raise NotFoundError(f"cannot resolve bead '{bead_id}'")

    if info.issue_type == TargetType.EPIC.value:
        return TargetType.EPIC
    if info.issue_type == TargetType.CONVOY.value:
        return TargetType.CONVOY

    # issue_type is deprecated in favour of gt:<type> labels
    for label in info.labels:
        if label in TYPE_LABELS:
            return TYPE_LABELS[label]
    return TargetType.TASK


def changed_task_only_options(options: EnqueueOptions) -> list[str]:
    defaults = EnqueueOptions()
    return [name for name in TASK_ONLY_OPTIONS if getattr(options, name) != getattr(defaults, name)]


def enqueue_targets(svc: QueueServices, args: list[str], options: EnqueueOptions, on: str = "") -> BatchResult:
    """Unified entry point: auto-detect the ID type and route accordingly."""
    args = [a.rstrip("/") for a in args if a.rstrip("/")]

    if on:
        return _formula_on_bead(svc, args, on, options)
    if not args:
        raise GuardRejectedError("nothing to queue: pass a bead, convoy or epic ID")

    id_type = detect_id_type(svc, args[0])
    if id_type in (TargetType.CONVOY, TargetType.EPIC):
        mode = id_type.value
        if len(args) > 1:
            raise GuardRejectedError(
                f"{mode} mode accepts exactly one {mode} ID, got {len(args)} args"
            )
        unsupported = changed_task_only_options(options)
        if unsupported:
            raise GuardRejectedError(
                f"{mode} mode does not support: {', '.join(unsupported)} (these only apply to task beads)"
            )
        if id_type == TargetType.CONVOY:
            return queue_convoy(svc, args[0], options)
        return queue_epic(svc, args[0], options)

    return _queue_tasks(svc, args, options)


def _single(svc: QueueServices, bead_id: str, rig: str, options: EnqueueOptions, source: str) -> BatchResult:
    outcome = enqueue_bead(svc, bead_id, rig, options)
    return _record(BatchResult(source=source), outcome)


def _record(batch: BatchResult, outcome: EnqueueResult) -> BatchResult:
    if outcome.already_queued:
        batch.skip(SKIP_QUEUED)
    elif outcome.dry_run:
        batch.would_queue.append(outcome.bead_id)
    else:
        batch.queued.append(outcome.bead_id)
    return batch


def _formula_on_bead(svc: QueueServices, args: list[str], bead_id: str, options: EnqueueOptions) -> BatchResult:
    if not args:
        raise GuardRejectedError(f"on={bead_id} requires a formula name as the first argument")
    if len(args) > 2:
        raise GuardRejectedError(f"formula-on-bead accepts <formula> [rig], got {len(args)} args")
    if options.formula:
        raise GuardRejectedError("cannot set formula together with on= (the first argument is the formula)")
    if options.hook_raw_bead:
        raise GuardRejectedError("cannot use hook_raw_bead with on= (on= already names a formula)")

    rig = ""
    if len(args) == 2:
        rig, ok = is_rig_name(svc.town_root, args[1])
        if not ok:
            raise GuardRejectedError(f"unexpected argument {args[1]!r} (expected a rig name)")
    rig = rig or resolve_rig_for_bead(svc.town_root, bead_id)
    if not rig:
        raise NotFoundError(f"cannot resolve rig for '{bead_id}' (pass the rig explicitly)")

    return _single(svc, bead_id, rig, replace(options, formula=args[0]), source=bead_id)


def _queue_tasks(svc: QueueServices, args: list[str], options: EnqueueOptions) -> BatchResult:
    explicit_rig = ""
    bead_ids = args
    if len(args) >= 2:
        rig, ok = is_rig_name(svc.town_root, args[-1])
        if ok:
            explicit_rig = rig
            bead_ids = args[:-1]

    if len(bead_ids) == 1:
        bead_id = bead_ids[0]
        rig = explicit_rig or resolve_rig_for_bead(svc.town_root, bead_id)
        if not rig:
            raise NotFoundError(
                f"cannot resolve rig for '{bead_id}' from prefix {extract_prefix(bead_id)!r} (pass the rig explicitly)"
            )
        return _single(svc, bead_id, rig, options, source=bead_id)

    # The first ID was already classified as a task by the caller
    for bead_id in bead_ids[1:]:
        id_type = detect_id_type(svc, bead_id)
        if id_type != TargetType.TASK:
            raise GuardRejectedError(
                f"mixed ID types in batch: '{bead_id}' is a {id_type.value}, not a task bead; "
                f"convoys and epics must be queued individually"
            )

    batch = BatchResult(source="batch")
    succeeded = 0
    for bead_id in bead_ids:
        rig = explicit_rig or resolve_rig_for_bead(svc.town_root, bead_id)
        if not rig:
            batch.failed[bead_id] = f"cannot resolve rig from prefix {extract_prefix(bead_id)!r}"
            continue
        try:
            _record(batch, enqueue_bead(svc, bead_id, rig, options))
            succeeded += 1
        except QueueError as e:
            log.warning("[QUEUE] %s: %s", bead_id, e)
            batch.failed[bead_id] = str(e)

    _log_batch(batch, len(bead_ids), options.dry_run)
    if succeeded == 0:
        raise BatchEnqueueError(f"all {len(bead_ids)} enqueue attempts failed", batch.failed)
    return batch


def queue_convoy(svc: QueueServices, convoy_id: str, options: EnqueueOptions) -> BatchResult:
    """Queue every open, unassigned, not-yet-queued issue a convoy tracks."""
    if svc.store.show(convoy_id) is None:
        raise NotFoundError(f"convoy '{convoy_id}' not found")
    members = svc.convoys.tracked_issues(convoy_id)
    member_options = EnqueueOptions(
        formula=options.formula,
        hook_raw_bead=options.hook_raw_bead,
        force=options.force,
        dry_run=options.dry_run,
        no_convoy=True,  # already tracked by this convoy
        convoy=convoy_id,
    )
    return _fan_out(svc, convoy_id, members, member_options)


def queue_epic(svc: QueueServices, epic_id: str, options: EnqueueOptions) -> BatchResult:
    """Queue every open, unassigned, not-yet-queued child of an epic."""
    if svc.store.show(epic_id) is None:
        raise NotFoundError(f"epic '{epic_id}' not found")
    members = svc.convoys.epic_children(epic_id)
    member_options = EnqueueOptions(
        formula=options.formula,
        hook_raw_bead=options.hook_raw_bead,
        force=options.force,
        dry_run=options.dry_run,
    )
    return _fan_out(svc, epic_id, members, member_options)


def _fan_out(svc: QueueServices, group_id: str, members: list[BeadInfo], options: EnqueueOptions) -> BatchResult:
    batch = BatchResult(source=group_id)
    if not members:
        log.info("%s has no member issues", group_id)
        return batch

    candidates: list[tuple[str, str]] = []
    for m in members:
        if m.status in ("closed", "tombstone"):
            batch.skip(SKIP_CLOSED)
            continue
        if m.assignee and not options.force:
            batch.skip(SKIP_ASSIGNED)
            continue
        if has_queued_label(m.labels):
            batch.skip(SKIP_QUEUED)
            continue
        rig = resolve_rig_for_bead(svc.town_root, m.id)
        if not rig:
            batch.skip(SKIP_NO_RIG)
            log.info("Skipping %s: cannot resolve rig from prefix %r", m.id, extract_prefix(m.id))
            continue
        candidates.append((m.id, rig))

    if not candidates:
        log.info("No issues to queue from %s (skipped: %s)", group_id, batch.skipped or "none")
        return batch

    succeeded = 0
    for bead_id, rig in candidates:
        try:
            _record(batch, enqueue_bead(svc, bead_id, rig, options))
            succeeded += 1
        except QueueError as e:
            log.warning("[QUEUE] %s: %s", bead_id, e)
            batch.failed[bead_id] = str(e)

    _log_batch(batch, len(candidates), options.dry_run)
    if succeeded == 0:
        raise BatchEnqueueError(
            f"all {len(candidates)} enqueue attempts failed for {group_id}", batch.failed
        )
    return batch


def _log_batch(batch: BatchResult, attempted: int, dry_run: bool) -> None:
    if dry_run:
        log.info("Would queue %d/%d bead(s) from %s", len(batch.would_queue), attempted, batch.source)
    else:
        log.info("Queued %d/%d bead(s) from %s", len(batch.queued), attempted, batch.source)
