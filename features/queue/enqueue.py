"""
Enqueue pipeline — turns a bead into a dispatchable queue item.

Ordering contract: the metadata block is written first, the gt:queued
label second. A dispatch cycle running concurrently therefore sees either
an unlabeled bead (invisible) or a labeled bead with complete metadata,
never a labeled bead without metadata (which it would quarantine).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import config
from features.queue.audit import AuditEvent
from features.queue.errors import (
    FormulaInvalidError,
    GuardRejectedError,
    NotFoundError,
    StoreUnavailableError,
)
from features.queue.labels import LabelEvent, has_queued_label, transition
from features.queue.metadata import with_metadata
from features.queue.models import EnqueueOptions, EnqueueResult, QueueMetadata
from features.queue.services import QueueServices
from utils.workspace import extract_prefix, is_rig_name, resolve_rig_for_bead

log = logging.getLogger(__name__)

MERGE_STRATEGIES = {"direct", "mr", "local"}
ASSIGNED_STATUSES = {"hooked", "in_progress"}
CLOSED_STATUSES = {"closed", "tombstone"}


def resolve_formula(formula: str, hook_raw_bead: bool) -> str:
    """Formula to apply: none for raw hooks, else the given one or the default."""
    if hook_raw_bead:
        return ""
    return formula or config.DEFAULT_FORMULA


def validate_options(options: EnqueueOptions) -> None:
    if options.merge and options.merge not in MERGE_STRATEGIES:
        raise GuardRejectedError(
            f"invalid merge strategy {options.merge!r} (expected one of: {', '.join(sorted(MERGE_STRATEGIES))})"
        )
    for var in options.vars:
        key, sep, _ = var.partition("=")
        if not sep or not key.strip():
            raise GuardRejectedError(f"invalid --var {var!r} (expected key=value)")
    if options.hook_raw_bead and options.formula:
        raise GuardRejectedError("cannot combine a formula with hook_raw_bead")


def build_metadata(rig: str, options: EnqueueOptions) -> QueueMetadata:
    return QueueMetadata(
        target_rig=rig,
        formula=resolve_formula(options.formula, options.hook_raw_bead),
        args=options.args,
        vars=list(options.vars),
        enqueued_at=datetime.now(timezone.utc).isoformat(),
        merge=options.merge,
        convoy=options.convoy,
        base_branch=options.base_branch,
        no_merge=options.no_merge,
        hook_raw_bead=options.hook_raw_bead,
        owned=options.owned,
        account=options.account,
        agent=options.agent,
        mode=options.mode,
    )


def enqueue_bead(svc: QueueServices, bead_id: str, rig: str, options: EnqueueOptions) -> EnqueueResult:
    """Queue bead_id for dispatch to rig.

    Raises NotFoundError, GuardRejectedError, FormulaInvalidError or
    StoreUnavailableError; nothing is written unless every guard passes.
    """
    validate_options(options)

    # 1. Bead must exist
    info = svc.store.show(bead_id)
    if info is None:
        raise NotFoundError(f"bead '{bead_id}' not found")

    rig, rig_exists = is_rig_name(svc.town_root, rig)
    if not rig_exists:
        raise NotFoundError(f"rig '{rig}' not found in {svc.town_root}")

    # 2. Cross-rig guard
    owner_rig = resolve_rig_for_bead(svc.town_root, bead_id)
    if owner_rig != rig and not options.force:
        prefix = extract_prefix(bead_id) or "(none)"
        raise GuardRejectedError(
            f"cross-rig mismatch: {bead_id} (prefix {prefix}) belongs to "
            f"{owner_rig or 'the town root'}, not {rig} (use force to override)"
        )

    # 3. Idempotency
    if info.status == "open" and has_queued_label(info.labels) and not options.force:
        log.info("[QUEUE] %s is already queued, nothing to do", bead_id)
        return EnqueueResult(bead_id=bead_id, rig=rig, already_queued=True, dry_run=options.dry_run)

    # 4. Status guards
    if info.status in CLOSED_STATUSES:
        raise GuardRejectedError(f"bead {bead_id} is {info.status} (work already completed)")
    if info.status in ASSIGNED_STATUSES and not options.force:
        raise GuardRejectedError(
            f"bead {bead_id} is {info.status} (assigned to {info.assignee or 'unknown'}); use force to re-queue"
        )

    # 5. Formula lookup
    formula = resolve_formula(options.formula, options.hook_raw_bead)
    if formula and svc.formulas is not None and not svc.formulas.exists(formula):
        raise FormulaInvalidError(f"formula '{formula}' not found")

    if options.dry_run:
        log.info("[QUEUE] Would queue %s → %s (%s)", bead_id, rig, formula or "raw hook")
        return EnqueueResult(bead_id=bead_id, rig=rig, dry_run=True)

    # 6. Pre-validate the formula against this bead
    if formula and svc.formulas is not None:
        svc.formulas.cook(formula, bead_id, options.vars)

    # 7–8. Write metadata (label still absent: inert)
    original = info.description
    svc.store.update_description(bead_id, with_metadata(original, build_metadata(rig, options)))

    # 9. Activate; 10. roll back the description if activation fails
    labels = transition(info.labels, LabelEvent.ENQUEUE)
    try:
        svc.store.update_labels(bead_id, add=labels.add, remove=labels.remove)
    except StoreUnavailableError:
        log.error("[QUEUE] Could not label %s; restoring description", bead_id)
        try:
            svc.store.update_description(bead_id, original)
        except StoreUnavailableError as e:
            log.error("[QUEUE] Rollback of %s failed, inert metadata left behind: %s", bead_id, e)
        raise

    svc.audit.record(AuditEvent.ENQUEUED, bead_id=bead_id, rig=rig, detail=formula or "raw hook")
    result = EnqueueResult(bead_id=bead_id, rig=rig, queued=True, convoy=options.convoy)

    # 11. Convoy tracking (best-effort once the bead is live)
    if not options.no_convoy and svc.convoys is not None:
        try:
            result.convoy = svc.convoys.ensure_tracked(bead_id, info.title, owned=options.owned)
        except StoreUnavailableError as e:
            log.warning("[QUEUE] %s queued but convoy tracking failed: %s", bead_id, e)

    return result
