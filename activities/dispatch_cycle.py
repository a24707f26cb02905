"""
Dispatch cycle activity — one dispatch_queued_work run for a town.

Executed by QueueDispatchWorkflow on the Temporal worker, and called
directly by ``worker.py --once`` when no Temporal server is involved.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from temporalio import activity

from features.queue import default_services, dispatch_queued_work
from models.schemas import DispatchRequest
from utils.workspace import detect_actor, find_town_root

log = logging.getLogger(__name__)


@activity.defn
def run_dispatch_cycle(req: DispatchRequest) -> dict:
    """Run one cycle and return the DispatchResult plus its audit events."""
    town_root = req.town_root or find_town_root()
    actor = req.actor or detect_actor()
    svc = default_services(town_root, actor=actor)
    result = dispatch_queued_work(
        svc, actor,
        batch_override=req.batch,
        max_override=req.max_polecats,
        dry_run=req.dry_run,
        manual=req.manual,
    )
    kind = "Manual dispatch" if req.manual else "Heartbeat"
    if result.skipped_reason:
        log.info("%s: %s", kind, result.skipped_reason)
    else:
        log.info("%s: dispatched %d, failed %d", kind, result.dispatched, result.failed)
    return {**asdict(result), "events": svc.audit.to_list()}
