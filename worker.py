"""
Temporal Worker — executes queue dispatch workflows and activities.

On start it also installs the heartbeat schedule, which starts a
QueueDispatchWorkflow every HEARTBEAT_INTERVAL seconds. Automatic cycles
respect the pause flag and the town's queue.enabled setting; use
POST /queue/run for a manual dispatch that ignores both.

Usage:
    python worker.py            # Temporal worker + heartbeat schedule
    python worker.py --once     # single in-process cycle (cron-friendly, no Temporal)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleAlreadyRunningError,
    ScheduleIntervalSpec,
    ScheduleOverlapPolicy,
    SchedulePolicy,
    ScheduleSpec,
)
from temporalio.worker import Worker

import config
from activities.dispatch_cycle import run_dispatch_cycle
from models.schemas import DispatchRequest
from utils.workspace import find_town_root
from workflows.dispatch import QueueDispatchWorkflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


def heartbeat_once(town_root=None) -> dict | None:
    """One automatic dispatch cycle in-process. Failures are logged, not raised."""
    req = DispatchRequest(town_root=str(town_root) if town_root else "", manual=False)
    try:
        return run_dispatch_cycle(req)
    except Exception as e:
        log.error("Heartbeat dispatch failed: %s", e, exc_info=True)
        return None


def heartbeat_schedule(town_root) -> Schedule:
    return Schedule(
        action=ScheduleActionStartWorkflow(
            QueueDispatchWorkflow.run,
            DispatchRequest(town_root=str(town_root), actor="heartbeat", manual=False),
            id=f"{config.DISPATCH_SCHEDULE_ID}-run",
            task_queue=config.TEMPORAL_TASK_QUEUE,
        ),
        spec=ScheduleSpec(
            intervals=[ScheduleIntervalSpec(every=timedelta(seconds=config.HEARTBEAT_INTERVAL))],
        ),
        # A cycle still running when the next one is due is not doubled up
        policy=SchedulePolicy(overlap=ScheduleOverlapPolicy.SKIP),
    )


async def ensure_schedule(client: Client, town_root) -> bool:
    """Create the heartbeat schedule; False if it already existed."""
    try:
        await client.create_schedule(config.DISPATCH_SCHEDULE_ID, heartbeat_schedule(town_root))
    except ScheduleAlreadyRunningError:
        log.info("Heartbeat schedule %s already exists", config.DISPATCH_SCHEDULE_ID)
        return False
    log.info("Heartbeat schedule %s created (every %.0fs)",
             config.DISPATCH_SCHEDULE_ID, config.HEARTBEAT_INTERVAL)
    return True


async def main():
    town_root = find_town_root()
    log.info("Connecting to Temporal at %s ...", config.TEMPORAL_HOST)
    client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)

    await ensure_schedule(client, town_root)

    with ThreadPoolExecutor(max_workers=4) as activity_executor:
        worker = Worker(
            client,
            task_queue=config.TEMPORAL_TASK_QUEUE,
            workflows=[QueueDispatchWorkflow],
            activities=[run_dispatch_cycle],
            activity_executor=activity_executor,
        )
        log.info("Worker ready — listening on %s for %s", config.TEMPORAL_TASK_QUEUE, town_root)
        await worker.run()


if __name__ == "__main__":
    if "--once" in sys.argv[1:]:
        heartbeat_once()
    else:
        asyncio.run(main())
