"""
Temporal Workflow: Queue Dispatch

One dispatch cycle per workflow run. Started on a fixed interval by the
schedule worker.py installs, and on demand by POST /queue/run.

The cycle is a single activity because it holds the town's dispatch lock
for its whole duration; a failed cycle is not retried here, the next
heartbeat picks the work up again.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.dispatch_cycle import run_dispatch_cycle
    from models.schemas import DispatchRequest
    import config

log = logging.getLogger(__name__)


@workflow.defn
class QueueDispatchWorkflow:

    @workflow.run
    async def run(self, req: DispatchRequest) -> dict:
        log.info("Dispatch cycle starting (manual=%s, dry_run=%s)", req.manual, req.dry_run)
        result = await workflow.execute_activity(
            run_dispatch_cycle,
            req,
            start_to_close_timeout=timedelta(seconds=config.CYCLE_TIMEOUT),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        log.info("Dispatch cycle complete: dispatched %s, failed %s",
                 result.get("dispatched"), result.get("failed"))
        return result
