"""
FastAPI application — REST command surface for the work queue.

Endpoints:
  GET  /health                  — Health check
  GET  /queue/status            — Pause state, queued/ready counts, active polecats
  GET  /queue/list              — Queued beads with target rig and blocked flag
  POST /queue/enqueue           — Queue a bead, batch of beads, convoy or epic
  POST /queue/run               — Manually trigger a dispatch cycle
  GET  /queue/run/{workflow_id} — Status/result of a cycle started via Temporal
  POST /queue/pause             — Pause dispatch (town-wide)
  POST /queue/resume            — Resume dispatch
  POST /queue/clear             — Remove one or all beads from the queue
  GET  /queue/events            — Recent audit events (Postgres)
  GET  /queue/events/{bead_id}  — Audit history of one bead (Postgres)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from temporalio.client import Client

import config
from features.queue import (
    EnqueueOptions,
    QueueServices,
    clear_queue,
    default_services,
    dispatch_queued_work,
    enqueue_targets,
    pause_queue,
    queue_status,
    resume_queue,
)
from features.queue import db as queue_db
from features.queue.errors import (
    BatchEnqueueError,
    FormulaInvalidError,
    GuardRejectedError,
    NotFoundError,
    QueueError,
    StoreUnavailableError,
)
from features.queue.ready import list_queued_beads
from models.schemas import DispatchRequest
from utils.workspace import WorkspaceNotFoundError, detect_actor, find_town_root
from workflows.dispatch import QueueDispatchWorkflow

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

# Temporal client (initialized on startup)
temporal_client: Client | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client
    if queue_db.is_configured():
        try:
            queue_db.init_db()
            log.info("Postgres audit trail initialized")
        except Exception as e:
            log.warning("Could not connect to Postgres: %s (audit events will be logged only)", e)
    if config.TEMPORAL_HOST:
        try:
            temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
            log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
        except Exception as e:
            log.warning("Could not connect to Temporal: %s (dispatch will run in-process)", e)
            temporal_client = None
    yield


app = FastAPI(
    title="Bead Queue",
    description="Capacity-controlled dispatch of queued beads to polecat workers",
    version="1.0.0",
    lifespan=lifespan,
)


def get_services(actor: str = "") -> QueueServices:
    """Wire collaborators for the current town. Tests override this."""
    return default_services(find_town_root(), actor=actor)


_ERROR_STATUS = [
    (NotFoundError, 404),
    (WorkspaceNotFoundError, 404),
    (GuardRejectedError, 409),
    (FormulaInvalidError, 422),
    (StoreUnavailableError, 503),
]


@app.exception_handler(QueueError)
@app.exception_handler(WorkspaceNotFoundError)
async def queue_error_handler(request: Request, exc: Exception):
    status = 400
    for exc_type, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            status = code
            break
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, BatchEnqueueError):
        body["failures"] = exc.failures
    return JSONResponse(status_code=status, content=body)


# ── Request models ───────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1, description="Bead/convoy/epic IDs, optionally ending with a rig")
    on: str = ""  # formula-on-bead: ids[0] is the formula name
    formula: str = ""
    hook_raw_bead: bool = False
    args: str = ""
    vars: list[str] = Field(default_factory=list)
    merge: str = ""
    base_branch: str = ""
    no_convoy: bool = False
    owned: bool = False
    no_merge: bool = False
    force: bool = False
    dry_run: bool = False
    account: str = ""
    agent: str = ""
    mode: str = ""
    actor: str = ""


class RunRequest(BaseModel):
    batch: int = Field(0, ge=0, description="Override batch size (0 = use config)")
    max_polecats: int = Field(0, ge=0, description="Override max polecats (0 = use config)")
    dry_run: bool = False
    actor: str = ""


class ActorRequest(BaseModel):
    actor: str = ""


class ClearRequest(BaseModel):
    bead: str = ""
    actor: str = ""


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    try:
        town_root = str(find_town_root())
    except WorkspaceNotFoundError:
        town_root = None
    return {
        "status": "ok",
        "service": "bead-queue",
        "town_root": town_root,
        "audit_db": queue_db.is_configured(),
        "temporal_connected": temporal_client is not None,
    }


# ── Read-only projections ────────────────────────────────────────────

@app.get("/queue/status")
async def get_status():
    svc = get_services()
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, queue_status, svc)


@app.get("/queue/list")
async def get_list():
    svc = get_services()
    loop = asyncio.get_running_loop()
    beads = await loop.run_in_executor(None, list_queued_beads, svc.town_root, svc.store)
    return {"beads": [b.to_dict() for b in beads], "count": len(beads)}


# ── Enqueue ──────────────────────────────────────────────────────────

@app.post("/queue/enqueue")
async def enqueue(req: EnqueueRequest):
    """Queue work; the ID type (task, convoy, epic) is detected automatically."""
    actor = req.actor or detect_actor()
    svc = get_services(actor)
    options = EnqueueOptions(
        formula=req.formula,
        args=req.args,
        vars=list(req.vars),
        merge=req.merge,
        base_branch=req.base_branch,
        no_convoy=req.no_convoy,
        owned=req.owned,
        no_merge=req.no_merge,
        force=req.force,
        dry_run=req.dry_run,
        account=req.account,
        agent=req.agent,
        hook_raw_bead=req.hook_raw_bead,
        mode=req.mode,
    )
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, enqueue_targets, svc, list(req.ids), options, req.on)
    return {**asdict(result), "events": svc.audit.to_list(), "event_summary": svc.audit.summary()}


# ── Dispatch ─────────────────────────────────────────────────────────

@app.post("/queue/run")
async def run_dispatch(req: RunRequest):
    """Manual dispatch trigger; runs even while the queue is paused.

    With a Temporal connection the cycle runs on the worker and this
    returns the workflow ID; dry runs and the no-Temporal case run
    in-process and return the result directly.
    """
    actor = req.actor or detect_actor()
    svc = get_services(actor)

    if temporal_client and not req.dry_run:
        workflow_id = f"queue-run-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
        await temporal_client.start_workflow(
            QueueDispatchWorkflow.run,
            DispatchRequest(
                town_root=str(svc.town_root),
                actor=actor,
                batch=req.batch,
                max_polecats=req.max_polecats,
                manual=True,
            ),
            id=workflow_id,
            task_queue=config.TEMPORAL_TASK_QUEUE,
        )
        return {
            "workflow_id": workflow_id,
            "status": "started",
            "message": f"Dispatch started via Temporal. Workflow ID: {workflow_id}",
        }

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None, lambda: dispatch_queued_work(
            svc, actor,
            batch_override=req.batch,
            max_override=req.max_polecats,
            dry_run=req.dry_run,
            manual=True,
        ),
    )
    return {**asdict(result), "events": svc.audit.to_list(), "event_summary": svc.audit.summary()}


@app.get("/queue/run/{workflow_id}")
async def get_dispatch_run(workflow_id: str):
    """Status of a dispatch cycle started via Temporal; result once completed."""
    if not temporal_client:
        raise HTTPException(status_code=503, detail="Temporal is not connected")
    try:
        handle = temporal_client.get_workflow_handle(workflow_id)
        desc = await handle.describe()
        result = None
        if desc.status.name == "COMPLETED":
            result = await handle.result()
    except Exception as e:
        raise HTTPException(status_code=404, detail=f"Dispatch run not found: {workflow_id} ({e})")
    return {"workflow_id": workflow_id, "temporal_status": desc.status.name, "result": result}


# ── Pause / resume / clear ───────────────────────────────────────────

@app.post("/queue/pause")
def pause(req: ActorRequest):
    actor = req.actor or detect_actor()
    svc = get_services(actor)
    state, changed = pause_queue(svc, actor)
    return {"changed": changed, **asdict(state)}


@app.post("/queue/resume")
def resume(req: ActorRequest):
    actor = req.actor or detect_actor()
    svc = get_services(actor)
    state, changed = resume_queue(svc)
    return {"changed": changed, **asdict(state)}


@app.post("/queue/clear")
async def clear(req: ClearRequest):
    svc = get_services(req.actor or detect_actor())
    loop = asyncio.get_running_loop()
    cleared = await loop.run_in_executor(None, clear_queue, svc, req.bead)
    return {"cleared": cleared, "count": len(cleared)}


# ── Audit trail ──────────────────────────────────────────────────────

@app.get("/queue/events")
def list_events(limit: int = Query(100, ge=1, le=1000), event: str | None = None):
    """Recent audit events, newest first, optionally filtered by event type."""
    if not queue_db.is_configured():
        raise HTTPException(status_code=503, detail="Audit database not configured (set DATABASE_URL)")
    try:
        events = queue_db.list_events(limit=limit, event=event)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {e}")
    return {"events": [_serialize(e) for e in events], "count": len(events)}


@app.get("/queue/events/{bead_id}")
def bead_events(bead_id: str):
    """Audit history of one bead, oldest first."""
    if not queue_db.is_configured():
        raise HTTPException(status_code=503, detail="Audit database not configured (set DATABASE_URL)")
    try:
        events = queue_db.get_events_for_bead(bead_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {e}")
    return {"bead_id": bead_id, "events": [_serialize(e) for e in events], "count": len(events)}


def _serialize(obj: Any) -> Any:
    """Make a row JSON-serializable (datetimes from TIMESTAMPTZ columns)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj
