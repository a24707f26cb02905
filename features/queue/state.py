"""
Queue state store — pause flag and last-dispatch telemetry.

One JSON file per town (``.runtime/queue-state.json``), replaced atomically
on every write so concurrent readers never see a partial file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path

import config
from features.queue.models import QueueState

log = logging.getLogger(__name__)


def state_path(town_root: Path | str) -> Path:
    return Path(town_root) / config.RUNTIME_DIRNAME / config.QUEUE_STATE_FILENAME


def load_state(town_root: Path | str) -> QueueState:
    """Load queue state; a missing file means an unpaused, never-dispatched queue.

    An unreadable or corrupt file is logged and treated as missing; the
    next save replaces it.
    """
    path = state_path(town_root)
    if not path.exists():
        return QueueState()
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("Ignoring unreadable queue state %s: %s", path, e)
        return QueueState()
    if not isinstance(data, dict):
        log.warning("Ignoring queue state %s: expected an object, got %s", path, type(data).__name__)
        return QueueState()
    known = {f.name for f in fields(QueueState)}
    return QueueState(**{k: v for k, v in data.items() if k in known})


def save_state(town_root: Path | str, state: QueueState) -> None:
    """Write state via temp file + rename in the same directory."""
    path = state_path(town_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".queue-state.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(state), f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def set_paused(state: QueueState, actor: str) -> None:
    state.paused = True
    state.paused_by = actor
    state.paused_at = _now()


def set_resumed(state: QueueState) -> None:
    state.paused = False
    state.paused_by = ""
    state.paused_at = ""


def record_dispatch(state: QueueState, count: int) -> None:
    state.last_dispatch_at = _now()
    state.last_dispatch_count = count
