"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
TOWN_ROOT = os.getenv("GT_TOWN_ROOT", "")
RUNTIME_DIRNAME = ".runtime"
QUEUE_STATE_FILENAME = "queue-state.json"
DISPATCH_LOCK_FILENAME = "queue-dispatch.lock"
TOWN_SETTINGS_PATH = Path("settings") / "config.json"

# External binaries
BD_BIN = os.getenv("BD_BIN", "bd")
GT_BIN = os.getenv("GT_BIN", "gt")
TMUX_BIN = os.getenv("TMUX_BIN", "tmux")

# Temporal (empty TEMPORAL_HOST keeps dispatch in-process)
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_NAMESPACE = os.getenv("TEMPORAL_NAMESPACE", "default")
TEMPORAL_TASK_QUEUE = "bead-queue"
DISPATCH_SCHEDULE_ID = "bead-queue-heartbeat"

# Postgres (audit trail; empty disables persistence)
DATABASE_URL = os.getenv("DATABASE_URL", "")

# Queue defaults (town settings and caller overrides take precedence)
QUEUE_ENABLED = os.getenv("QUEUE_ENABLED", "true").lower() in ("1", "true", "yes")
QUEUE_MAX_POLECATS = int(os.getenv("QUEUE_MAX_POLECATS", "10"))
QUEUE_BATCH_SIZE = int(os.getenv("QUEUE_BATCH_SIZE", "3"))
QUEUE_SPAWN_DELAY = float(os.getenv("QUEUE_SPAWN_DELAY", "2.0"))  # seconds

# Circuit breaker: consecutive dispatch failures before an item is dropped
MAX_DISPATCH_FAILURES = 3

# Timeouts (seconds)
DISPATCH_TIMEOUT = float(os.getenv("QUEUE_DISPATCH_TIMEOUT", "300"))
CYCLE_TIMEOUT = float(os.getenv("QUEUE_CYCLE_TIMEOUT", "900"))  # whole dispatch cycle activity
STORE_TIMEOUT = float(os.getenv("BD_TIMEOUT", "30"))

# Heartbeat
HEARTBEAT_INTERVAL = float(os.getenv("QUEUE_HEARTBEAT_INTERVAL", "60"))

# Formulas
DEFAULT_FORMULA = os.getenv("QUEUE_DEFAULT_FORMULA", "mol-polecat-work")

# Caller-context tag passed to the execution runtime
SLING_CONTEXT = "queue-dispatch"
