"""
Capacity configuration and the admission formula.

Precedence: caller overrides > town settings (settings/config.json "queue")
> environment defaults from config.py.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import config

log = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, None: 1.0}


@dataclass
class CapacityConfig:
    enabled: bool = True
    max_polecats: int = 10  # 0 = unlimited
    batch_size: int = 3
    spawn_delay: float = 2.0  # seconds


def parse_duration(value: Any) -> float:
    """Seconds from a number or a '2s' / '500ms' / '1m' string."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return max(0.0, float(value))
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def _truthy(value: Any) -> bool:
    """JSON booleans as-is; strings the way QUEUE_ENABLED is read from the env."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def load_town_settings(town_root: Path | str) -> dict:
    path = Path(town_root) / config.TOWN_SETTINGS_PATH
    if not path.is_file():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("Ignoring unreadable town settings %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_capacity(town_root: Path | str, batch_override: int = 0, max_override: int = 0) -> CapacityConfig:
    cap = CapacityConfig(
        enabled=config.QUEUE_ENABLED,
        max_polecats=config.QUEUE_MAX_POLECATS,
        batch_size=config.QUEUE_BATCH_SIZE,
        spawn_delay=config.QUEUE_SPAWN_DELAY,
    )

    queue = load_town_settings(town_root).get("queue") or {}
    if isinstance(queue, dict):
        if "enabled" in queue:
            cap.enabled = _truthy(queue["enabled"])
        if queue.get("max_polecats") is not None:
            try:
                cap.max_polecats = max(0, int(queue["max_polecats"]))
            except (TypeError, ValueError):
                log.warning("Ignoring queue.max_polecats: invalid integer %r", queue["max_polecats"])
        if queue.get("batch_size") is not None:
            try:
                cap.batch_size = max(1, int(queue["batch_size"]))
            except (TypeError, ValueError):
                log.warning("Ignoring queue.batch_size: invalid integer %r", queue["batch_size"])
        if queue.get("spawn_delay") is not None:
            try:
                cap.spawn_delay = parse_duration(queue["spawn_delay"])
            except ValueError as e:
                log.warning("Ignoring queue.spawn_delay: %s", e)

    if batch_override > 0:
        cap.batch_size = batch_override
    if max_override > 0:
        cap.max_polecats = max_override
    return cap


def admission_count(max_polecats: int, active: int, batch_size: int, ready: int) -> int:
    """How many ready beads may be dispatched this cycle."""
    limit = min(batch_size, ready)
    if max_polecats > 0:
        limit = min(limit, max(0, max_polecats - active))
    return max(0, limit)
