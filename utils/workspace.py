"""
Town workspace helpers — town-root discovery, prefix routing, actor detection.

A town root is marked by ``mayor/town.json``. Bead prefixes are routed to
rigs through ``<town>/.beads/routes.jsonl``:

    {"prefix": "gt-", "path": "gastown/mayor/rig"}
    {"prefix": "hq-", "path": "."}
"""

from __future__ import annotations

import getpass
import json
import logging
import os
from pathlib import Path

import config

log = logging.getLogger(__name__)

TOWN_MARKER = Path("mayor") / "town.json"
ROUTES_FILE = Path(".beads") / "routes.jsonl"
NON_RIG_DIRS = {"mayor", "settings"}


class WorkspaceNotFoundError(Exception):
    """No town root above the working directory."""


def find_town_root(start: Path | str | None = None) -> Path:
    """Return the town root, from GT_TOWN_ROOT or by walking up from start."""
    if config.TOWN_ROOT:
        root = Path(config.TOWN_ROOT).resolve()
        if not root.is_dir():
            raise WorkspaceNotFoundError(f"GT_TOWN_ROOT does not exist: {root}")
        return root

    current = Path(start or os.getcwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / TOWN_MARKER).is_file():
            return candidate
    raise WorkspaceNotFoundError(f"not in a Gas Town workspace (no {TOWN_MARKER} above {current})")


def extract_prefix(bead_id: str) -> str:
    """'gt-abc' → 'gt-'; IDs without a hyphen have no prefix."""
    idx = bead_id.find("-")
    if idx <= 0:
        return ""
    return bead_id[: idx + 1]


def load_routes(town_root: Path | str) -> dict[str, str]:
    """Read prefix → path routes. Missing or malformed lines are skipped."""
    path = Path(town_root) / ROUTES_FILE
    routes: dict[str, str] = {}
    if not path.is_file():
        return routes
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                log.debug("Skipping malformed route line: %s", line)
                continue
            prefix = entry.get("prefix")
            route_path = entry.get("path")
            if prefix and route_path:
                routes[prefix] = route_path
    return routes


def resolve_rig_for_bead(town_root: Path | str, bead_id: str) -> str:
    """Rig name owning bead_id's prefix, or '' for town-level/unknown prefixes."""
    prefix = extract_prefix(bead_id)
    if not prefix:
        return ""
    route_path = load_routes(town_root).get(prefix, "")
    if not route_path or route_path in (".", "./"):
        return ""
    return Path(route_path).parts[0]


def resolve_bead_dir(town_root: Path | str, bead_id: str) -> Path:
    """Directory whose bd database owns bead_id (town root when unrouted)."""
    route_path = load_routes(town_root).get(extract_prefix(bead_id), "")
    if not route_path or route_path in (".", "./"):
        return Path(town_root)
    return Path(town_root) / route_path


def is_rig_name(town_root: Path | str, name: str) -> tuple[str, bool]:
    """Check whether name (trailing slash tolerated) is a rig in this town."""
    name = name.rstrip("/")
    if not name or name.startswith(".") or name in NON_RIG_DIRS or "/" in name:
        return name, False
    rig_dir = Path(town_root) / name
    if not rig_dir.is_dir():
        return name, False
    for marker in (".beads", "mayor/rig/.beads", "config.json"):
        if (rig_dir / marker).exists():
            return name, True
    return name, False


def detect_actor() -> str:
    """Best-effort identity of whoever is driving the queue."""
    for var in ("BD_ACTOR", "GT_ROLE"):
        value = os.getenv(var)
        if value:
            return value
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"
