"""
Activity: Issue store — thin wrapper around the ``bd`` CLI.

bd is CWD-scoped: list/ready queries only see the database of the
directory they run in, while single-bead commands are routed by prefix
from the town root.
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Iterable

import config
from features.queue.errors import StoreUnavailableError
from models.schemas import BeadInfo

log = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("not found", "no issue", "does not exist")


class BdStore:
    """Issue-store operations the queue needs, executed via bd."""

    def __init__(self, town_root: Path | str, binary: str | None = None, timeout: float | None = None):
        self.town_root = Path(town_root)
        self.binary = binary or config.BD_BIN
        self.timeout = timeout or config.STORE_TIMEOUT

    # ── Plumbing ──────────────────────────────────────────────────────

    def run(self, args: list[str], cwd: Path | str | None = None) -> subprocess.CompletedProcess:
        """Run a bd command; raises StoreUnavailableError if bd cannot be executed."""
        try:
            return subprocess.run(
                [self.binary, *args],
                capture_output=True,
                text=True,
                cwd=str(cwd or self.town_root),
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise StoreUnavailableError(f"bd binary not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise StoreUnavailableError(f"bd {args[0]} timed out after {self.timeout:.0f}s") from e

    def _check(self, args: list[str], cwd: Path | str | None = None) -> str:
        result = self.run(args, cwd)
        if result.returncode != 0:
            raise StoreUnavailableError(
                f"bd {' '.join(args[:2])} failed: {result.stderr.strip() or result.stdout.strip()}"
            )
        return result.stdout

    def _json(self, args: list[str], cwd: Path | str | None = None) -> list[dict]:
        out = self._check(args, cwd).strip()
        if not out:
            return []
        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise StoreUnavailableError(f"bd {args[0]} returned invalid JSON: {e}") from e
        if isinstance(data, dict):
            return [data]
        return [d for d in data or [] if isinstance(d, dict)]

    # ── Queries ───────────────────────────────────────────────────────

    def list_labeled(self, label: str, cwd: Path | str | None = None) -> list[dict]:
        """All beads carrying label in the database at cwd."""
        return self._json(["list", f"--label={label}", "--json", "--limit=0"], cwd)

    def ready_labeled(self, label: str, cwd: Path | str | None = None) -> list[dict]:
        """Unblocked beads carrying label in the database at cwd."""
        return self._json(["ready", "--label", label, "--json", "--limit=0"], cwd)

    def show(self, bead_id: str, cwd: Path | str | None = None) -> BeadInfo | None:
        """Full record for bead_id, or None if bd does not know it."""
        result = self.run(["show", bead_id, "--json"], cwd)
        if result.returncode != 0:
            err = (result.stderr or result.stdout).lower()
            if any(marker in err for marker in _NOT_FOUND_MARKERS):
                return None
            raise StoreUnavailableError(f"bd show {bead_id} failed: {result.stderr.strip()}")
        out = result.stdout.strip()
        if not out:
            return None
        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise StoreUnavailableError(f"bd show {bead_id} returned invalid JSON: {e}") from e
        if isinstance(data, list):
            if not data:
                return None
            data = data[0]
        info = BeadInfo.from_json(data)
        if not info.id:
            info.id = bead_id
        return info

    def dep_list(self, bead_id: str, direction: str, dep_type: str,
                 cwd: Path | str | None = None) -> list[dict]:
        """Dependency edges of bead_id. bd exits non-zero with no output when there are none."""
        args = ["dep", "list", bead_id, f"--direction={direction}", f"--type={dep_type}", "--json"]
        result = self.run(args, cwd)
        if result.returncode != 0:
            if not result.stdout.strip() and not result.stderr.strip():
                return []
            raise StoreUnavailableError(f"bd dep list {bead_id} failed: {result.stderr.strip()}")
        out = result.stdout.strip()
        if not out:
            return []
        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise StoreUnavailableError(f"parsing dependency list for {bead_id}: {e}") from e
        return [d for d in data or [] if isinstance(d, dict)]

    # ── Mutations ─────────────────────────────────────────────────────

    def update_description(self, bead_id: str, description: str) -> None:
        self._check(["update", bead_id, f"--description={description}"])

    def update_labels(self, bead_id: str, add: Iterable[str] = (), remove: Iterable[str] = ()) -> None:
        """Add and remove labels in a single bd update call."""
        args = ["update", bead_id]
        args += [f"--add-label={label}" for label in add]
        args += [f"--remove-label={label}" for label in remove]
        if len(args) == 2:
            return
        self._check(args)

    def create(self, title: str, issue_type: str, description: str = "",
               labels: Iterable[str] = (), cwd: Path | str | None = None) -> str:
        """Create a bead and return its ID."""
        args = ["create", f"--title={title}", f"--type={issue_type}",
                f"--description={description}", "--json"]
        labels = list(labels)
        if labels:
            args.append(f"--labels={','.join(labels)}")
        records = self._json(args, cwd)
        if not records or not records[0].get("id"):
            raise StoreUnavailableError(f"bd create returned no ID for {title!r}")
        return str(records[0]["id"])

    def dep_add(self, from_id: str, to_id: str, dep_type: str, cwd: Path | str | None = None) -> None:
        self._check(["dep", "add", from_id, to_id, f"--type={dep_type}"], cwd)
