"""Shared fixtures: a throwaway town on disk plus in-memory collaborators."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import config
from activities.convoys import ConvoyTracker
from features.queue.audit import QueueAuditLog
from features.queue.errors import FormulaInvalidError, StoreUnavailableError
from features.queue.labels import QUEUED
from features.queue.metadata import with_metadata
from features.queue.models import QueueMetadata
from features.queue.services import QueueServices
from models.schemas import BeadInfo, SlingResult
from utils.workspace import resolve_bead_dir

ROUTES = [
    {"prefix": "gt-", "path": "gastown"},
    {"prefix": "bd-", "path": "beads"},
    {"prefix": "hq-", "path": "."},
]


class FakeStore:
    """In-memory issue store partitioned by bead directory, like bd."""

    def __init__(self, town_root: Path):
        self.town_root = town_root
        self.beads: dict[str, dict] = {}
        self.deps: list[tuple[str, str, str]] = []  # (from, to, type)
        self.failing_dirs: set[Path] = set()
        self.fail_update_labels = False
        self.label_calls: list[tuple[str, tuple, tuple]] = []
        self._next_id = 0

    # ── Fixtures ──────────────────────────────────────────────────────

    def add(self, bead_id: str, title: str = "", status: str = "open", labels=(),
            description: str = "", assignee: str = "", issue_type: str = "task",
            blocked: bool = False) -> dict:
        bead = {
            "id": bead_id,
            "title": title or f"Title of {bead_id}",
            "status": status,
            "labels": list(labels),
            "description": description,
            "assignee": assignee,
            "issue_type": issue_type,
            "blocked": blocked,
            "dir": resolve_bead_dir(self.town_root, bead_id).resolve(),
        }
        self.beads[bead_id] = bead
        return bead

    def add_queued(self, bead_id: str, rig: str, failures: int = 0, blocked: bool = False,
                   description: str = "Fix the thing", **kwargs) -> dict:
        meta = QueueMetadata(
            target_rig=rig,
            formula="mol-polecat-work",
            enqueued_at="2026-01-01T00:00:00+00:00",
            dispatch_failures=failures,
        )
        return self.add(
            bead_id,
            labels=[QUEUED],
            description=with_metadata(description, meta),
            blocked=blocked,
            **kwargs,
        )

    def add_dep(self, from_id: str, to_id: str, dep_type: str) -> None:
        self.deps.append((from_id, to_id, dep_type))

    # ── Queries ───────────────────────────────────────────────────────

    def _in_dir(self, label: str, cwd) -> list[dict]:
        d = Path(cwd or self.town_root).resolve()
        if d in self.failing_dirs:
            raise StoreUnavailableError(f"database locked in {d}")
        return [b for b in self.beads.values() if b["dir"] == d and label in b["labels"]]

    @staticmethod
    def _record(bead: dict) -> dict:
        return {k: v for k, v in bead.items() if k not in ("dir", "blocked")}

    def list_labeled(self, label: str, cwd=None) -> list[dict]:
        return [self._record(b) for b in self._in_dir(label, cwd)]

    def ready_labeled(self, label: str, cwd=None) -> list[dict]:
        return [
            self._record(b) for b in self._in_dir(label, cwd)
            if not b["blocked"] and b["status"] == "open"
        ]

    def show(self, bead_id: str, cwd=None) -> BeadInfo | None:
        bead = self.beads.get(bead_id)
        if bead is None:
            return None
        return BeadInfo.from_json(self._record(bead))

    def dep_list(self, bead_id: str, direction: str, dep_type: str, cwd=None) -> list[dict]:
        out = []
        for from_id, to_id, t in self.deps:
            if t != dep_type:
                continue
            if direction == "down" and from_id == bead_id:
                other = to_id
            elif direction == "up" and to_id == bead_id:
                other = from_id
            else:
                continue
            bead = self.beads.get(other, {"id": other, "status": "open"})
            out.append({"id": other, "status": bead["status"]})
        return out

    # ── Mutations ─────────────────────────────────────────────────────

    def update_description(self, bead_id: str, description: str) -> None:
        self.beads[bead_id]["description"] = description

    def update_labels(self, bead_id: str, add=(), remove=()) -> None:
        if self.fail_update_labels:
            raise StoreUnavailableError("bd update failed: database is locked")
        self.label_calls.append((bead_id, tuple(add), tuple(remove)))
        labels = self.beads[bead_id]["labels"]
        for label in remove:
            if label in labels:
                labels.remove(label)
        for label in add:
            if label not in labels:
                labels.append(label)

    def create(self, title: str, issue_type: str, description: str = "", labels=(), cwd=None) -> str:
        self._next_id += 1
        bead_id = f"hq-cv-{self._next_id:03d}"
        self.add(bead_id, title=title, labels=labels, description=description, issue_type=issue_type)
        return bead_id

    def dep_add(self, from_id: str, to_id: str, dep_type: str, cwd=None) -> None:
        self.add_dep(from_id, to_id, dep_type)


class FakeFormulas:
    def __init__(self, known=("mol-polecat-work", "mol-review"), broken=()):
        self.known = set(known)
        self.broken = set(broken)
        self.cooked: list[tuple[str, str]] = []

    def exists(self, name: str) -> bool:
        return name in self.known

    def cook(self, name: str, bead_id: str, variables=None) -> None:
        if name in self.broken:
            raise FormulaInvalidError(f"formula {name} failed to cook for {bead_id}")
        self.cooked.append((name, bead_id))


class FakeRunner:
    """Sling stand-in; beads listed in failing are rejected."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def run(self, params, town_root) -> SlingResult:
        self.calls.append(params)
        if params.bead_id in self.failing:
            return SlingResult(ok=False, message="polecat spawn failed")
        return SlingResult(ok=True, message=f"slung {params.bead_id}")


class FakeSessions:
    def __init__(self, active: int = 0):
        self.active = active

    def count_active_polecats(self) -> int:
        return self.active


class FakeNotifier:
    def __init__(self):
        self.notified: list[tuple[str, int]] = []

    def notify(self, rig: str, count: int, town_root) -> None:
        self.notified.append((rig, count))


@pytest.fixture(autouse=True)
def queue_defaults(monkeypatch):
    """Pin env-derived defaults so the host environment cannot leak in."""
    monkeypatch.setattr(config, "TOWN_ROOT", "")
    monkeypatch.setattr(config, "DATABASE_URL", "")
    monkeypatch.setattr(config, "TEMPORAL_HOST", "")
    monkeypatch.setattr(config, "QUEUE_ENABLED", True)
    monkeypatch.setattr(config, "QUEUE_MAX_POLECATS", 10)
    monkeypatch.setattr(config, "QUEUE_BATCH_SIZE", 3)
    monkeypatch.setattr(config, "QUEUE_SPAWN_DELAY", 2.0)
    monkeypatch.setattr(config, "DEFAULT_FORMULA", "mol-polecat-work")


@pytest.fixture()
def town(tmp_path: Path) -> Path:
    """Town with rigs gastown (gt-) and beads (bd-); hq- routes to the root."""
    root = tmp_path / "town"
    (root / "mayor").mkdir(parents=True)
    (root / "mayor" / "town.json").write_text('{"name": "test"}\n', encoding="utf-8")
    (root / ".beads").mkdir()
    (root / ".beads" / "routes.jsonl").write_text(
        "".join(json.dumps(r) + "\n" for r in ROUTES), encoding="utf-8"
    )
    for rig in ("gastown", "beads"):
        (root / rig / ".beads").mkdir(parents=True)
    return root


@pytest.fixture()
def write_settings(town: Path):
    """Write the town's settings/config.json "queue" section."""
    def _write(queue: dict) -> None:
        path = town / "settings" / "config.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"queue": queue}), encoding="utf-8")
    return _write


@pytest.fixture()
def store(town: Path) -> FakeStore:
    return FakeStore(town)


@pytest.fixture()
def sleeps() -> list:
    return []


@pytest.fixture()
def svc(town: Path, store: FakeStore, sleeps: list) -> QueueServices:
    return QueueServices(
        town_root=town,
        store=store,
        formulas=FakeFormulas(),
        convoys=ConvoyTracker(store, town),
        runner=FakeRunner(),
        sessions=FakeSessions(),
        notifier=FakeNotifier(),
        audit=QueueAuditLog(actor="tester", persist=False),
        sleep=sleeps.append,
    )
