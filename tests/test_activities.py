"""Tests for the bd / gt / tmux collaborators, with subprocess stubbed out."""

import json
import subprocess

import pytest

from activities import bd as bd_module
from activities import sessions as sessions_module
from activities import sling as sling_module
from activities.bd import BdStore
from activities.formulas import FormulaCatalog
from activities.sessions import TmuxSessionRegistry, parse_session_name
from activities.sling import RigNotifier, SlingRunner, build_sling_args
from features.queue.errors import FormulaInvalidError, StoreUnavailableError
from models.schemas import SessionRole, SlingParams


class Recorder:
    """Stand-in for subprocess.run returning queued CompletedProcess results."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        result = self.results.pop(0) if self.results else (0, "", "")
        if isinstance(result, Exception):
            raise result
        code, out, err = result
        return subprocess.CompletedProcess(cmd, code, stdout=out, stderr=err)


# ── Sessions ─────────────────────────────────────────────────────────

class TestSessionNames:
    @pytest.mark.parametrize("name,role,rig,who", [
        ("hq-mayor", SessionRole.MAYOR, "", ""),
        ("hq-deacon", SessionRole.DEACON, "", ""),
        ("gt-gastown-witness", SessionRole.WITNESS, "gastown", ""),
        ("gt-gastown-refinery", SessionRole.REFINERY, "gastown", ""),
        ("gt-gastown-crew-max", SessionRole.CREW, "gastown", "max"),
        ("gt-gastown-nux", SessionRole.POLECAT, "gastown", "nux"),
        ("gt-my-rig-toast", SessionRole.POLECAT, "my-rig", "toast"),
    ])
    def test_parse(self, name, role, rig, who):
        identity = parse_session_name(name)
        assert (identity.role, identity.rig, identity.name) == (role, rig, who)

    @pytest.mark.parametrize("name", ["main", "hq-other", "gt-", "gt-solo"])
    def test_not_agent_sessions(self, name):
        assert parse_session_name(name) is None

    def test_count_active_polecats(self, monkeypatch):
        tmux = Recorder((0, "hq-mayor\ngt-gastown-witness\ngt-gastown-nux\ngt-beads-toast\nscratch\n", ""))
        monkeypatch.setattr(sessions_module.subprocess, "run", tmux)
        assert TmuxSessionRegistry().count_active_polecats() == 2

    def test_no_tmux_server(self, monkeypatch):
        monkeypatch.setattr(sessions_module.subprocess, "run", Recorder((1, "", "no server running")))
        assert TmuxSessionRegistry().count_active_polecats() == 0


# ── bd store ─────────────────────────────────────────────────────────

class TestBdStore:
    def test_list_labeled_runs_in_partition(self, monkeypatch, tmp_path):
        rec = Recorder((0, json.dumps([{"id": "gt-1", "status": "open"}]), ""))
        monkeypatch.setattr(bd_module.subprocess, "run", rec)
        rows = BdStore(tmp_path, binary="bd").list_labeled("gt:queued", cwd=tmp_path / "gastown")
        assert rows == [{"id": "gt-1", "status": "open"}]
        cmd, kwargs = rec.calls[0]
        assert cmd[:2] == ["bd", "list"]
        assert "--label=gt:queued" in cmd
        assert kwargs["cwd"] == str(tmp_path / "gastown")

    def test_failure_raises_store_unavailable(self, monkeypatch, tmp_path):
        monkeypatch.setattr(bd_module.subprocess, "run", Recorder((1, "", "database is locked")))
        with pytest.raises(StoreUnavailableError, match="locked"):
            BdStore(tmp_path).ready_labeled("gt:queued")

    def test_missing_binary(self, monkeypatch, tmp_path):
        monkeypatch.setattr(bd_module.subprocess, "run", Recorder(FileNotFoundError("bd")))
        with pytest.raises(StoreUnavailableError):
            BdStore(tmp_path).list_labeled("gt:queued")

    def test_show_not_found(self, monkeypatch, tmp_path):
        monkeypatch.setattr(bd_module.subprocess, "run", Recorder((1, "", "Error: issue gt-x not found")))
        assert BdStore(tmp_path).show("gt-x") is None

    def test_show_parses_list_output(self, monkeypatch, tmp_path):
        payload = [{"id": "gt-1", "title": "T", "status": "hooked", "type": "epic", "labels": ["gt:queued"]}]
        monkeypatch.setattr(bd_module.subprocess, "run", Recorder((0, json.dumps(payload), "")))
        info = BdStore(tmp_path).show("gt-1")
        assert (info.status, info.issue_type, info.labels) == ("hooked", "epic", ["gt:queued"])

    def test_dep_list_empty_exit(self, monkeypatch, tmp_path):
        monkeypatch.setattr(bd_module.subprocess, "run", Recorder((1, "", "")))
        assert BdStore(tmp_path).dep_list("hq-cv-1", "down", "tracks") == []

    def test_update_labels_single_call(self, monkeypatch, tmp_path):
        rec = Recorder()
        monkeypatch.setattr(bd_module.subprocess, "run", rec)
        store = BdStore(tmp_path, binary="bd")
        store.update_labels("gt-1", add=["gt:queue-dispatched"], remove=["gt:queued"])
        store.update_labels("gt-1")
        assert len(rec.calls) == 1
        assert rec.calls[0][0] == [
            "bd", "update", "gt-1", "--add-label=gt:queue-dispatched", "--remove-label=gt:queued",
        ]

    def test_create_returns_id(self, monkeypatch, tmp_path):
        monkeypatch.setattr(bd_module.subprocess, "run", Recorder((0, '{"id": "hq-cv-7"}', "")))
        assert BdStore(tmp_path).create("Work: x", "convoy", labels=["gt:convoy"]) == "hq-cv-7"


class TestFormulaCatalog:
    def test_exists(self, monkeypatch, tmp_path):
        monkeypatch.setattr(bd_module.subprocess, "run", Recorder((0, "{}", ""), (1, "", "not found")))
        catalog = FormulaCatalog(BdStore(tmp_path))
        assert catalog.exists("mol-polecat-work") is True
        assert catalog.exists("mol-nope") is False

    def test_cook_failure(self, monkeypatch, tmp_path):
        rec = Recorder((1, "", "missing variable: issue"))
        monkeypatch.setattr(bd_module.subprocess, "run", rec)
        with pytest.raises(FormulaInvalidError, match="missing variable"):
            FormulaCatalog(BdStore(tmp_path, binary="bd")).cook("mol-review", "gt-1", ["x=y"])
        assert rec.calls[0][0] == ["bd", "cook", "mol-review", "--dry-run", "--var=issue=gt-1", "--var=x=y"]


# ── Sling ────────────────────────────────────────────────────────────

class TestSling:
    def test_build_args(self):
        params = SlingParams(
            bead_id="gt-1", rig="gastown", formula="mol-review", vars=["a=1"],
            merge="mr", owned=True, agent="codex",
        )
        assert build_sling_args(params) == [
            "sling", "gt-1", "gastown", "--formula=mol-review", "--var=a=1",
            "--merge=mr", "--owned", "--agent=codex", "--no-convoy", "--no-boot",
        ]

    def test_raw_hook_omits_formula(self):
        params = SlingParams(bead_id="gt-1", rig="gastown", formula="ignored", hook_raw_bead=True)
        args = build_sling_args(params)
        assert "--hook-raw-bead" in args
        assert not any(a.startswith("--formula") for a in args)

    def test_runner_sets_context_env(self, monkeypatch, tmp_path):
        rec = Recorder((0, "spawned nux", ""))
        monkeypatch.setattr(sling_module.subprocess, "run", rec)
        result = SlingRunner(binary="gt").run(
            SlingParams(bead_id="gt-1", rig="gastown", context="queue-dispatch"), tmp_path,
        )
        assert result.ok is True
        assert rec.calls[0][1]["env"]["GT_SLING_CONTEXT"] == "queue-dispatch"

    def test_runner_failure_message(self, monkeypatch, tmp_path):
        monkeypatch.setattr(sling_module.subprocess, "run", Recorder((1, "", "warming up\nrig is parked")))
        result = SlingRunner().run(SlingParams(bead_id="gt-1", rig="gastown"), tmp_path)
        assert result.ok is False
        assert result.message == "rig is parked"

    def test_runner_timeout(self, monkeypatch, tmp_path):
        monkeypatch.setattr(sling_module.subprocess, "run", Recorder(subprocess.TimeoutExpired("gt", 5)))
        result = SlingRunner(timeout=5).run(SlingParams(bead_id="gt-1", rig="gastown"), tmp_path)
        assert result.ok is False
        assert "timed out" in result.message

    def test_notifier_nudges_witness(self, monkeypatch, tmp_path):
        rec = Recorder()
        monkeypatch.setattr(sling_module.subprocess, "run", rec)
        RigNotifier(binary="gt").notify("gastown", 2, tmp_path)
        assert rec.calls[0][0][:3] == ["gt", "nudge", "gastown/witness"]
