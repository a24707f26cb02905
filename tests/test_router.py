"""Tests for target-type detection and batch / convoy / epic routing."""

import pytest

from features.queue.errors import BatchEnqueueError, GuardRejectedError, NotFoundError
from features.queue.labels import QUEUED
from features.queue.metadata import parse_metadata
from features.queue.models import EnqueueOptions, TargetType
from features.queue.router import (
    SKIP_ASSIGNED,
    SKIP_CLOSED,
    SKIP_NO_RIG,
    SKIP_QUEUED,
    changed_task_only_options,
    detect_id_type,
    enqueue_targets,
)


def _meta(store, bead_id):
    return parse_metadata(store.beads[bead_id]["description"])


# ── Detection ────────────────────────────────────────────────────────

class TestDetectType:
    def test_convoy_prefix_needs_no_lookup(self, svc):
        assert detect_id_type(svc, "hq-cv-abc") == TargetType.CONVOY

    def test_issue_type(self, svc, store):
        store.add("gt-epic-1", issue_type="epic")
        assert detect_id_type(svc, "gt-epic-1") == TargetType.EPIC

    def test_type_label(self, svc, store):
        store.add("hq-42", issue_type="task", labels=["gt:convoy"])
        assert detect_id_type(svc, "hq-42") == TargetType.CONVOY

    def test_plain_task(self, svc, store):
        store.add("gt-abc")
        assert detect_id_type(svc, "gt-abc") == TargetType.TASK

    def test_unknown_id(self, svc):
        with pytest.raises(NotFoundError):
            detect_id_type(svc, "gt-missing")


# ── Task beads ───────────────────────────────────────────────────────

class TestTasks:
    def test_single_bead_rig_from_prefix(self, svc, store):
        store.add("gt-abc")
        result = enqueue_targets(svc, ["gt-abc"], EnqueueOptions())
        assert result.queued == ["gt-abc"]
        assert _meta(store, "gt-abc").target_rig == "gastown"

    def test_explicit_rig_with_trailing_slash(self, svc, store):
        store.add("gt-abc")
        result = enqueue_targets(svc, ["gt-abc", "gastown/"], EnqueueOptions())
        assert result.queued == ["gt-abc"]

    def test_single_bead_errors_propagate(self, svc, store):
        store.add("bd-xyz")
        with pytest.raises(GuardRejectedError):
            enqueue_targets(svc, ["bd-xyz", "gastown"], EnqueueOptions())

    def test_unresolvable_prefix(self, svc, store):
        store.add("zz-abc")
        with pytest.raises(NotFoundError):
            enqueue_targets(svc, ["zz-abc"], EnqueueOptions())

    def test_already_queued_is_reported_as_skip(self, svc, store):
        store.add_queued("gt-abc", "gastown")
        result = enqueue_targets(svc, ["gt-abc"], EnqueueOptions())
        assert result.queued == []
        assert result.skipped == {SKIP_QUEUED: 1}

    def test_batch_routes_each_bead(self, svc, store):
        for bead_id in ("gt-1", "gt-2", "bd-1"):
            store.add(bead_id)
        result = enqueue_targets(svc, ["gt-1", "gt-2", "bd-1"], EnqueueOptions(no_convoy=True))
        assert result.queued == ["gt-1", "gt-2", "bd-1"]
        assert _meta(store, "bd-1").target_rig == "beads"

    def test_batch_records_partial_failures(self, svc, store):
        store.add("gt-1")
        store.add("gt-2", status="closed")
        result = enqueue_targets(svc, ["gt-1", "gt-2"], EnqueueOptions(no_convoy=True))
        assert result.queued == ["gt-1"]
        assert list(result.failed) == ["gt-2"]

    def test_batch_all_failed(self, svc, store):
        store.add("gt-1", status="closed")
        store.add("gt-2", status="tombstone")
        with pytest.raises(BatchEnqueueError) as exc:
            enqueue_targets(svc, ["gt-1", "gt-2"], EnqueueOptions())
        assert set(exc.value.failures) == {"gt-1", "gt-2"}

    def test_mixed_types_rejected(self, svc, store):
        store.add("gt-1")
        store.add("gt-epic", issue_type="epic")
        with pytest.raises(GuardRejectedError, match="mixed"):
            enqueue_targets(svc, ["gt-1", "gt-epic"], EnqueueOptions())
        assert store.label_calls == []

    def test_dry_run_batch(self, svc, store):
        store.add("gt-1")
        store.add("gt-2")
        result = enqueue_targets(svc, ["gt-1", "gt-2"], EnqueueOptions(dry_run=True))
        assert result.would_queue == ["gt-1", "gt-2"]
        assert result.queued == []

    def test_nothing_to_queue(self, svc):
        with pytest.raises(GuardRejectedError):
            enqueue_targets(svc, [], EnqueueOptions())


class TestFormulaOnBead:
    def test_formula_applied_to_bead(self, svc, store):
        store.add("gt-abc")
        result = enqueue_targets(svc, ["mol-review"], EnqueueOptions(), on="gt-abc")
        assert result.queued == ["gt-abc"]
        assert _meta(store, "gt-abc").formula == "mol-review"

    def test_conflicting_formula_rejected(self, svc, store):
        store.add("gt-abc")
        with pytest.raises(GuardRejectedError):
            enqueue_targets(svc, ["mol-review"], EnqueueOptions(formula="mol-x"), on="gt-abc")

    def test_bad_rig_argument(self, svc, store):
        store.add("gt-abc")
        with pytest.raises(GuardRejectedError):
            enqueue_targets(svc, ["mol-review", "nowhere"], EnqueueOptions(), on="gt-abc")


# ── Convoys and epics ────────────────────────────────────────────────

@pytest.fixture()
def convoy(store):
    store.add("hq-cv-1", issue_type="convoy", labels=["gt:convoy"])
    store.add("gt-1")
    store.add("gt-2", status="closed")
    store.add("gt-3", assignee="gastown/polecats/nux")
    store.add_queued("gt-4", "gastown")
    store.add("zz-5")
    store.add("bd-6")
    for member in ("gt-1", "gt-2", "gt-3", "gt-4", "zz-5", "bd-6"):
        store.add_dep("hq-cv-1", member, "tracks")
    return "hq-cv-1"


class TestConvoy:
    def test_fan_out_filters_members(self, svc, store, convoy):
        result = enqueue_targets(svc, [convoy], EnqueueOptions())
        assert result.queued == ["gt-1", "bd-6"]
        assert result.skipped == {SKIP_CLOSED: 1, SKIP_ASSIGNED: 1, SKIP_QUEUED: 1, SKIP_NO_RIG: 1}

    def test_members_point_back_at_convoy(self, svc, store, convoy):
        enqueue_targets(svc, [convoy], EnqueueOptions())
        assert _meta(store, "gt-1").convoy == convoy
        assert not any(dep_type == "tracks" and from_id != convoy for from_id, _, dep_type in store.deps)

    def test_force_includes_assigned(self, svc, store, convoy):
        result = enqueue_targets(svc, [convoy], EnqueueOptions(force=True))
        assert "gt-3" in result.queued

    def test_task_only_options_rejected(self, svc, convoy):
        with pytest.raises(GuardRejectedError, match="merge"):
            enqueue_targets(svc, [convoy], EnqueueOptions(merge="mr"))

    def test_single_id_only(self, svc, store, convoy):
        with pytest.raises(GuardRejectedError):
            enqueue_targets(svc, [convoy, "gt-1"], EnqueueOptions())

    def test_all_members_failing(self, svc, store, convoy):
        svc.formulas.broken.add("mol-polecat-work")
        with pytest.raises(BatchEnqueueError) as exc:
            enqueue_targets(svc, [convoy], EnqueueOptions())
        assert set(exc.value.failures) == {"gt-1", "bd-6"}

    def test_empty_convoy(self, svc, store):
        store.add("hq-cv-9", issue_type="convoy")
        result = enqueue_targets(svc, ["hq-cv-9"], EnqueueOptions())
        assert result.queued == []
        assert result.failed == {}

    def test_missing_convoy(self, svc):
        with pytest.raises(NotFoundError):
            enqueue_targets(svc, ["hq-cv-404"], EnqueueOptions())


class TestEpic:
    def test_fan_out_children(self, svc, store):
        store.add("gt-epic", issue_type="epic")
        store.add("gt-1")
        store.add("gt-2", status="tombstone")
        store.add_dep("gt-epic", "gt-1", "depends_on")
        store.add_dep("gt-epic", "gt-2", "depends_on")

        result = enqueue_targets(svc, ["gt-epic"], EnqueueOptions())

        assert result.queued == ["gt-1"]
        assert result.skipped == {SKIP_CLOSED: 1}
        assert QUEUED in store.beads["gt-1"]["labels"]

    def test_epic_label(self, svc, store):
        store.add("gt-big", labels=["gt:epic"])
        store.add("gt-1")
        store.add_dep("gt-big", "gt-1", "depends_on")
        assert enqueue_targets(svc, ["gt-big"], EnqueueOptions(dry_run=True)).would_queue == ["gt-1"]


def test_changed_task_only_options():
    assert changed_task_only_options(EnqueueOptions()) == []
    assert changed_task_only_options(EnqueueOptions(owned=True, vars=["a=b"])) == ["vars", "owned"]
    assert changed_task_only_options(EnqueueOptions(force=True, formula="x")) == []
