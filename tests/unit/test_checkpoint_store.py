"""Tests for the checkpoint store."""

import pytest
from conftest import DEFAULT_UNITS, ROOT_UNIT, START_NS, FakeBackend

from checkpoint_migrator.checkpoint.models import GroupRef
from checkpoint_migrator.checkpoint.store import CheckpointStore
from checkpoint_migrator.exceptions import (
    CheckpointFailure,
    CheckpointInUseError,
    RollbackFailure,
)

LABEL = "before-upgrade-to-25.04"


class TestCreate:
    """Tests for creating checkpoint groups."""

    def test_create_captures_every_unit(self, store, backend):
        group = store.create(LABEL, phase="PACKAGES_UPGRADED", run_id="run-1")

        assert [u.path for u in group.units] == sorted(DEFAULT_UNITS)
        assert group.consistent
        assert {cp.created_at for cp in group.checkpoints} == {group.created_at}
        assert all(cp.complete for cp in backend.checkpoints)
        assert group.phase == "PACKAGES_UPGRADED"
        assert group.run_id == "run-1"

    def test_display_name_carries_label_and_timestamp(self, store):
        group = store.create(LABEL)
        name = group.checkpoints[0].name
        assert name.startswith(f"{LABEL}-")
        assert len(name) == len(LABEL) + len("-20250101-120000")

    def test_partial_failure_leaves_no_group(self, store, backend):
        """A capture failing on the fourth unit destroys the first three."""
        backend.fail_capture_on = {"rpool/home/root"}

        with pytest.raises(CheckpointFailure) as exc_info:
            store.create(LABEL)

        assert exc_info.value.details["captured"] == 3
        assert exc_info.value.details["total"] == 4
        assert exc_info.value.details["leftover"] == []
        assert [g for g in store.list() if g.label == LABEL] == []
        assert backend.checkpoints == []

    def test_compensation_failure_is_reported(self, store, backend):
        backend.fail_capture_on = {"rpool/home/root"}
        backend.fail_destroy_on = {"rpool/ROOT"}

        with pytest.raises(CheckpointFailure) as exc_info:
            store.create(LABEL)

        leftover = exc_info.value.details["leftover"]
        assert len(leftover) == 1
        assert leftover[0].startswith("rpool/ROOT@")
        # the survivor forms an inconsistent group that is never a candidate
        groups = store.list()
        assert len(groups) == 1
        assert not groups[0].consistent

    def test_no_units_is_a_failure(self, clock):
        store = CheckpointStore(FakeBackend(units=[]), clock=clock)
        with pytest.raises(CheckpointFailure):
            store.create(LABEL)

    def test_enumeration_failure_is_a_checkpoint_failure(self, store, backend):
        backend.fail_list = True
        with pytest.raises(CheckpointFailure):
            store.create(LABEL)

    def test_timestamps_strictly_increase_on_a_stuck_clock(self, backend):
        store = CheckpointStore(backend, clock=lambda: START_NS)
        first = store.create(LABEL)
        second = store.create(LABEL)

        assert second.created_at == first.created_at + 1
        assert first.ref != second.ref
        assert second.checkpoints[0].name != first.checkpoints[0].name


class TestList:
    """Tests for grouping and ordering."""

    def test_groups_newest_first(self, store):
        """The later dracut group sorts ahead of the upgrade group."""
        older = store.create("before-upgrade-to-25.10")
        newer = store.create("before-dracut-migration")

        assert [g.ref for g in store.list()] == [newer.ref, older.ref]

    def test_unrecognized_labels_are_ignored(self, store, backend):
        store.create("before-rollback")
        store.create("nightly-backup")
        assert store.list() == []

    def test_get_finds_unrecognized_groups(self, store):
        safety = store.create("before-rollback")
        assert store.get(safety.ref) is not None
        assert store.get(GroupRef("before-rollback", 1)) is None

    def test_incomplete_member_makes_group_inconsistent(self, store, backend):
        group = store.create(LABEL)
        backend.corrupt(LABEL, "rpool/home", complete=False)

        listed = store.list()[0]
        assert listed.ref == group.ref
        assert not listed.consistent

    def test_missing_member_makes_group_inconsistent(self, store, backend):
        group = store.create(LABEL)
        backend.destroy(group.checkpoints[0])
        assert not store.list()[0].consistent


class TestRollbackGroup:
    """Tests for rolling a group back."""

    def test_rolls_back_every_member(self, store, backend):
        group = store.create(LABEL)
        report = store.rollback_group(group)

        assert report.success
        assert report.rolled_back == sorted(DEFAULT_UNITS)
        assert report.not_attempted == []

    def test_is_idempotent(self, store):
        group = store.create(LABEL)
        first = store.rollback_group(group)
        second = store.rollback_group(group)
        assert first.rolled_back == second.rolled_back
        assert second.success

    def test_discards_units_created_after_the_group(self, store, backend):
        group = store.create(LABEL)
        later = group.created_at + 10
        backend.add_unit("rpool/home/new", later)
        backend.add_unit("rpool/home/new/child", later)

        report = store.rollback_group(group)

        assert report.discarded == ["rpool/home/new"]
        assert "rpool/home/new" not in backend.units
        assert "rpool/home/new/child" not in backend.units
        assert backend.calls.index(("discard", "rpool/home/new")) < backend.calls.index(
            ("rollback", "rpool/ROOT")
        )

    def test_refuses_uncovered_unit(self, store, backend):
        group = store.create(LABEL)
        backend.add_unit("rpool/home/old", 1)
        backend.calls.clear()

        with pytest.raises(RollbackFailure) as exc_info:
            store.rollback_group(group)

        assert not any(op == "rollback" for op, _ in backend.calls)
        assert exc_info.value.report.rolled_back == []
        assert exc_info.value.report.not_attempted == sorted(DEFAULT_UNITS)

    def test_refuses_missing_unit(self, store, backend):
        group = store.create(LABEL)
        del backend.units["rpool/home/root"]

        with pytest.raises(RollbackFailure):
            store.rollback_group(group)
        assert not any(op == "rollback" for op, _ in backend.calls)

    def test_first_failure_aborts_the_rest(self, store, backend):
        group = store.create(LABEL)
        backend.fail_rollback_on = {ROOT_UNIT}

        with pytest.raises(RollbackFailure) as exc_info:
            store.rollback_group(group)

        report = exc_info.value.report
        assert report.rolled_back == ["rpool/ROOT"]
        assert report.failed == ROOT_UNIT
        assert report.not_attempted == ["rpool/home", "rpool/home/root"]
        assert not report.success
        assert "Untouched" in str(exc_info.value)


class TestDestroy:
    """Tests for destroying groups."""

    def test_destroy_removes_all_members(self, store, backend):
        group = store.create(LABEL)
        store.destroy(group)
        assert backend.checkpoints == []

    def test_protected_group_needs_force(self, store, backend):
        group = store.create(LABEL)

        with pytest.raises(CheckpointInUseError):
            store.destroy(group, protected=group.ref)
        assert len(backend.checkpoints) == len(DEFAULT_UNITS)

        store.destroy(group, protected=group.ref, force=True)
        assert backend.checkpoints == []

    def test_partial_destroy_raises(self, store, backend):
        group = store.create(LABEL)
        backend.fail_destroy_on = {"rpool/home"}

        with pytest.raises(CheckpointFailure) as exc_info:
            store.destroy(group)
        assert len(exc_info.value.details["leftover"]) == 1
