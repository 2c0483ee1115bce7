"""Tests for rollback selection and guarded execution."""

import pytest
from conftest import ROOT_UNIT, approve, decline

from checkpoint_migrator.checkpoint.models import GroupRef
from checkpoint_migrator.core.facts import INIT_GENERATOR_A, INIT_GENERATOR_B
from checkpoint_migrator.core.phase import ErrorKind, Outcome, Phase
from checkpoint_migrator.core.state import MigrationState, PendingOperation
from checkpoint_migrator.exceptions import PreconditionFailure
from checkpoint_migrator.rollback.executor import RollbackExecutor, restored_phase
from checkpoint_migrator.rollback.selector import RollbackSelector, SelectionCriterion


@pytest.fixture
def selector(store):
    return RollbackSelector(store)


@pytest.fixture
def executor(store, collector, state_store, init_images, boot_configurator):
    expected = {
        Phase.PACKAGES_UPGRADED: "24.04",
        Phase.REBOOTED_STEP1: "25.04",
        Phase.REBOOTED_STEP2: "25.10",
    }
    return RollbackExecutor(
        store,
        collector,
        state_store,
        expected_release=expected.get,
        target_release="25.10",
        init_images=init_images,
        boot_configurator=boot_configurator,
    )


class TestSelector:
    """Tests for candidate ordering and selection."""

    def test_no_candidates_is_a_precondition_failure(self, selector):
        with pytest.raises(PreconditionFailure) as exc_info:
            selector.select()
        assert "no consistent checkpoint group" in exc_info.value.failures[0]

    def test_candidates_newest_first(self, store, selector):
        upgrade = store.create("before-upgrade-to-25.10")
        dracut = store.create("before-dracut-migration")

        assert [g.ref for g in selector.candidates()] == [dracut.ref, upgrade.ref]
        assert selector.select().ref == dracut.ref
        assert selector.select(SelectionCriterion(index=1)).ref == upgrade.ref

    def test_inconsistent_groups_are_not_candidates(self, store, backend, selector):
        good = store.create("before-upgrade-to-25.04")
        bad = store.create("before-upgrade-to-25.10")
        backend.corrupt("before-upgrade-to-25.10", "rpool/home", complete=False)

        assert [g.ref for g in selector.candidates()] == [good.ref]
        with pytest.raises(PreconditionFailure) as exc_info:
            selector.select(SelectionCriterion(group=bad.ref))
        assert "inconsistent" in str(exc_info.value)

    def test_unknown_group_and_bad_index(self, store, selector):
        store.create("before-upgrade-to-25.04")
        with pytest.raises(PreconditionFailure):
            selector.select(SelectionCriterion(group=GroupRef("before-upgrade-to-25.04", 5)))
        with pytest.raises(PreconditionFailure):
            selector.select(SelectionCriterion(index=3))
        with pytest.raises(PreconditionFailure):
            selector.select(SelectionCriterion(index=-1))

    def test_criterion_description(self):
        assert SelectionCriterion().describe() == "newest candidate"
        assert SelectionCriterion(index=2).describe() == "candidate #2"


class TestExecutor:
    """Tests for the guarded rollback sequence."""

    def test_restores_recorded_phase(self, store, system, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED", run_id="r1")
        system.release = "25.04"
        state = MigrationState(run_id="r1", current_phase=Phase.REBOOTED_STEP1)

        result = executor.execute(group, state)

        assert result.outcome is Outcome.SUCCESS
        assert result.phase is Phase.PACKAGES_UPGRADED
        assert system.release == "24.04"
        assert state.current_phase is Phase.PACKAGES_UPGRADED
        assert state.last_checkpoint_group == group.ref
        assert state.pending is None
        assert state.run_id != "r1"
        assert state.history[-1].kind == "rollback"
        assert state.history[-1].run_id == "r1"

    def test_safety_group_is_captured_first(self, store, backend, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        backend.calls.clear()

        result = executor.execute(group, MigrationState())

        assert backend.calls[0][0] == "capture"
        first_rollback = next(i for i, c in enumerate(backend.calls) if c[0] == "rollback")
        assert all(op == "capture" for op, _ in backend.calls[:first_rollback])

    def test_safety_group_is_superseded_on_success(self, store, backend, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")

        result = executor.execute(group, MigrationState())

        assert result.outcome is Outcome.SUCCESS
        assert result.safety_group is None
        assert "superseded" in result.message
        assert not any(cp.label == "before-rollback" for cp in backend.checkpoints)

    def test_unknown_phase_becomes_rolled_back(self, store, system, executor):
        group = store.create("before-upgrade-to-25.04")
        system.release = "25.04"

        result = executor.execute(group, MigrationState(current_phase=Phase.REBOOTED_STEP1))

        assert result.phase is Phase.ROLLED_BACK
        assert result.outcome is Outcome.SUCCESS

    def test_safety_checkpoint_failure_touches_nothing(self, store, backend, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        backend.fail_capture_on = {"rpool/home"}
        state = MigrationState(current_phase=Phase.REBOOTED_STEP1)

        result = executor.execute(group, state)

        assert result.outcome is Outcome.FAILURE
        assert result.error_kind is ErrorKind.CHECKPOINT_FAILURE
        assert not any(op == "rollback" for op, _ in backend.calls)
        assert state.current_phase is Phase.REBOOTED_STEP1
        assert state.pending is None

    def test_partial_rollback_keeps_pending_marker(self, store, backend, executor, state_store):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        backend.fail_rollback_on = {ROOT_UNIT}
        state = MigrationState(current_phase=Phase.REBOOTED_STEP1)

        result = executor.execute(group, state)

        assert result.outcome is Outcome.FAILURE
        assert result.error_kind is ErrorKind.ROLLBACK_FAILURE
        assert result.report.rolled_back == ["rpool/ROOT"]
        assert result.report.failed == ROOT_UNIT
        assert state.current_phase is Phase.REBOOTED_STEP1
        persisted = state_store.load()
        assert persisted.pending is not None and persisted.pending.is_rollback
        assert persisted.history[-1].error_kind is ErrorKind.ROLLBACK_FAILURE
        # rpool/ROOT lost its safety snapshot to the rollback
        assert result.safety_group is None

    def test_refused_rollback_clears_pending_marker(self, store, backend, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        backend.add_unit("rpool/home/old", 1)
        state = MigrationState(current_phase=Phase.REBOOTED_STEP1)

        result = executor.execute(group, state)

        assert result.error_kind is ErrorKind.ROLLBACK_FAILURE
        assert state.pending is None
        assert result.safety_group is not None
        assert result.safety_group.label == "before-rollback"
        assert store.get(result.safety_group).consistent

    def test_fact_mismatch_is_unverified(self, store, backend, system, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        system.release = "25.04"
        # root unit rollback no longer restores the system
        backend.saved.clear()

        result = executor.execute(group, MigrationState(current_phase=Phase.REBOOTED_STEP1))

        assert result.outcome is Outcome.UNVERIFIED
        assert not result.ok
        assert result.error_kind is ErrorKind.POSTCONDITION_FAILURE
        assert result.phase is Phase.PACKAGES_UPGRADED
        assert "expected 24.04" in result.failures[0]

    def test_boot_sync_failure_is_unverified(self, store, boot_configurator, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        boot_configurator.fail = True

        result = executor.execute(group, MigrationState())

        assert boot_configurator.calls == 1
        assert result.outcome is Outcome.UNVERIFIED
        assert "boot config sync failed" in result.failures[0]

    def test_init_images_rebuilt_for_restored_tree(self, store, init_images, executor):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")

        result = executor.execute(group, MigrationState())

        assert result.outcome is Outcome.SUCCESS
        assert init_images.rebuild_calls == 1

    def test_init_image_rebuild_failure_is_unverified(
        self, store, init_images, boot_configurator, executor
    ):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        init_images.fail_rebuild = True

        result = executor.execute(group, MigrationState())

        assert result.outcome is Outcome.UNVERIFIED
        assert result.error_kind is ErrorKind.POSTCONDITION_FAILURE
        assert "init image rebuild failed" in result.failures[0]
        assert boot_configurator.calls == 1

    def test_no_rebuild_when_restored_tree_uses_new_generator(
        self, store, system, init_images, executor
    ):
        system.tools[INIT_GENERATOR_A] = False
        system.tools[INIT_GENERATOR_B] = True
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")

        executor.execute(group, MigrationState())

        assert init_images.rebuild_calls == 0

    def test_rebuild_can_be_disabled(
        self, store, collector, state_store, init_images, boot_configurator
    ):
        executor = RollbackExecutor(
            store,
            collector,
            state_store,
            expected_release=lambda phase: "24.04",
            target_release="25.10",
            init_images=init_images,
            boot_configurator=boot_configurator,
            rebuild_init_images=False,
        )
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")

        executor.execute(group, MigrationState())

        assert init_images.rebuild_calls == 0

    def test_restored_phase_rejects_unknown_values(self, store, backend):
        group = store.create("before-upgrade-to-25.04", phase="SOMETHING_ELSE")
        assert restored_phase(group) is Phase.ROLLED_BACK


class TestOrchestratorRollback:
    """Tests for the rollback entry point."""

    def test_no_candidates_returns_precondition_failure(self, orchestrator):
        """Nothing to roll back to is never an empty success."""
        result = orchestrator.rollback(confirm=approve)

        assert result.outcome is Outcome.FAILURE
        assert result.error_kind is ErrorKind.PRECONDITION_FAILURE
        assert orchestrator.status().history[-1].kind == "precondition"

    def test_declined_confirmation_changes_nothing(self, orchestrator, store, backend):
        store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        before = list(backend.checkpoints)

        result = orchestrator.rollback(confirm=decline)

        assert result.outcome is Outcome.CANCELLED
        assert result.error_kind is ErrorKind.CANCELLED
        assert backend.checkpoints == before
        assert orchestrator.status().history == []

    def test_confirm_callback_error_cancels(self, orchestrator, store):
        store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")

        def broken(request):
            raise RuntimeError("terminal closed")

        assert orchestrator.rollback(confirm=broken).outcome is Outcome.CANCELLED

    def test_confirmation_names_the_group(self, orchestrator, store):
        group = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        seen = []

        def capture(request):
            seen.append(request)
            return False

        orchestrator.rollback(confirm=capture)
        assert seen[0].operation == "rollback"
        assert seen[0].group == group.ref

    def test_pending_rollback_is_resumed_against_its_group(
        self, orchestrator, store, state_store
    ):
        older = store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        store.create("before-dracut-migration", phase="REBOOTED_STEP2")
        state = MigrationState(current_phase=Phase.REBOOTED_STEP2)
        state.pending = PendingOperation(
            operation="rollback",
            from_phase=Phase.REBOOTED_STEP2,
            to_phase=Phase.PACKAGES_UPGRADED,
            checkpoint=older.ref,
        )
        state_store.save(state)

        result = orchestrator.rollback(confirm=approve)

        assert result.group == older.ref
        assert orchestrator.status().pending is None

    def test_rollback_twice_is_safe(self, orchestrator, store, system):
        store.create("before-upgrade-to-25.04", phase="PACKAGES_UPGRADED")
        system.release = "25.04"

        first = orchestrator.rollback(confirm=approve)
        second = orchestrator.rollback(confirm=approve)

        assert first.outcome is Outcome.SUCCESS
        assert second.outcome is Outcome.SUCCESS
        assert system.release == "24.04"
