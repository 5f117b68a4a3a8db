"""
Service tests against a real SQLite database: every mutation goes through
SchedulingService and the stored rows are checked afterwards.
"""
import random
import pytest
from datetime import date, datetime
from unittest.mock import patch

from promin_backend.app.db import db_loader
from promin_backend.app.db.models import TaskStatus
from promin_backend.app.scheduling.cascade import plan_cascade
from promin_backend.app.scheduling.cycle_guard import find_cycle
from promin_backend.app.scheduling.errors import (
    CircularDependencyError,
    DependencyNotFoundError,
    DuplicateDependencyError,
    LifecycleError,
    MalformedChainError,
    PartialCascadeFailure,
    SchedulingError,
    StaleComputationError,
    TaskNotFoundError,
)

from conftest import ProjectBuilder


def _task(db_session, task_id):
    return db_loader.load_task(db_session, task_id)


def _deliverable_ids(db_session, task_id):
    pid = db_loader.project_id_for_task(db_session, task_id)
    graph = db_loader.load_project_graph(db_session, pid)
    return [d.id for d in graph.deliverables_of(task_id)]


def _edges(db_session, project_id):
    graph = db_loader.load_project_graph(db_session, project_id)
    return [(e.task_id, e.depends_on_task_id) for e in graph.edges()]


@pytest.fixture
def chain(builder, service):
    """A (Jan 1, 9 days) <- B (offset 2, 3 days) <- C (1 day), cascaded."""
    a = builder.task("A", planned_start=date(2026, 1, 1), durations=[9])
    b = builder.task("B", offset_days=2, durations=[3])
    c = builder.task("C", durations=[1])
    service.cascade_from(a)
    service.create_dependency(b, a)
    service.create_dependency(c, b)
    return a, b, c


class TestDependencies:

    def test_create_dependency_schedules_the_successor(self, chain, db_session):
        a, b, c = chain
        assert (_task(db_session, a).planned_start, _task(db_session, a).planned_end) == (date(2026, 1, 1), date(2026, 1, 10))
        assert (_task(db_session, b).planned_start, _task(db_session, b).planned_end) == (date(2026, 1, 12), date(2026, 1, 15))
        assert (_task(db_session, c).planned_start, _task(db_session, c).planned_end) == (date(2026, 1, 15), date(2026, 1, 16))

    def test_create_reports_the_edge_and_cascade(self, builder, service):
        a = builder.task("A", planned_start=date(2026, 1, 1), durations=[2])
        b = builder.task("B", durations=[1])
        change = service.create_dependency(b, a)
        assert (change.edge.task_id, change.edge.depends_on_task_id) == (b, a)
        assert change.cascade.updated == [b]

    def test_cycle_is_rejected_and_edges_unchanged(self, chain, builder, service, db_session):
        a, b, c = chain
        before = _edges(db_session, builder.project_id)
        with pytest.raises(CircularDependencyError):
            service.create_dependency(a, c)
        assert _edges(db_session, builder.project_id) == before

    def test_self_dependency_is_rejected(self, builder, service):
        a = builder.task("A")
        with pytest.raises(CircularDependencyError):
            service.create_dependency(a, a)

    def test_duplicate_is_rejected(self, chain, service):
        a, b, _ = chain
        with pytest.raises(DuplicateDependencyError):
            service.create_dependency(b, a)

    def test_cross_project_edge_is_rejected(self, builder, store, service):
        a = builder.task("A")
        other = ProjectBuilder(store, name="Other")
        x = other.task("X")
        with pytest.raises(SchedulingError):
            service.create_dependency(a, x)

    def test_unknown_task(self, builder, service):
        a = builder.task("A")
        with pytest.raises(TaskNotFoundError):
            service.create_dependency(a, 999)

    def test_would_create_cycle(self, chain, service):
        a, b, c = chain
        assert service.would_create_cycle(a, c) is True
        assert service.would_create_cycle(c, a) is False
        assert service.would_create_cycle(b, b) is True

    def test_delete_makes_task_independent_again(self, chain, service, db_session):
        a, b, c = chain
        service.delete_dependency(c, b)
        # C has no baseline, so it falls back to today
        t = _task(db_session, c)
        assert (t.planned_start, t.planned_end) == (date(2026, 1, 1), date(2026, 1, 2))

    def test_delete_restores_baseline(self, builder, service, db_session):
        a = builder.task("A", planned_start=date(2026, 1, 1), durations=[5])
        b = builder.task("B", planned_start=date(2026, 3, 1), durations=[2])
        service.cascade_from(a)
        service.create_dependency(b, a)
        assert _task(db_session, b).planned_start == date(2026, 1, 6)
        service.delete_dependency(b, a)
        assert _task(db_session, b).planned_start == date(2026, 3, 1)

    def test_delete_missing_edge(self, chain, service):
        a, _, c = chain
        with pytest.raises(DependencyNotFoundError):
            service.delete_dependency(c, a)

    def test_random_edges_never_produce_a_cycle(self, builder, service, db_session):
        rng = random.Random(7)
        ids = [builder.task(f"T{i}") for i in range(8)]
        for _ in range(40):
            t, p = rng.sample(ids, 2)
            try:
                service.create_dependency(t, p)
            except (CircularDependencyError, DuplicateDependencyError):
                pass
            graph = db_loader.load_project_graph(db_session, builder.project_id)
            assert find_cycle(graph) is None

    def test_stored_cycle_is_reported(self, builder, service):
        a = builder.task("A")
        b = builder.task("B")
        builder.edge(b, a)
        builder.edge(a, b)
        with pytest.raises(SchedulingError):
            service.cascade_from(a)


class TestCascade:

    def test_duration_change_ripples_downstream(self, chain, service, db_session):
        a, b, c = chain
        result = service.set_deliverable_duration(_deliverable_ids(db_session, a)[0], 10)
        assert result.updated == [a, b, c]
        assert _task(db_session, a).planned_end == date(2026, 1, 11)
        assert _task(db_session, b).planned_start == date(2026, 1, 13)
        assert _task(db_session, c).planned_end == date(2026, 1, 17)

    def test_second_cascade_updates_nothing(self, chain, service):
        a, _, _ = chain
        assert service.cascade_from(a).updated == []

    def test_recalculate_returns_stored_schedule(self, chain, service):
        _, b, _ = chain
        s = service.recalculate_task_duration(b)
        assert (s.duration_days, s.planned_start, s.planned_end) == (3, date(2026, 1, 12), date(2026, 1, 15))

    def test_offset_change(self, chain, service, db_session):
        a, b, c = chain
        service.set_offset_days(b, 0)
        assert _task(db_session, b).planned_start == date(2026, 1, 10)
        assert _task(db_session, c).planned_start == date(2026, 1, 13)

    def test_negative_offset_rejected(self, chain, service):
        _, b, _ = chain
        with pytest.raises(SchedulingError):
            service.set_offset_days(b, -1)

    def test_planned_start_moves_the_chain(self, chain, service, db_session):
        a, b, _ = chain
        service.set_planned_start(a, date(2026, 1, 5))
        assert _task(db_session, a).baseline_start == date(2026, 1, 5)
        assert _task(db_session, b).planned_start == date(2026, 1, 16)

    def test_planned_start_rejected_for_dependent_task(self, chain, service):
        _, b, _ = chain
        with pytest.raises(SchedulingError):
            service.set_planned_start(b, date(2026, 2, 1))

    def test_planned_start_rejected_for_completed_task(self, chain, service, db_session):
        a, _, _ = chain
        service.start_task(a, date(2026, 1, 1))
        service.complete_task(a, date(2026, 1, 9))
        with pytest.raises(LifecycleError):
            service.set_planned_start(a, date(2026, 3, 1))
        t = _task(db_session, a)
        assert (t.baseline_start, t.planned_start, t.planned_end) == (
            date(2026, 1, 1), date(2026, 1, 1), date(2026, 1, 10),
        )

    def test_cascade_bumps_version(self, chain, service, db_session):
        a, _, _ = chain
        before = _task(db_session, a).version
        service.set_deliverable_duration(_deliverable_ids(db_session, a)[0], 4)
        assert _task(db_session, a).version > before

    def test_stale_version_aborts_the_cascade(self, chain, service, db_session):
        a, b, _ = chain
        did = _deliverable_ids(db_session, a)[0]

        def plan_then_concurrent_edit(graph, origin, today):
            plan = plan_cascade(graph, origin, today)
            # Someone else touches A between planning and applying
            service.store.update_task_fields(a, weight=2.0)
            return plan

        with patch("promin_backend.app.scheduling.service.plan_cascade", side_effect=plan_then_concurrent_edit):
            with pytest.raises(PartialCascadeFailure) as exc_info:
                service.set_deliverable_duration(did, 4)
        assert isinstance(exc_info.value.cause, StaleComputationError)
        assert exc_info.value.result.failed == [a]
        assert _task(db_session, a).planned_end == date(2026, 1, 10)
        assert db_loader.load_deliverable(db_session, did).duration_days == 9


class TestPartialFailure:

    def _flaky(self, real, fail_on):
        calls = []

        def write(task_id, **kw):
            calls.append(task_id)
            if len(calls) == fail_on:
                raise RuntimeError("write timeout")
            return real(task_id, **kw)
        return write

    def test_atomic_cascade_rolls_back_the_edit_too(self, chain, service, db_session):
        a, b, c = chain
        (did,) = _deliverable_ids(db_session, a)
        flaky = self._flaky(service.store.update_task_schedule, fail_on=2)
        with patch.object(service.store, "update_task_schedule", side_effect=flaky):
            with pytest.raises(PartialCascadeFailure) as exc_info:
                service.set_deliverable_duration(did, 10)
        result = exc_info.value.result
        assert (result.updated, result.failed, result.skipped) == ([], [b], [c])
        assert result.planned == [a, b, c]
        assert _task(db_session, a).planned_end == date(2026, 1, 10)
        # Input and derived dates stay consistent
        assert db_loader.load_deliverable(db_session, did).duration_days == 9
        assert _task(db_session, a).duration_days == 9

    def test_atomic_failure_drops_the_new_edge(self, builder, service, db_session):
        a = builder.task("A", planned_start=date(2026, 1, 1), durations=[2])
        b = builder.task("B", durations=[1])
        with patch.object(service.store, "update_task_schedule", side_effect=RuntimeError("write timeout")):
            with pytest.raises(PartialCascadeFailure):
                service.create_dependency(b, a)
        assert _edges(db_session, builder.project_id) == []

    def test_atomic_failure_keeps_old_offset(self, chain, service, db_session):
        _, b, _ = chain
        with patch.object(service.store, "update_task_schedule", side_effect=RuntimeError("write timeout")):
            with pytest.raises(PartialCascadeFailure):
                service.set_offset_days(b, 5)
        t = _task(db_session, b)
        assert (t.offset_days, t.planned_start) == (2, date(2026, 1, 12))

    def test_lost_commit_is_reported(self, chain, service, db_session):
        a, _, _ = chain
        (did,) = _deliverable_ids(db_session, a)
        with patch.object(service.store, "commit", side_effect=RuntimeError("commit lost")):
            with pytest.raises(PartialCascadeFailure) as exc_info:
                service.set_deliverable_duration(did, 20)
        result = exc_info.value.result
        assert result.updated == []
        assert result.failed == result.planned
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert db_loader.load_deliverable(db_session, did).duration_days == 9
        assert _task(db_session, a).planned_end == date(2026, 1, 10)

    def test_lost_commit_of_a_no_op_cascade_is_reported(self, chain, service):
        a, _, _ = chain
        with patch.object(service.store, "commit", side_effect=RuntimeError("commit lost")):
            with pytest.raises(PartialCascadeFailure) as exc_info:
                service.cascade_from(a)
        assert exc_info.value.result.failed == [a]

    def test_per_node_cascade_keeps_earlier_nodes(self, builder, per_node_service, db_session):
        service = per_node_service
        a = builder.task("A", planned_start=date(2026, 1, 1), durations=[9])
        b = builder.task("B", offset_days=2, durations=[3])
        c = builder.task("C", durations=[1])
        service.cascade_from(a)
        service.create_dependency(b, a)
        service.create_dependency(c, b)

        flaky = self._flaky(service.store.update_task_schedule, fail_on=2)
        with patch.object(service.store, "update_task_schedule", side_effect=flaky):
            with pytest.raises(PartialCascadeFailure) as exc_info:
                service.set_deliverable_duration(_deliverable_ids(db_session, a)[0], 10)
        result = exc_info.value.result
        assert (result.updated, result.failed, result.skipped) == ([a], [b], [c])
        assert _task(db_session, a).planned_end == date(2026, 1, 11)
        assert _task(db_session, b).planned_start == date(2026, 1, 12)

        # A retry finishes the job
        assert service.cascade_from(b).updated == [b, c]
        assert _task(db_session, c).planned_end == date(2026, 1, 17)


class TestDeliverableEdits:

    def test_sequential_deliverables_add_up(self, builder, service, db_session):
        t = builder.task("T", planned_start=date(2026, 1, 1), durations=[2, 3], chained=True)
        service.cascade_from(t)
        assert _task(db_session, t).duration_days == 5

    def test_linking_deliverables_lengthens_task(self, builder, service, db_session):
        t = builder.task("T", planned_start=date(2026, 1, 1), durations=[2, 3])
        service.cascade_from(t)
        d1, d2 = _deliverable_ids(db_session, t)
        assert _task(db_session, t).duration_days == 3
        service.set_deliverable_predecessor(d2, d1)
        assert _task(db_session, t).duration_days == 5
        assert db_loader.load_deliverable(db_session, d2).planned_start == date(2026, 1, 3)

    def test_branching_edit_is_rejected_without_write(self, builder, service, db_session):
        t = builder.task("T", planned_start=date(2026, 1, 1), durations=[2, 3, 4])
        d1, d2, d3 = _deliverable_ids(db_session, t)
        service.set_deliverable_predecessor(d2, d1)
        with pytest.raises(MalformedChainError):
            service.set_deliverable_predecessor(d3, d1)
        assert db_loader.load_deliverable(db_session, d3).depends_on_deliverable_id is None

    def test_pointer_cycle_edit_is_rejected(self, builder, service, db_session):
        t = builder.task("T", durations=[1, 1], chained=True)
        d1, d2 = _deliverable_ids(db_session, t)
        with pytest.raises(MalformedChainError):
            service.set_deliverable_predecessor(d1, d2)

    def test_negative_duration_rejected(self, builder, service, db_session):
        t = builder.task("T", durations=[1])
        with pytest.raises(SchedulingError):
            service.set_deliverable_duration(_deliverable_ids(db_session, t)[0], -3)

    def test_duration_and_predecessor_in_one_edit(self, builder, service, db_session):
        t = builder.task("T", planned_start=date(2026, 1, 1), durations=[2, 3])
        d1, d2 = _deliverable_ids(db_session, t)
        result = service.edit_deliverable(d2, duration_days=4, depends_on_deliverable_id=d1)
        assert result.updated == [t]
        assert _task(db_session, t).duration_days == 6
        deliv = db_loader.load_deliverable(db_session, d2)
        assert (deliv.duration_days, deliv.depends_on_deliverable_id) == (4, d1)

    def test_invalid_predecessor_blocks_the_whole_edit(self, builder, service, db_session):
        t = builder.task("T", planned_start=date(2026, 1, 1), durations=[2, 3, 4])
        d1, d2, d3 = _deliverable_ids(db_session, t)
        service.set_deliverable_predecessor(d2, d1)
        with pytest.raises(MalformedChainError):
            service.edit_deliverable(d3, duration_days=9, depends_on_deliverable_id=d1)
        deliv = db_loader.load_deliverable(db_session, d3)
        assert (deliv.duration_days, deliv.depends_on_deliverable_id) == (4, None)

    def test_empty_edit_rejected(self, builder, service, db_session):
        t = builder.task("T", durations=[1])
        with pytest.raises(SchedulingError):
            service.edit_deliverable(_deliverable_ids(db_session, t)[0])


class TestLifecycle:

    def test_start_and_complete(self, builder, service):
        t = builder.task("T", durations=[1])
        started = service.start_task(t, date(2026, 1, 2))
        assert started.status == TaskStatus.IN_PROGRESS
        done = service.complete_task(t, date(2026, 1, 4))
        assert done.status == TaskStatus.COMPLETED
        assert done.actual_end == date(2026, 1, 4)

    def test_start_defaults_to_today(self, builder, service):
        t = builder.task("T")
        assert service.start_task(t).actual_start == date(2026, 1, 1)

    def test_double_start_rejected(self, builder, service):
        t = builder.task("T")
        service.start_task(t)
        with pytest.raises(LifecycleError):
            service.start_task(t)

    def test_complete_requires_start(self, builder, service):
        t = builder.task("T")
        with pytest.raises(LifecycleError):
            service.complete_task(t)

    def test_end_before_start_rejected(self, builder, service):
        t = builder.task("T")
        service.start_task(t, date(2026, 1, 10))
        with pytest.raises(LifecycleError):
            service.complete_task(t, date(2026, 1, 9))

    def test_completed_task_keeps_planned_dates(self, chain, service, db_session):
        a, b, _ = chain
        service.start_task(a, date(2026, 1, 1))
        service.complete_task(a, date(2026, 1, 20))
        result = service.set_deliverable_duration(_deliverable_ids(db_session, a)[0], 20)
        assert result.updated == []
        assert _task(db_session, a).planned_end == date(2026, 1, 10)

        # Reopening unfreezes the plan
        reopened = service.reopen_task(a)
        assert reopened.status == TaskStatus.IN_PROGRESS
        assert reopened.planned_end == date(2026, 1, 21)
        assert _task(db_session, b).planned_start == date(2026, 1, 23)

    def test_reopen_requires_completed(self, builder, service):
        t = builder.task("T")
        with pytest.raises(LifecycleError):
            service.reopen_task(t)

    def test_unchecking_deliverable_reverts_completion(self, builder, service, db_session):
        t = builder.task("T", durations=[1])
        (d,) = _deliverable_ids(db_session, t)
        service.toggle_deliverable(d, True, datetime(2026, 1, 3, 9, 30))
        service.start_task(t, date(2026, 1, 1))
        service.complete_task(t, date(2026, 1, 3))
        task = service.toggle_deliverable(d, False)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.actual_end is None
        deliv = db_loader.load_deliverable(db_session, d)
        assert deliv.is_done is False
        assert deliv.completed_at is None

    def test_unchecking_applies_edits_frozen_while_completed(self, chain, service, db_session):
        a, b, _ = chain
        (d,) = _deliverable_ids(db_session, a)
        service.toggle_deliverable(d, True, datetime(2026, 1, 9, 12, 0))
        service.start_task(a, date(2026, 1, 1))
        service.complete_task(a, date(2026, 1, 9))
        assert service.set_deliverable_duration(d, 20).updated == []

        task = service.toggle_deliverable(d, False)
        assert task.status == TaskStatus.IN_PROGRESS
        assert (task.duration_days, task.planned_end) == (20, date(2026, 1, 21))
        assert _task(db_session, b).planned_start == date(2026, 1, 23)
        assert service.cascade_from(a).updated == []

    def test_toggle_without_reversal_does_not_cascade(self, chain, service, db_session):
        a, _, _ = chain
        (d,) = _deliverable_ids(db_session, a)
        with patch.object(service, "cascade_from") as cascade:
            service.toggle_deliverable(d, True)
            service.toggle_deliverable(d, False)
        cascade.assert_not_called()

    def test_checking_deliverable_records_time(self, builder, service, db_session):
        t = builder.task("T", durations=[1])
        (d,) = _deliverable_ids(db_session, t)
        service.toggle_deliverable(d, True, datetime(2026, 1, 3, 9, 30))
        deliv = db_loader.load_deliverable(db_session, d)
        assert deliv.is_done is True
        assert deliv.completed_at == datetime(2026, 1, 3, 9, 30)

    def test_early_start(self, chain, service):
        a, b, _ = chain
        assert service.check_early_start(b).is_early_start is False
        service.start_task(b, date(2026, 1, 5))
        check = service.check_early_start(b)
        assert check.is_early_start is True
        assert check.incomplete_predecessors == [a]
        service.start_task(a, date(2026, 1, 1))
        service.complete_task(a, date(2026, 1, 4))
        assert service.check_early_start(b).is_early_start is False


class TestReadPaths:

    def test_schedule_state_uses_planned_end(self, chain, service):
        a, _, _ = chain
        assert service.schedule_state(a, date(2026, 1, 5)) == "ON_TRACK"
        assert service.schedule_state(a, date(2026, 1, 11)) == "DELAYED"

    def test_schedule_state_of_completed_task(self, chain, service):
        a, _, _ = chain
        service.start_task(a, date(2026, 1, 1))
        service.complete_task(a, date(2026, 2, 1))
        assert service.schedule_state(a, date(2026, 3, 1)) == "ON_TRACK"

    def test_progress(self, builder, service, db_session):
        t = builder.task("T", durations=[1, 1])
        builder.task("U")
        d1, _ = _deliverable_ids(db_session, t)
        service.toggle_deliverable(d1, True)
        out = service.progress(builder.project_id)
        # Tasks have zero weight, so they split the milestone evenly
        assert out.tasks[t] == pytest.approx(0.5)
        assert out.project == pytest.approx(0.25)
