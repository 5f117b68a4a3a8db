import logging
from datetime import date, datetime
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from promin_backend import config
from promin_backend.app.db import db_loader
from promin_backend.app.db.models import DeliverableModel, DependencyModel, TaskModel
from promin_backend.app.db.store import ScheduleStore

from . import lifecycle
from .cascade import CascadeResult, apply_plan, plan_cascade
from .cycle_guard import find_cycle, would_create_cycle
from .durations import TaskSchedule, partition_chains
from .errors import (
    CircularDependencyError,
    DependencyNotFoundError,
    DuplicateDependencyError,
    LifecycleError,
    SchedulingError,
)
from .graph import ScheduleGraph
from .locks import ProjectLocks, project_locks
from .risk import ScheduleState, schedule_state
from .weights import ProgressRollup, rollup_progress

logger = logging.getLogger(__name__)


class DependencyChange(BaseModel):
    edge: DependencyModel
    cascade: CascadeResult


class SchedulingService:
    """Entry point for every scheduling mutation and query.

    Each public call loads one project snapshot, validates before writing,
    writes the triggering mutation, then plans and applies the cascade while
    holding the project's lock. In atomic mode the trigger and the cascade
    commit together.
    """

    def __init__(
        self,
        session,
        clock: Callable[[], date] = date.today,
        atomic: Optional[bool] = None,
        locks: Optional[ProjectLocks] = None,
    ):
        self.store = ScheduleStore(session)
        self.session = session
        self.clock = clock
        self.atomic = config.CASCADE_ATOMIC if atomic is None else atomic
        self.locks = locks or project_locks

    # ------------------------------
    # Snapshot helpers
    # ------------------------------

    def _graph_for_task(self, task_id: int) -> ScheduleGraph:
        project_id = db_loader.project_id_for_task(self.session, task_id)
        graph = db_loader.load_project_graph(self.session, project_id)
        loop = find_cycle(graph)
        if loop:
            logger.error("project %s has a dependency cycle in storage: %s", project_id, loop)
            raise SchedulingError(f"Stored dependencies of project {project_id} contain a cycle: {loop}")
        return graph

    def _same_project(self, task_id: int, depends_on_task_id: int) -> int:
        pid = db_loader.project_id_for_task(self.session, task_id)
        other = db_loader.project_id_for_task(self.session, depends_on_task_id)
        if pid != other:
            raise SchedulingError(
                f"Tasks {task_id} and {depends_on_task_id} belong to different projects"
            )
        return pid

    # ------------------------------
    # Cycle guard
    # ------------------------------

    def would_create_cycle(self, task_id: int, depends_on_task_id: int) -> bool:
        if task_id == depends_on_task_id:
            db_loader.load_task(self.session, task_id)
            return True
        pid = self._same_project(task_id, depends_on_task_id)
        graph = db_loader.load_project_graph(self.session, pid)
        return would_create_cycle(graph, task_id, depends_on_task_id)

    def create_dependency(self, task_id: int, depends_on_task_id: int) -> DependencyChange:
        if task_id == depends_on_task_id:
            db_loader.load_task(self.session, task_id)
            raise CircularDependencyError(task_id, depends_on_task_id)
        pid = self._same_project(task_id, depends_on_task_id)
        with self.locks.hold(pid):
            graph = db_loader.load_project_graph(self.session, pid)
            if graph.has_edge(task_id, depends_on_task_id):
                raise DuplicateDependencyError(task_id, depends_on_task_id)
            if would_create_cycle(graph, task_id, depends_on_task_id):
                logger.info("rejected dependency %s -> %s: cycle", task_id, depends_on_task_id)
                raise CircularDependencyError(task_id, depends_on_task_id)
            try:
                self.store.insert_dependency(task_id, depends_on_task_id)
            except IntegrityError:
                self.store.rollback()
                raise DuplicateDependencyError(task_id, depends_on_task_id)
            logger.info("dependency created: task %s depends on %s", task_id, depends_on_task_id)
            result = self._cascade_after_trigger(task_id)
        return DependencyChange(
            edge=DependencyModel(task_id=task_id, depends_on_task_id=depends_on_task_id),
            cascade=result,
        )

    def delete_dependency(self, task_id: int, depends_on_task_id: int) -> CascadeResult:
        pid = db_loader.project_id_for_task(self.session, task_id)
        with self.locks.hold(pid):
            if not self.store.delete_dependency(task_id, depends_on_task_id):
                self.store.rollback()
                raise DependencyNotFoundError(task_id, depends_on_task_id)
            graph = db_loader.load_project_graph(self.session, pid)
            task = graph.task(task_id)
            if not graph.predecessors(task_id) and not task.is_completed:
                # Independent again: fall back to the user baseline
                self.store.update_task_fields(task_id, planned_start=task.baseline_start or self.clock())
            logger.info("dependency deleted: task %s no longer depends on %s", task_id, depends_on_task_id)
            return self._cascade_after_trigger(task_id)

    # ------------------------------
    # Durations and cascade
    # ------------------------------

    def recalculate_task_duration(self, task_id: int) -> TaskSchedule:
        self.cascade_from(task_id)
        task = db_loader.load_task(self.session, task_id)
        return TaskSchedule(
            task_id=task_id,
            duration_days=task.duration_days,
            planned_start=task.planned_start or self.clock(),
            planned_end=task.planned_end or task.planned_start or self.clock(),
        )

    def cascade_from(self, task_id: int) -> CascadeResult:
        pid = db_loader.project_id_for_task(self.session, task_id)
        with self.locks.hold(pid):
            return self._cascade_locked(task_id)

    def _cascade_locked(self, task_id: int) -> CascadeResult:
        graph = self._graph_for_task(task_id)
        plan = plan_cascade(graph, task_id, self.clock())
        if not plan.changes:
            logger.debug("cascade from %s: nothing to update", task_id)
        return apply_plan(self.store, plan, atomic=self.atomic)

    def _cascade_after_trigger(self, task_id: int) -> CascadeResult:
        """Cascade after a triggering write that is not committed yet.

        In atomic mode the trigger shares the cascade transaction, so a failed
        cascade rolls the edit back too. Per-node mode commits the trigger
        first and then commits the cascade node by node.
        """
        if not self.atomic:
            self.store.commit()
            return self._cascade_locked(task_id)
        try:
            return self._cascade_locked(task_id)
        except Exception:
            self.store.rollback()
            raise

    # ------------------------------
    # Planning edits
    # ------------------------------

    def set_planned_start(self, task_id: int, planned_start: date) -> CascadeResult:
        pid = db_loader.project_id_for_task(self.session, task_id)
        with self.locks.hold(pid):
            graph = db_loader.load_project_graph(self.session, pid)
            if graph.task(task_id).is_completed:
                raise LifecycleError(f"Task {task_id} is completed; its planned dates are locked")
            if graph.predecessors(task_id):
                raise SchedulingError(
                    f"Task {task_id} has predecessors; its start date is derived from them"
                )
            self.store.update_task_fields(task_id, baseline_start=planned_start, planned_start=planned_start)
            return self._cascade_after_trigger(task_id)

    def set_offset_days(self, task_id: int, offset_days: int) -> CascadeResult:
        if offset_days < 0:
            raise SchedulingError("offset_days must be non-negative")
        pid = db_loader.project_id_for_task(self.session, task_id)
        with self.locks.hold(pid):
            self.store.update_task_fields(task_id, offset_days=offset_days)
            return self._cascade_after_trigger(task_id)

    def edit_deliverable(self, deliverable_id: int, **fields) -> CascadeResult:
        """Apply duration_days and/or depends_on_deliverable_id as one edit."""
        unknown = set(fields) - {"duration_days", "depends_on_deliverable_id"}
        if unknown:
            raise SchedulingError(f"cannot edit deliverable fields {sorted(unknown)}")
        if not fields:
            raise SchedulingError("Nothing to update")
        if "duration_days" in fields and (fields["duration_days"] is None or fields["duration_days"] < 0):
            raise SchedulingError("duration_days must be non-negative")
        deliv = db_loader.load_deliverable(self.session, deliverable_id)
        pid = db_loader.project_id_for_task(self.session, deliv.task_id)
        with self.locks.hold(pid):
            graph = db_loader.load_project_graph(self.session, pid)
            edited: List[DeliverableModel] = [
                d.model_copy(update=fields) if d.id == deliverable_id else d
                for d in graph.deliverables_of(deliv.task_id)
            ]
            # Chain shape is checked before anything is written
            partition_chains(deliv.task_id, edited)
            self.store.update_deliverable_fields(deliverable_id, **fields)
            return self._cascade_after_trigger(deliv.task_id)

    def set_deliverable_duration(self, deliverable_id: int, duration_days: int) -> CascadeResult:
        return self.edit_deliverable(deliverable_id, duration_days=duration_days)

    def set_deliverable_predecessor(self, deliverable_id: int, depends_on_deliverable_id: Optional[int]) -> CascadeResult:
        return self.edit_deliverable(deliverable_id, depends_on_deliverable_id=depends_on_deliverable_id)

    # ------------------------------
    # Lifecycle
    # ------------------------------

    def start_task(self, task_id: int, actual_start: Optional[date] = None) -> TaskModel:
        return lifecycle.start_task(self.store, task_id, actual_start or self.clock())

    def complete_task(self, task_id: int, actual_end: Optional[date] = None) -> TaskModel:
        return lifecycle.complete_task(self.store, task_id, actual_end or self.clock())

    def reopen_task(self, task_id: int) -> TaskModel:
        lifecycle.reopen_task(self.store, task_id)
        # Planned dates were frozen while completed
        self.cascade_from(task_id)
        return db_loader.load_task(self.session, task_id)

    def toggle_deliverable(self, deliverable_id: int, is_done: bool, when: Optional[datetime] = None) -> TaskModel:
        deliv = db_loader.load_deliverable(self.session, deliverable_id)
        was_completed = db_loader.load_task(self.session, deliv.task_id).is_completed
        task = lifecycle.toggle_deliverable(self.store, deliverable_id, is_done, when)
        if was_completed and not task.is_completed:
            # Reverted to in progress: apply edits made while the plan was frozen
            self.cascade_from(task.id)
            task = db_loader.load_task(self.session, task.id)
        return task

    def check_early_start(self, task_id: int) -> lifecycle.EarlyStartCheck:
        return lifecycle.check_early_start(self.store, task_id)

    # ------------------------------
    # Read paths
    # ------------------------------

    def schedule_state(self, task_id: int, as_of: Optional[date] = None) -> ScheduleState:
        task = db_loader.load_task(self.session, task_id)
        return schedule_state(task, as_of or self.clock())

    def progress(self, project_id: int) -> ProgressRollup:
        project = db_loader.load_project_from_db(self.session, project_id)
        return rollup_progress(project)
