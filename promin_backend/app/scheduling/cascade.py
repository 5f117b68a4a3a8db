import logging
from datetime import date
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from .durations import DeliverableDates, compute_task_schedule, deliverable_date_changes
from .errors import PartialCascadeFailure
from .graph import ScheduleGraph

logger = logging.getLogger(__name__)


class TaskChange(BaseModel):
    task_id: int
    version: int
    old_start: Optional[date] = None
    new_start: date
    old_end: Optional[date] = None
    new_end: date
    old_duration: int = 0
    new_duration: int = 0
    deliverables: List[DeliverableDates] = []

    @property
    def dates_changed(self) -> bool:
        return (
            self.old_start != self.new_start
            or self.old_end != self.new_end
            or self.old_duration != self.new_duration
        )


class CascadePlan(BaseModel):
    origin_task_id: int
    changes: List[TaskChange] = []

    @property
    def task_ids(self) -> List[int]:
        return [c.task_id for c in self.changes]


class CascadeResult(BaseModel):
    origin_task_id: int
    updated: List[int] = []
    failed: List[int] = []
    skipped: List[int] = []
    planned: List[int] = []
    errors: Dict[int, str] = {}

    @property
    def ok(self) -> bool:
        return not self.failed


# ------------------------------
# Planning (pure)
# ------------------------------

def plan_cascade(graph: ScheduleGraph, origin: int, today: date) -> CascadePlan:
    """Compute every date change caused by recomputing `origin`.

    Works on a private copy of the snapshot. Nodes are taken in level order
    from the origin so each one reads already-updated predecessor ends. A node
    is recomputed when it is the origin or a direct successor of the origin or
    of a node whose end moved; everything else keeps its stored dates, which
    makes a repeated cascade a no-op. Completed tasks keep their planned dates.
    """
    g = graph.copy()
    g.task(origin)  # raises TaskNotFoundError early
    order = g.level_order(origin)
    check: Set[int] = {origin} | set(g.successors(origin))
    changes: List[TaskChange] = []
    visited: Set[int] = set()

    for tid in order:
        if tid in visited or tid not in check:
            continue
        visited.add(tid)
        task = g.task(tid)
        if task.is_completed:
            logger.debug("cascade: task %s is completed, planned dates locked", tid)
            continue
        sched = compute_task_schedule(g, tid, today)
        deliv = deliverable_date_changes(tid, g.deliverables_of(tid), sched.planned_start)
        change = TaskChange(
            task_id=tid,
            version=task.version,
            old_start=task.planned_start,
            new_start=sched.planned_start,
            old_end=task.planned_end,
            new_end=sched.planned_end,
            old_duration=task.duration_days,
            new_duration=sched.duration_days,
            deliverables=deliv,
        )
        if change.dates_changed or deliv:
            changes.append(change)
            g.replace_task(task.model_copy(update={
                "planned_start": sched.planned_start,
                "planned_end": sched.planned_end,
                "duration_days": sched.duration_days,
            }))
        if task.planned_end != sched.planned_end:
            check.update(g.successors(tid))

    return CascadePlan(origin_task_id=origin, changes=changes)


# ------------------------------
# Application (fallible writes)
# ------------------------------

def _write_change(store, change: TaskChange) -> None:
    if change.dates_changed:
        store.update_task_schedule(
            change.task_id,
            planned_start=change.new_start,
            planned_end=change.new_end,
            duration_days=change.new_duration,
            expected_version=change.version,
        )
    for dd in change.deliverables:
        store.update_deliverable_dates(dd.deliverable_id, dd.planned_start, dd.planned_end)


def apply_plan(store, plan: CascadePlan, atomic: bool = True) -> CascadeResult:
    """Persist a cascade plan.

    atomic=True writes everything in one transaction and rolls back on the
    first failure, so nothing is updated and every planned id is reported.
    atomic=False commits node by node; a failure stops the walk, earlier
    nodes stay applied and later ones are reported as skipped.
    Raises PartialCascadeFailure in both modes when a write fails, and in
    atomic mode when the final commit fails. Atomic mode commits even an
    empty plan so a pending triggering edit lands with it.
    """
    ids = plan.task_ids
    result = CascadeResult(origin_task_id=plan.origin_task_id, planned=list(ids))
    if not plan.changes and not atomic:
        return result

    for i, change in enumerate(plan.changes):
        try:
            _write_change(store, change)
            if not atomic:
                store.commit()
                result.updated.append(change.task_id)
        except Exception as e:
            store.rollback()
            result.failed.append(change.task_id)
            result.errors[change.task_id] = str(e)
            result.skipped = ids[i + 1:]
            if atomic:
                result.updated = []
            logger.warning(
                "cascade from %s failed on task %s (%s); updated=%s skipped=%s",
                plan.origin_task_id, change.task_id, e, result.updated, result.skipped,
            )
            raise PartialCascadeFailure(result, cause=e) from e

    if atomic:
        try:
            store.commit()
        except Exception as e:
            store.rollback()
            result.failed = list(ids) or [plan.origin_task_id]
            result.errors = {tid: str(e) for tid in result.failed}
            logger.warning("cascade from %s lost at commit (%s); rolled back %s", plan.origin_task_id, e, result.failed)
            raise PartialCascadeFailure(result, cause=e) from e
        result.updated = list(ids)
    logger.info("cascade from %s updated tasks %s", plan.origin_task_id, result.updated)
    return result
