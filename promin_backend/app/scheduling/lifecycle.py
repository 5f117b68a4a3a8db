import logging
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel

from promin_backend.app.db import db_loader
from promin_backend.app.db.models import TaskModel
from promin_backend.app.db.store import ScheduleStore

from .errors import LifecycleError

logger = logging.getLogger(__name__)


class EarlyStartCheck(BaseModel):
    task_id: int
    is_early_start: bool
    incomplete_predecessors: List[int] = []


def start_task(store: ScheduleStore, task_id: int, actual_start: date) -> TaskModel:
    task = db_loader.load_task(store.session, task_id)
    if task.actual_start is not None:
        raise LifecycleError(f"Task {task_id} is already started")
    store.update_task_fields(task_id, actual_start=actual_start)
    store.commit()
    logger.info("task %s started on %s", task_id, actual_start)
    return db_loader.load_task(store.session, task_id)


def complete_task(store: ScheduleStore, task_id: int, actual_end: date) -> TaskModel:
    task = db_loader.load_task(store.session, task_id)
    if task.actual_start is None:
        raise LifecycleError(f"Task {task_id} has not been started")
    if task.actual_end is not None:
        raise LifecycleError(f"Task {task_id} is already completed")
    if actual_end < task.actual_start:
        raise LifecycleError(
            f"Task {task_id} cannot end on {actual_end}, before it started on {task.actual_start}"
        )
    store.update_task_fields(task_id, actual_end=actual_end)
    store.commit()
    logger.info("task %s completed on %s", task_id, actual_end)
    return db_loader.load_task(store.session, task_id)


def reopen_task(store: ScheduleStore, task_id: int) -> TaskModel:
    task = db_loader.load_task(store.session, task_id)
    if task.actual_end is None:
        raise LifecycleError(f"Task {task_id} is not completed")
    store.update_task_fields(task_id, actual_end=None)
    store.commit()
    logger.info("task %s reopened", task_id)
    return db_loader.load_task(store.session, task_id)


def toggle_deliverable(
    store: ScheduleStore, deliverable_id: int, is_done: bool, when: Optional[datetime] = None
) -> TaskModel:
    """Mark a deliverable done or not done.

    Un-checking a deliverable under a completed task reverts the task to
    in progress: a task is only complete while all its deliverables are.
    Returns the owning task as stored afterwards.
    """
    deliv = db_loader.load_deliverable(store.session, deliverable_id)
    completed_at = (when or datetime.now()) if is_done else None
    store.update_deliverable_fields(deliverable_id, is_done=is_done, completed_at=completed_at)
    task = db_loader.load_task(store.session, deliv.task_id)
    if not is_done and task.actual_end is not None:
        store.update_task_fields(task.id, actual_end=None)
        logger.warning(
            "deliverable %s unchecked; task %s reverted from completed to in progress",
            deliverable_id, task.id,
        )
    store.commit()
    return db_loader.load_task(store.session, deliv.task_id)


def check_early_start(store: ScheduleStore, task_id: int) -> EarlyStartCheck:
    """Has this task started while some predecessor is still open?"""
    project_id = db_loader.project_id_for_task(store.session, task_id)
    graph = db_loader.load_project_graph(store.session, project_id)
    task = graph.task(task_id)
    if task.actual_start is None:
        return EarlyStartCheck(task_id=task_id, is_early_start=False)
    open_preds = [p for p in graph.predecessors(task_id) if graph.task(p).actual_end is None]
    return EarlyStartCheck(task_id=task_id, is_early_start=bool(open_preds), incomplete_predecessors=open_preds)
