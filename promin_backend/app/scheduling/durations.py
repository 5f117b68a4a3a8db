from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from promin_backend.app.db.models import DeliverableModel, TaskModel

from .errors import MalformedChainError
from .graph import ScheduleGraph


class TaskSchedule(BaseModel):
    task_id: int
    duration_days: int
    planned_start: date
    planned_end: date


class DeliverableDates(BaseModel):
    deliverable_id: int
    planned_start: date
    planned_end: date


# ------------------------------
# Deliverable chains
# ------------------------------

def partition_chains(task_id: int, deliverables: List[DeliverableModel]) -> List[List[DeliverableModel]]:
    """Split a task's deliverables into ordered chains (head first).

    Each deliverable may name one predecessor and may be named by at most one
    successor. Anything else (pointer cycle, branching, pointer leaving the
    task) raises MalformedChainError before any arithmetic happens.
    """
    by_id: Dict[int, DeliverableModel] = {d.id: d for d in deliverables}
    successor_of: Dict[int, int] = {}
    for d in deliverables:
        p = d.depends_on_deliverable_id
        if p is None:
            continue
        if p == d.id:
            raise MalformedChainError(task_id, f"deliverable {d.id} depends on itself", [d.id])
        if p not in by_id:
            raise MalformedChainError(
                task_id, f"deliverable {d.id} depends on {p}, which is not part of this task", [d.id, p]
            )
        if p in successor_of:
            raise MalformedChainError(
                task_id,
                f"deliverable {p} has more than one dependent ({successor_of[p]}, {d.id})",
                [p, successor_of[p], d.id],
            )
        successor_of[p] = d.id

    chains: List[List[DeliverableModel]] = []
    placed = set()
    heads = sorted(d.id for d in deliverables if d.depends_on_deliverable_id is None)
    for head in heads:
        chain: List[DeliverableModel] = []
        cur: Optional[int] = head
        while cur is not None:
            chain.append(by_id[cur])
            placed.add(cur)
            cur = successor_of.get(cur)
        chains.append(chain)

    # Whatever was never reached from a head sits on a pointer loop
    stranded = sorted(set(by_id) - placed)
    if stranded:
        raise MalformedChainError(task_id, f"pointer cycle among deliverables {stranded}", stranded)
    return chains


def chain_duration(chain: List[DeliverableModel]) -> int:
    return sum(d.duration_days for d in chain)


def task_duration_from_deliverables(task_id: int, deliverables: List[DeliverableModel]) -> int:
    """Sequential members add up; independent chains run in parallel."""
    chains = partition_chains(task_id, deliverables)
    return max((chain_duration(c) for c in chains), default=0)


# ------------------------------
# Dates
# ------------------------------

def _independent_start(task: TaskModel, today: date) -> date:
    return task.baseline_start or task.planned_start or today


def resolve_planned_start(graph: ScheduleGraph, task: TaskModel, today: date) -> date:
    """Start date of a task given the current snapshot.

    With predecessors the task starts offset_days after the latest predecessor
    end. Without predecessors (or when none has an end date yet) the user
    baseline is kept.
    """
    ends = [
        graph.task(p).planned_end
        for p in graph.predecessors(task.id)
        if graph.has_task(p) and graph.task(p).planned_end is not None
    ]
    if ends:
        return max(ends) + timedelta(days=task.offset_days)
    return _independent_start(task, today)


def compute_task_schedule(graph: ScheduleGraph, task_id: int, today: date) -> TaskSchedule:
    task = graph.task(task_id)
    duration = task_duration_from_deliverables(task_id, graph.deliverables_of(task_id))
    start = resolve_planned_start(graph, task, today)
    return TaskSchedule(
        task_id=task_id,
        duration_days=duration,
        planned_start=start,
        planned_end=start + timedelta(days=duration),
    )


def layout_deliverables(task_id: int, deliverables: List[DeliverableModel], task_start: date) -> List[DeliverableDates]:
    """Place every deliverable on the calendar from the task start.

    Chain heads start with the task; each following member starts when its
    predecessor ends.
    """
    out: List[DeliverableDates] = []
    for chain in partition_chains(task_id, deliverables):
        cursor = task_start
        for d in chain:
            end = cursor + timedelta(days=d.duration_days)
            out.append(DeliverableDates(deliverable_id=d.id, planned_start=cursor, planned_end=end))
            cursor = end
    out.sort(key=lambda x: x.deliverable_id)
    return out


def deliverable_date_changes(
    task_id: int, deliverables: List[DeliverableModel], task_start: date
) -> List[DeliverableDates]:
    """Only the deliverables whose stored dates differ from the layout."""
    current: Dict[int, Tuple[Optional[date], Optional[date]]] = {
        d.id: (d.planned_start, d.planned_end) for d in deliverables
    }
    return [
        dd for dd in layout_deliverables(task_id, deliverables, task_start)
        if current.get(dd.deliverable_id) != (dd.planned_start, dd.planned_end)
    ]
