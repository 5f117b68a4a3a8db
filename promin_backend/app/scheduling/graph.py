from collections import deque
from typing import Dict, Iterable, List, Optional, Set

from promin_backend.app.db.models import DeliverableModel, DependencyModel, TaskModel

from .errors import TaskNotFoundError


class ScheduleGraph:
    """Snapshot of one project's tasks, deliverables and task-to-task edges.

    Edges are stored both ways: `preds[t]` holds the tasks t depends on and
    `succs[t]` the tasks depending on t. Every engine operation works on one
    snapshot so cycle checks and cascades never mix stale and fresh rows.
    """

    def __init__(
        self,
        tasks: Iterable[TaskModel] = (),
        deliverables: Iterable[DeliverableModel] = (),
        dependencies: Iterable[DependencyModel] = (),
        project_id: Optional[int] = None,
    ):
        self.project_id = project_id
        self.tasks: Dict[int, TaskModel] = {}
        self.deliverables: Dict[int, List[DeliverableModel]] = {}
        self.preds: Dict[int, Set[int]] = {}
        self.succs: Dict[int, Set[int]] = {}
        for t in tasks:
            self.add_task(t)
        for d in deliverables:
            self.deliverables.setdefault(d.task_id, []).append(d)
        for dep in dependencies:
            self.add_edge(dep.task_id, dep.depends_on_task_id)

    # ------------------------------
    # Mutation (snapshot only, never persisted from here)
    # ------------------------------

    def add_task(self, task: TaskModel) -> None:
        self.tasks[task.id] = task
        self.preds.setdefault(task.id, set())
        self.succs.setdefault(task.id, set())

    def add_edge(self, task_id: int, depends_on_task_id: int) -> None:
        self.preds.setdefault(task_id, set()).add(depends_on_task_id)
        self.succs.setdefault(depends_on_task_id, set()).add(task_id)

    def remove_edge(self, task_id: int, depends_on_task_id: int) -> None:
        self.preds.get(task_id, set()).discard(depends_on_task_id)
        self.succs.get(depends_on_task_id, set()).discard(task_id)

    def replace_task(self, task: TaskModel) -> None:
        self.tasks[task.id] = task

    # ------------------------------
    # Queries
    # ------------------------------

    def task(self, task_id: int) -> TaskModel:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise TaskNotFoundError(task_id)

    def has_task(self, task_id: int) -> bool:
        return task_id in self.tasks

    def has_edge(self, task_id: int, depends_on_task_id: int) -> bool:
        return depends_on_task_id in self.preds.get(task_id, set())

    def predecessors(self, task_id: int) -> List[int]:
        return sorted(self.preds.get(task_id, set()))

    def successors(self, task_id: int) -> List[int]:
        return sorted(self.succs.get(task_id, set()))

    def deliverables_of(self, task_id: int) -> List[DeliverableModel]:
        return list(self.deliverables.get(task_id, []))

    def edges(self) -> List[DependencyModel]:
        return [
            DependencyModel(task_id=t, depends_on_task_id=p)
            for t in sorted(self.preds)
            for p in sorted(self.preds[t])
        ]

    def reachable_from(self, origin: int) -> List[int]:
        """Breadth-first list of origin plus every transitive successor."""
        seen: Set[int] = {origin}
        order: List[int] = [origin]
        q = deque([origin])
        while q:
            u = q.popleft()
            for v in self.successors(u):
                if v not in seen:
                    seen.add(v)
                    order.append(v)
                    q.append(v)
        return order

    def level_order(self, origin: int) -> List[int]:
        """Topological order of the subgraph reachable from origin.

        A node appears only after every predecessor that is itself reachable
        from origin. Ties are broken by id for deterministic output. Nodes
        caught in a cycle (corrupted store) are appended last in BFS order
        instead of looping.
        """
        reach = self.reachable_from(origin)
        inside = set(reach)
        indeg: Dict[int, int] = {u: 0 for u in reach}
        for u in reach:
            for p in self.preds.get(u, set()):
                if p in inside and u != origin:
                    indeg[u] += 1
        ready: List[int] = [origin]
        order: List[int] = []
        placed: Set[int] = set()
        while ready:
            ready.sort()
            u = ready.pop(0)
            if u in placed:
                continue
            placed.add(u)
            order.append(u)
            for v in self.successors(u):
                if v in indeg and v not in placed:
                    indeg[v] -= 1
                    if indeg[v] == 0:
                        ready.append(v)
        if len(order) != len(reach):
            order.extend(u for u in reach if u not in placed)
        return order

    def copy(self) -> "ScheduleGraph":
        g = ScheduleGraph(project_id=self.project_id)
        g.tasks = {k: v.model_copy() for k, v in self.tasks.items()}
        g.deliverables = {k: [d.model_copy() for d in v] for k, v in self.deliverables.items()}
        g.preds = {k: set(v) for k, v in self.preds.items()}
        g.succs = {k: set(v) for k, v in self.succs.items()}
        return g
