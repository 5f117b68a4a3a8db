from collections import deque
from typing import Dict, List, Optional, Set

from .graph import ScheduleGraph


def would_create_cycle(graph: ScheduleGraph, task_id: int, depends_on_task_id: int) -> bool:
    """Return True if adding the edge task_id -> depends_on_task_id closes a loop.

    Walks breadth-first from depends_on_task_id through its own predecessors.
    Reaching task_id means task_id is already upstream of the proposed
    predecessor, so the new edge would point back at it.
    """
    if task_id == depends_on_task_id:
        return True
    seen: Set[int] = {depends_on_task_id}
    q = deque([depends_on_task_id])
    while q:
        u = q.popleft()
        for p in graph.predecessors(u):
            if p == task_id:
                return True
            if p not in seen:
                seen.add(p)
                q.append(p)
    return False


def find_cycle(graph: ScheduleGraph) -> Optional[List[int]]:
    """Return one cycle among task edges as [a, b, ..., a], or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color: Dict[int, int] = {u: WHITE for u in graph.preds}
    for u in graph.succs:
        color.setdefault(u, WHITE)
    for root in sorted(color):
        if color[root] != WHITE:
            continue
        # Iterative DFS over successor edges: (node, remaining children)
        path: List[int] = []
        stack = [(root, iter(graph.successors(root)))]
        color[root] = GREY
        path.append(root)
        while stack:
            node, children = stack[-1]
            nxt = next(children, None)
            if nxt is None:
                color[node] = BLACK
                stack.pop()
                path.pop()
                continue
            if color.get(nxt, WHITE) == GREY:
                return path[path.index(nxt):] + [nxt]
            if color.get(nxt, WHITE) == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append((nxt, iter(graph.successors(nxt))))
    return None
