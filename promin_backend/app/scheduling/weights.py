from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from promin_backend import config

WEIGHT_TOLERANCE = 1e-9


class SiblingWeight(BaseModel):
    id: int
    raw_weight: float


class NormalizedWeight(BaseModel):
    id: int
    normalized_weight: float


def normalize(siblings: Iterable[SiblingWeight], zero_policy: Optional[str] = None) -> List[NormalizedWeight]:
    """Turn raw sibling weights into shares of 1.0.

    When every raw weight is zero the zero_policy decides: "equal" splits
    evenly, "zero" gives everyone 0. A lone sibling is no exception: it gets
    1.0 unless its weight is zero under the "zero" policy.
    """
    items = list(siblings)
    policy = (zero_policy or config.WEIGHT_ZERO_POLICY).lower()
    if policy not in ("equal", "zero"):
        raise ValueError(f"unknown zero-weight policy {policy!r}")
    for s in items:
        if s.raw_weight < 0:
            raise ValueError(f"weight of {s.id} is negative")
    if not items:
        return []
    total = sum(s.raw_weight for s in items)
    if total <= 0:
        share = 1.0 / len(items) if policy == "equal" else 0.0
        return [NormalizedWeight(id=s.id, normalized_weight=share) for s in items]
    return [NormalizedWeight(id=s.id, normalized_weight=s.raw_weight / total) for s in items]


def weight_map(siblings: Iterable[SiblingWeight], zero_policy: Optional[str] = None) -> Dict[int, float]:
    return {w.id: w.normalized_weight for w in normalize(siblings, zero_policy)}


# ------------------------------
# Weighted progress rollup
# ------------------------------

class ProgressRollup(BaseModel):
    project: float
    milestones: Dict[int, float]
    tasks: Dict[int, float]


def rollup_progress(project, zero_policy: Optional[str] = None) -> ProgressRollup:
    """Weighted completion of a ProjectModel, each level in [0, 1].

    A task's progress is the normalized weight of its done deliverables; a
    milestone's is the weighted sum of its tasks; the project's is the
    weighted sum of its milestones. A task without deliverables counts as
    done only once it is completed.
    """
    delivs_by_task: Dict[int, list] = {}
    for d in project.deliverables:
        delivs_by_task.setdefault(d.task_id, []).append(d)
    tasks_by_ms: Dict[int, list] = {}
    for t in project.tasks:
        tasks_by_ms.setdefault(t.milestone_id, []).append(t)

    task_progress: Dict[int, float] = {}
    for t in project.tasks:
        delivs = delivs_by_task.get(t.id, [])
        if not delivs:
            task_progress[t.id] = 1.0 if t.is_completed else 0.0
            continue
        w = weight_map([SiblingWeight(id=d.id, raw_weight=d.weight) for d in delivs], zero_policy)
        task_progress[t.id] = sum(w[d.id] for d in delivs if d.is_done)

    ms_progress: Dict[int, float] = {}
    for m in project.milestones:
        tasks = tasks_by_ms.get(m.id, [])
        w = weight_map([SiblingWeight(id=t.id, raw_weight=t.weight) for t in tasks], zero_policy)
        ms_progress[m.id] = sum(w[t.id] * task_progress[t.id] for t in tasks)

    w = weight_map([SiblingWeight(id=m.id, raw_weight=m.weight) for m in project.milestones], zero_policy)
    overall = sum(w[m.id] * ms_progress[m.id] for m in project.milestones)
    return ProgressRollup(project=overall, milestones=ms_progress, tasks=task_progress)
