from .cascade import CascadePlan, CascadeResult, TaskChange, apply_plan, plan_cascade
from .cycle_guard import find_cycle, would_create_cycle
from .durations import (
    DeliverableDates,
    TaskSchedule,
    compute_task_schedule,
    layout_deliverables,
    partition_chains,
    task_duration_from_deliverables,
)
from .errors import (
    CircularDependencyError,
    DeliverableNotFoundError,
    DependencyNotFoundError,
    DuplicateDependencyError,
    LifecycleError,
    MalformedChainError,
    PartialCascadeFailure,
    SchedulingError,
    StaleComputationError,
    TaskNotFoundError,
)
from .graph import ScheduleGraph
from .risk import ScheduleState, schedule_state
from .weights import NormalizedWeight, SiblingWeight, normalize, rollup_progress

__all__ = [
    "ScheduleGraph",
    "would_create_cycle",
    "find_cycle",
    "partition_chains",
    "task_duration_from_deliverables",
    "compute_task_schedule",
    "layout_deliverables",
    "TaskSchedule",
    "DeliverableDates",
    "plan_cascade",
    "apply_plan",
    "CascadePlan",
    "CascadeResult",
    "TaskChange",
    "normalize",
    "rollup_progress",
    "SiblingWeight",
    "NormalizedWeight",
    "schedule_state",
    "ScheduleState",
    "SchedulingError",
    "TaskNotFoundError",
    "DeliverableNotFoundError",
    "DependencyNotFoundError",
    "CircularDependencyError",
    "DuplicateDependencyError",
    "MalformedChainError",
    "StaleComputationError",
    "LifecycleError",
    "PartialCascadeFailure",
]
