from typing import List, Optional


class SchedulingError(Exception):
    """Base class for every scheduling failure surfaced to callers."""


class TaskNotFoundError(SchedulingError):
    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class DeliverableNotFoundError(SchedulingError):
    def __init__(self, deliverable_id: int):
        super().__init__(f"Deliverable {deliverable_id} not found")
        self.deliverable_id = deliverable_id


class CircularDependencyError(SchedulingError):
    def __init__(self, task_id: int, depends_on_task_id: int):
        super().__init__(
            f"Cannot make task {task_id} depend on task {depends_on_task_id}: "
            "would create a circular reference"
        )
        self.task_id = task_id
        self.depends_on_task_id = depends_on_task_id


class DuplicateDependencyError(SchedulingError):
    def __init__(self, task_id: int, depends_on_task_id: int):
        super().__init__(f"Task {task_id} already depends on task {depends_on_task_id}")
        self.task_id = task_id
        self.depends_on_task_id = depends_on_task_id


class DependencyNotFoundError(SchedulingError):
    def __init__(self, task_id: int, depends_on_task_id: int):
        super().__init__(f"Task {task_id} does not depend on task {depends_on_task_id}")
        self.task_id = task_id
        self.depends_on_task_id = depends_on_task_id


class MalformedChainError(SchedulingError):
    """Deliverable pointers under one task do not form simple linear chains."""

    def __init__(self, task_id: int, detail: str, deliverable_ids: Optional[List[int]] = None):
        super().__init__(f"Malformed deliverable chain in task {task_id}: {detail}")
        self.task_id = task_id
        self.deliverable_ids = list(deliverable_ids or [])


class StaleComputationError(SchedulingError):
    """A row changed underneath a cascade (optimistic version check failed)."""

    def __init__(self, task_id: int, expected_version: int):
        super().__init__(f"Task {task_id} was modified concurrently (expected version {expected_version})")
        self.task_id = task_id
        self.expected_version = expected_version


class LifecycleError(SchedulingError):
    pass


class PartialCascadeFailure(SchedulingError):
    """Raised when one or more node writes of a cascade failed.

    `result` is the CascadeResult listing updated, failed, skipped and planned
    task ids so the caller can retry or reconcile.
    """

    def __init__(self, result, cause: Optional[BaseException] = None):
        super().__init__(
            f"Cascade from task {result.origin_task_id} failed on tasks {result.failed}; "
            f"updated {result.updated}, skipped {result.skipped}"
        )
        self.result = result
        self.cause = cause
