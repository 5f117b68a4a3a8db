from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, field_validator, model_validator
from datetime import date, datetime


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


def derive_status(actual_start: Optional[date], actual_end: Optional[date]) -> TaskStatus:
    """Lifecycle status follows the actual dates, never the other way round."""
    if actual_end is not None:
        return TaskStatus.COMPLETED
    if actual_start is not None:
        return TaskStatus.IN_PROGRESS
    return TaskStatus.PENDING


class DependencyModel(BaseModel):
    task_id: int
    depends_on_task_id: int
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _no_self_loop(self):
        if self.task_id == self.depends_on_task_id:
            raise ValueError("a task cannot depend on itself")
        return self


class DeliverableModel(BaseModel):
    id: int
    task_id: int
    title: str = ""
    weight: float = 0.0
    duration_days: int = 0
    depends_on_deliverable_id: Optional[int] = None
    planned_start: Optional[date] = None
    planned_end: Optional[date] = None
    is_done: bool = False
    completed_at: Optional[datetime] = None

    @field_validator("duration_days", "weight")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @model_validator(mode="after")
    def _single_predecessor(self):
        if self.depends_on_deliverable_id is not None and self.depends_on_deliverable_id == self.id:
            raise ValueError("a deliverable cannot depend on itself")
        return self


class TaskModel(BaseModel):
    id: int
    milestone_id: int
    title: str = ""
    weight: float = 0.0
    planned_start: Optional[date] = None
    planned_end: Optional[date] = None
    baseline_start: Optional[date] = None
    actual_start: Optional[date] = None
    actual_end: Optional[date] = None
    duration_days: int = 0
    offset_days: int = 0
    status: TaskStatus = TaskStatus.PENDING
    version: int = 0
    # Risk inputs computed upstream; any of them may be absent
    is_delayed: Optional[bool] = None
    status_health: Optional[str] = None
    risk_state: Optional[str] = None

    @field_validator("duration_days", "offset_days", "weight")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class MilestoneModel(BaseModel):
    id: int
    project_id: int
    name: str = ""
    weight: float = 0.0


class ProjectModel(BaseModel):
    id: int
    name: str
    milestones: List[MilestoneModel] = []
    tasks: List[TaskModel] = []
    deliverables: List[DeliverableModel] = []
    dependencies: List[DependencyModel] = []
