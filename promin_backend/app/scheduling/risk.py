from datetime import date
from enum import Enum

from promin_backend.app.db.models import TaskModel, TaskStatus


class ScheduleState(str, Enum):
    ON_TRACK = "ON_TRACK"
    BEHIND = "BEHIND"
    DELAYED = "DELAYED"


def schedule_state(task: TaskModel, as_of: date) -> ScheduleState:
    """Classify a task for cards and diagrams. First match wins:

    1. completed tasks are ON_TRACK, however late they finished
    2. canonical risk_state when present: DELAYED, AT_RISK -> BEHIND, else ON_TRACK
    3. fallback: is_delayed or health RISK -> DELAYED, planned_end before
       as_of -> DELAYED, health WARN -> BEHIND, otherwise ON_TRACK
    """
    if task.status == TaskStatus.COMPLETED:
        return ScheduleState.ON_TRACK

    if task.risk_state:
        risk = task.risk_state.upper()
        if risk == "DELAYED":
            return ScheduleState.DELAYED
        if risk == "AT_RISK":
            return ScheduleState.BEHIND
        return ScheduleState.ON_TRACK

    health = (task.status_health or "").upper()
    if task.is_delayed:
        return ScheduleState.DELAYED
    if health == "RISK":
        return ScheduleState.DELAYED
    if task.planned_end is not None and task.planned_end < as_of:
        return ScheduleState.DELAYED
    if health == "WARN":
        return ScheduleState.BEHIND
    return ScheduleState.ON_TRACK
