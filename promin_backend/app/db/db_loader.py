from typing import Optional

from sqlalchemy import text

from promin_backend.app.scheduling.errors import DeliverableNotFoundError, TaskNotFoundError
from promin_backend.app.scheduling.graph import ScheduleGraph

from .models import (
    DeliverableModel,
    DependencyModel,
    MilestoneModel,
    ProjectModel,
    TaskModel,
    derive_status,
)

TASK_COLUMNS = """
    t.id, t.milestone_id, t.title, t.weight, t.planned_start, t.planned_end,
    t.baseline_start, t.actual_start, t.actual_end, t.duration_days, t.offset_days,
    t.version, t.is_delayed, t.status_health, t.risk_state
"""

DELIVERABLE_COLUMNS = """
    d.id, d.task_id, d.title, d.weight, d.duration_days, d.depends_on_deliverable_id,
    d.planned_start, d.planned_end, d.is_done, d.completed_at
"""


def _task_from_row(row) -> TaskModel:
    return TaskModel(
        id=row.id,
        milestone_id=row.milestone_id,
        title=row.title or "",
        weight=row.weight or 0.0,
        planned_start=row.planned_start,
        planned_end=row.planned_end,
        baseline_start=row.baseline_start,
        actual_start=row.actual_start,
        actual_end=row.actual_end,
        duration_days=row.duration_days or 0,
        offset_days=row.offset_days or 0,
        status=derive_status(row.actual_start, row.actual_end),
        version=row.version or 0,
        is_delayed=None if row.is_delayed is None else bool(row.is_delayed),
        status_health=row.status_health,
        risk_state=row.risk_state,
    )


def _deliverable_from_row(row) -> DeliverableModel:
    return DeliverableModel(
        id=row.id,
        task_id=row.task_id,
        title=row.title or "",
        weight=row.weight or 0.0,
        duration_days=row.duration_days or 0,
        depends_on_deliverable_id=row.depends_on_deliverable_id,
        planned_start=row.planned_start,
        planned_end=row.planned_end,
        is_done=bool(row.is_done),
        completed_at=row.completed_at,
    )


def project_id_for_task(session, task_id: int) -> int:
    row = session.execute(text("""
        SELECT m.project_id
        FROM tasks t
        JOIN milestones m ON m.id = t.milestone_id
        WHERE t.id = :tid
    """), {"tid": task_id}).fetchone()
    if not row:
        raise TaskNotFoundError(task_id)
    return int(row.project_id)


def load_task(session, task_id: int) -> TaskModel:
    row = session.execute(text(f"""
        SELECT {TASK_COLUMNS} FROM tasks t WHERE t.id = :tid
    """), {"tid": task_id}).fetchone()
    if not row:
        raise TaskNotFoundError(task_id)
    return _task_from_row(row)


def load_deliverable(session, deliverable_id: int) -> DeliverableModel:
    row = session.execute(text(f"""
        SELECT {DELIVERABLE_COLUMNS} FROM deliverables d WHERE d.id = :did
    """), {"did": deliverable_id}).fetchone()
    if not row:
        raise DeliverableNotFoundError(deliverable_id)
    return _deliverable_from_row(row)


def load_project_from_db(session, project_id: int) -> ProjectModel:
    proj = session.execute(text("""
        SELECT id, name FROM projects WHERE id = :pid
    """), {"pid": project_id}).fetchone()
    name: Optional[str] = proj.name if proj else None

    ms_rows = session.execute(text("""
        SELECT id, project_id, name, weight FROM milestones
        WHERE project_id = :pid ORDER BY id
    """), {"pid": project_id}).fetchall()

    task_rows = session.execute(text(f"""
        SELECT {TASK_COLUMNS}
        FROM tasks t
        JOIN milestones m ON m.id = t.milestone_id
        WHERE m.project_id = :pid
        ORDER BY t.id
    """), {"pid": project_id}).fetchall()

    deliv_rows = session.execute(text(f"""
        SELECT {DELIVERABLE_COLUMNS}
        FROM deliverables d
        JOIN tasks t ON t.id = d.task_id
        JOIN milestones m ON m.id = t.milestone_id
        WHERE m.project_id = :pid
        ORDER BY d.id
    """), {"pid": project_id}).fetchall()

    # Edges are kept only when both ends belong to the project
    dep_rows = session.execute(text("""
        SELECT dep.task_id, dep.depends_on_task_id, dep.created_at
        FROM task_dependencies dep
        JOIN tasks t ON t.id = dep.task_id
        JOIN milestones m ON m.id = t.milestone_id
        JOIN tasks p ON p.id = dep.depends_on_task_id
        JOIN milestones pm ON pm.id = p.milestone_id
        WHERE m.project_id = :pid AND pm.project_id = :pid
        ORDER BY dep.task_id, dep.depends_on_task_id
    """), {"pid": project_id}).fetchall()

    return ProjectModel(
        id=project_id,
        name=name or f"Project {project_id}",
        milestones=[
            MilestoneModel(id=r.id, project_id=r.project_id, name=r.name or "", weight=r.weight or 0.0)
            for r in ms_rows
        ],
        tasks=[_task_from_row(r) for r in task_rows],
        deliverables=[_deliverable_from_row(r) for r in deliv_rows],
        dependencies=[
            DependencyModel(task_id=r.task_id, depends_on_task_id=r.depends_on_task_id, created_at=r.created_at)
            for r in dep_rows
        ],
    )


def load_project_graph(session, project_id: int) -> ScheduleGraph:
    project = load_project_from_db(session, project_id)
    return ScheduleGraph(
        tasks=project.tasks,
        deliverables=project.deliverables,
        dependencies=project.dependencies,
        project_id=project_id,
    )
