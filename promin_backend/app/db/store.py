from datetime import date, datetime
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from promin_backend.app.scheduling.errors import (
    DeliverableNotFoundError,
    StaleComputationError,
    TaskNotFoundError,
)


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


class ScheduleStore:
    """Single-row writes against the relational store.

    Every method is one fallible unit of work; nothing here commits on its
    own, callers decide the transaction boundary with commit()/rollback().
    """

    def __init__(self, session: Session):
        self.session = session

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # ------------------------------
    # Seeding helpers
    # ------------------------------

    def create_project(self, name: str) -> int:
        new_id = self.session.execute(text("""
            INSERT INTO projects (name) VALUES (:name)
            RETURNING id
        """), {"name": name}).scalar_one()
        return int(new_id)

    def create_milestone(self, project_id: int, name: str = "", weight: float = 0.0) -> int:
        new_id = self.session.execute(text("""
            INSERT INTO milestones (project_id, name, weight) VALUES (:pid, :name, :w)
            RETURNING id
        """), {"pid": project_id, "name": name, "w": weight}).scalar_one()
        return int(new_id)

    def create_task(
        self,
        milestone_id: int,
        title: str = "",
        weight: float = 0.0,
        planned_start: Optional[date] = None,
        offset_days: int = 0,
    ) -> int:
        if offset_days < 0:
            raise ValueError("offset_days must be non-negative")
        new_id = self.session.execute(text("""
            INSERT INTO tasks (milestone_id, title, weight, planned_start, planned_end,
                               baseline_start, offset_days)
            VALUES (:mid, :title, :w, :ps, :ps, :ps, :off)
            RETURNING id
        """), {
            "mid": milestone_id,
            "title": title,
            "w": weight,
            "ps": _iso(planned_start),
            "off": offset_days,
        }).scalar_one()
        return int(new_id)

    def create_deliverable(
        self,
        task_id: int,
        title: str = "",
        duration_days: int = 0,
        weight: float = 0.0,
        depends_on_deliverable_id: Optional[int] = None,
    ) -> int:
        if duration_days < 0:
            raise ValueError("duration_days must be non-negative")
        new_id = self.session.execute(text("""
            INSERT INTO deliverables (task_id, title, duration_days, weight, depends_on_deliverable_id)
            VALUES (:tid, :title, :dur, :w, :dep)
            RETURNING id
        """), {
            "tid": task_id,
            "title": title,
            "dur": duration_days,
            "w": weight,
            "dep": depends_on_deliverable_id,
        }).scalar_one()
        return int(new_id)

    # ------------------------------
    # Dependency edges
    # ------------------------------

    def insert_dependency(self, task_id: int, depends_on_task_id: int) -> None:
        self.session.execute(text("""
            INSERT INTO task_dependencies (task_id, depends_on_task_id)
            VALUES (:tid, :dep)
        """), {"tid": task_id, "dep": depends_on_task_id})

    def delete_dependency(self, task_id: int, depends_on_task_id: int) -> bool:
        res = self.session.execute(text("""
            DELETE FROM task_dependencies
            WHERE task_id = :tid AND depends_on_task_id = :dep
        """), {"tid": task_id, "dep": depends_on_task_id})
        return res.rowcount > 0

    # ------------------------------
    # Task writes
    # ------------------------------

    def update_task_schedule(
        self,
        task_id: int,
        planned_start: date,
        planned_end: date,
        duration_days: int,
        expected_version: Optional[int] = None,
    ) -> None:
        params = {
            "tid": task_id,
            "ps": _iso(planned_start),
            "pe": _iso(planned_end),
            "dur": duration_days,
        }
        sql = """
            UPDATE tasks
            SET planned_start = :ps, planned_end = :pe, duration_days = :dur,
                version = version + 1
            WHERE id = :tid
        """
        if expected_version is not None:
            sql += " AND version = :ver"
            params["ver"] = expected_version
        res = self.session.execute(text(sql), params)
        if res.rowcount == 0:
            self._raise_missing_or_stale(task_id, expected_version)

    def update_task_fields(self, task_id: int, **fields) -> None:
        """Update plain task columns (baseline_start, offset_days, planned_start,
        actual_start, actual_end, ...) and bump the row version."""
        allowed = {
            "baseline_start", "planned_start", "planned_end", "offset_days",
            "actual_start", "actual_end", "weight",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"cannot update task columns {sorted(unknown)}")
        if not fields:
            return
        params = {"tid": task_id}
        sets = []
        for k, v in fields.items():
            params[k] = _iso(v) if isinstance(v, (date, datetime)) else v
            sets.append(f"{k} = :{k}")
        res = self.session.execute(text(f"""
            UPDATE tasks SET {", ".join(sets)}, version = version + 1
            WHERE id = :tid
        """), params)
        if res.rowcount == 0:
            raise TaskNotFoundError(task_id)

    def _raise_missing_or_stale(self, task_id: int, expected_version: Optional[int]) -> None:
        row = self.session.execute(text("""
            SELECT version FROM tasks WHERE id = :tid
        """), {"tid": task_id}).fetchone()
        if not row:
            raise TaskNotFoundError(task_id)
        raise StaleComputationError(task_id, expected_version)

    # ------------------------------
    # Deliverable writes
    # ------------------------------

    def update_deliverable_dates(self, deliverable_id: int, planned_start: date, planned_end: date) -> None:
        res = self.session.execute(text("""
            UPDATE deliverables SET planned_start = :ps, planned_end = :pe
            WHERE id = :did
        """), {"did": deliverable_id, "ps": _iso(planned_start), "pe": _iso(planned_end)})
        if res.rowcount == 0:
            raise DeliverableNotFoundError(deliverable_id)

    def update_deliverable_fields(self, deliverable_id: int, **fields) -> None:
        allowed = {"duration_days", "depends_on_deliverable_id", "weight", "is_done", "completed_at"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"cannot update deliverable columns {sorted(unknown)}")
        if not fields:
            return
        params = {"did": deliverable_id}
        sets = []
        for k, v in fields.items():
            params[k] = _iso(v) if isinstance(v, (date, datetime)) else v
            sets.append(f"{k} = :{k}")
        res = self.session.execute(text(f"""
            UPDATE deliverables SET {", ".join(sets)} WHERE id = :did
        """), params)
        if res.rowcount == 0:
            raise DeliverableNotFoundError(deliverable_id)
