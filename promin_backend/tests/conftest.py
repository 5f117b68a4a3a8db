"""
Test configuration and fixtures for the scheduling test suite.
"""
import pytest
from datetime import date
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from promin_backend.main import app, get_db
from promin_backend.app.db.database import init_schema, make_engine
from promin_backend.app.db.models import DeliverableModel, DependencyModel, TaskModel
from promin_backend.app.db.store import ScheduleStore
from promin_backend.app.scheduling.graph import ScheduleGraph
from promin_backend.app.scheduling.locks import ProjectLocks
from promin_backend.app.scheduling.service import SchedulingService

TODAY = date(2026, 1, 1)


@pytest.fixture
def test_engine(tmp_path):
    """Fresh SQLite database with the scheduling schema."""
    db_path = tmp_path / "test.db"
    engine = make_engine(f"sqlite:///{db_path}")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(db_session):
    return ScheduleStore(db_session)


@pytest.fixture
def service(db_session):
    """Atomic service with a frozen clock and private locks."""
    return SchedulingService(db_session, clock=lambda: TODAY, atomic=True, locks=ProjectLocks())


@pytest.fixture
def per_node_service(db_session):
    return SchedulingService(db_session, clock=lambda: TODAY, atomic=False, locks=ProjectLocks())


class ProjectBuilder:
    """Seeds one project with a single milestone."""

    def __init__(self, store: ScheduleStore, name: str = "Test project"):
        self.store = store
        self.project_id = store.create_project(name)
        self.milestone_id = store.create_milestone(self.project_id, "M1", weight=1.0)
        store.commit()

    def task(self, title, planned_start=None, offset_days=0, durations=(), chained=False, weight=0.0):
        tid = self.store.create_task(self.milestone_id, title, weight, planned_start, offset_days)
        prev = None
        for i, d in enumerate(durations):
            did = self.store.create_deliverable(
                tid, f"{title}-{i}", d, weight=1.0, depends_on_deliverable_id=prev if chained else None
            )
            prev = did
        self.store.commit()
        return tid

    def edge(self, task_id, depends_on_task_id):
        """Insert an edge without cascading (raw store write)."""
        self.store.insert_dependency(task_id, depends_on_task_id)
        self.store.commit()


@pytest.fixture
def builder(store):
    return ProjectBuilder(store)


@pytest.fixture
def client(session_factory):
    """Test client whose requests use the temporary database."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# ------------------------------
# In-memory graph helpers
# ------------------------------

def make_task(task_id, planned_start=None, planned_end=None, offset_days=0, **kw):
    return TaskModel(
        id=task_id,
        milestone_id=1,
        planned_start=planned_start,
        planned_end=planned_end,
        offset_days=offset_days,
        **kw,
    )


def make_deliverable(deliverable_id, task_id, duration_days, depends_on=None, **kw):
    return DeliverableModel(
        id=deliverable_id,
        task_id=task_id,
        duration_days=duration_days,
        depends_on_deliverable_id=depends_on,
        **kw,
    )


def make_graph(tasks, deliverables=(), edges=()):
    """edges are (task_id, depends_on_task_id) pairs."""
    return ScheduleGraph(
        tasks=tasks,
        deliverables=deliverables,
        dependencies=[DependencyModel(task_id=t, depends_on_task_id=p) for t, p in edges],
    )
