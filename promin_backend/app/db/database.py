from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from promin_backend import config

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS projects (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS milestones (
        id INTEGER PRIMARY KEY,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        name TEXT NOT NULL DEFAULT '',
        weight REAL NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY,
        milestone_id INTEGER NOT NULL REFERENCES milestones(id) ON DELETE CASCADE,
        title TEXT NOT NULL DEFAULT '',
        weight REAL NOT NULL DEFAULT 0,
        planned_start DATE,
        planned_end DATE,
        baseline_start DATE,
        actual_start DATE,
        actual_end DATE,
        duration_days INTEGER NOT NULL DEFAULT 0,
        offset_days INTEGER NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 0,
        is_delayed BOOLEAN,
        status_health TEXT,
        risk_state TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deliverables (
        id INTEGER PRIMARY KEY,
        task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        title TEXT NOT NULL DEFAULT '',
        weight REAL NOT NULL DEFAULT 0,
        duration_days INTEGER NOT NULL DEFAULT 0,
        depends_on_deliverable_id INTEGER REFERENCES deliverables(id) ON DELETE SET NULL,
        planned_start DATE,
        planned_end DATE,
        is_done BOOLEAN NOT NULL DEFAULT 0,
        completed_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_dependencies (
        id INTEGER PRIMARY KEY,
        task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        depends_on_task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (task_id, depends_on_task_id),
        CHECK (task_id <> depends_on_task_id)
    )
    """,
]


def make_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are handed between the request thread and worker threads
        connect_args["check_same_thread"] = False
    eng = create_engine(url, echo=False, connect_args=connect_args)
    if url.startswith("sqlite"):
        @event.listens_for(eng, "connect")
        def _sqlite_fk_on(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()
    return eng


def init_schema(eng: Engine) -> None:
    with eng.begin() as conn:
        for stmt in SCHEMA:
            conn.execute(text(stmt))


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
