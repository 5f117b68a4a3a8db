import json
import sys
import os
from datetime import date

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))
from promin_backend.app.db.database import init_schema, make_engine
from promin_backend.app.db.store import ScheduleStore
from promin_backend.app.scheduling.service import SchedulingService
from sqlalchemy.orm import sessionmaker

DB_URL = os.getenv("DATABASE_URL", "sqlite:///./cascade_demo.db")


def _dump(label, model):
    print(f"\n=== {label} ===")
    print(json.dumps(model.model_dump(mode="json"), indent=2))


def main():
    engine = make_engine(DB_URL)
    init_schema(engine)
    db = sessionmaker(bind=engine)()
    try:
        store = ScheduleStore(db)
        pid = store.create_project("Cascade demo")
        mid = store.create_milestone(pid, "Build", weight=1.0)
        design = store.create_task(mid, "Design", planned_start=date(2026, 1, 5))
        store.create_deliverable(design, "Wireframes", duration_days=3, weight=1.0)
        build = store.create_task(mid, "Build", offset_days=2)
        api = store.create_deliverable(build, "API", duration_days=5, weight=2.0)
        store.create_deliverable(build, "UI", duration_days=4, weight=1.0, depends_on_deliverable_id=api)
        qa = store.create_task(mid, "QA")
        store.create_deliverable(qa, "Test pass", duration_days=2, weight=1.0)
        store.commit()

        svc = SchedulingService(db)
        _dump("cascade Design", svc.cascade_from(design))
        _dump("Build depends on Design", svc.create_dependency(build, design))
        _dump("QA depends on Build", svc.create_dependency(qa, build))
        _dump("Build recalculated", svc.recalculate_task_duration(build))
        _dump("move Design to Jan 12", svc.set_planned_start(design, date(2026, 1, 12)))
        print("\n=== would QA -> Design close a loop? ===")
        print(svc.would_create_cycle(design, qa))
        _dump("progress", svc.progress(pid))
    finally:
        db.close()


if __name__ == "__main__":
    main()
