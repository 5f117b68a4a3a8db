from datetime import date, datetime
from functools import partial
from typing import List, Optional
import logging

import anyio
from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from promin_backend import config
from promin_backend.app.db.database import get_db
from promin_backend.app.scheduling import (
    CircularDependencyError,
    DeliverableNotFoundError,
    DependencyNotFoundError,
    DuplicateDependencyError,
    LifecycleError,
    MalformedChainError,
    PartialCascadeFailure,
    SchedulingError,
    SiblingWeight,
    StaleComputationError,
    TaskNotFoundError,
    normalize,
)
from promin_backend.app.scheduling.service import SchedulingService

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger("api")

app = FastAPI(title="Promin scheduling")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class DependencyRequest(BaseModel):
    task_id: int
    depends_on_task_id: int


class NormalizeRequest(BaseModel):
    siblings: List[SiblingWeight]
    zero_policy: Optional[str] = None


class LifecycleRequest(BaseModel):
    on: Optional[date] = None


class PlannedStartRequest(BaseModel):
    planned_start: date


class OffsetRequest(BaseModel):
    offset_days: int


class DeliverableDoneRequest(BaseModel):
    is_done: bool
    when: Optional[datetime] = None


class DeliverableEditRequest(BaseModel):
    duration_days: Optional[int] = None
    depends_on_deliverable_id: Optional[int] = None
    clear_predecessor: bool = False


def get_service(db: Session = Depends(get_db)) -> SchedulingService:
    return SchedulingService(db)


async def _run(fn, *args, **kwargs):
    """Run a blocking service call off the event loop."""
    return await anyio.to_thread.run_sync(partial(fn, *args, **kwargs))


def _http_error(e: Exception, where: str):
    """Translate a domain failure into the HTTP error the caller sees."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, PartialCascadeFailure):
        return JSONResponse(
            status_code=207,
            content={
                "detail": str(e),
                "warning": (
                    "Some downstream tasks could not be updated; their dates may be stale until retried."
                    if e.result.updated else "Nothing was applied; retry the request."
                ),
                "cascade": e.result.model_dump(mode="json"),
            },
        )
    if isinstance(e, (TaskNotFoundError, DeliverableNotFoundError, DependencyNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (CircularDependencyError, DuplicateDependencyError, StaleComputationError, LifecycleError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, (MalformedChainError, SchedulingError, ValueError)):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    logger.exception("%s failed: %s", where, e)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


async def _call(where: str, fn, *args, **kwargs):
    try:
        return await _run(fn, *args, **kwargs)
    except Exception as e:
        err = _http_error(e, where)
        if isinstance(err, JSONResponse):
            return err
        raise err


@app.get("/")
async def root():
    return {"message": "Promin scheduling backend"}


@app.get("/debug/ping")
async def debug_ping():
    return {"pong": True}


# ------------------------------
# Dependencies
# ------------------------------

@app.get("/tasks/{task_id}/would-create-cycle")
async def would_create_cycle(
    task_id: int,
    depends_on: int = Query(..., description="Proposed predecessor task id"),
    service: SchedulingService = Depends(get_service),
):
    result = await _call("/tasks/would-create-cycle", service.would_create_cycle, task_id, depends_on)
    if isinstance(result, JSONResponse):
        return result
    return {"task_id": task_id, "depends_on_task_id": depends_on, "would_create_cycle": result}


@app.post("/dependencies", status_code=status.HTTP_201_CREATED)
async def create_dependency(request: DependencyRequest, service: SchedulingService = Depends(get_service)):
    """Create task_id -> depends_on_task_id. Rejected with 409 if it would close a loop."""
    return await _call("/dependencies", service.create_dependency, request.task_id, request.depends_on_task_id)


@app.delete("/dependencies")
async def delete_dependency(
    task_id: int = Query(...),
    depends_on: int = Query(...),
    service: SchedulingService = Depends(get_service),
):
    return await _call("/dependencies", service.delete_dependency, task_id, depends_on)


# ------------------------------
# Durations and cascade
# ------------------------------

@app.post("/tasks/{task_id}/recalculate")
async def recalculate_task(task_id: int, service: SchedulingService = Depends(get_service)):
    return await _call("/tasks/recalculate", service.recalculate_task_duration, task_id)


@app.post("/tasks/{task_id}/cascade")
async def cascade_task(task_id: int, service: SchedulingService = Depends(get_service)):
    """
    Recompute the task and push date changes to its successors.
    Responds 207 with updated/failed/skipped ids when some writes failed.
    """
    return await _call("/tasks/cascade", service.cascade_from, task_id)


@app.patch("/tasks/{task_id}/planned-start")
async def set_planned_start(task_id: int, request: PlannedStartRequest, service: SchedulingService = Depends(get_service)):
    return await _call("/tasks/planned-start", service.set_planned_start, task_id, request.planned_start)


@app.patch("/tasks/{task_id}/offset")
async def set_offset(task_id: int, request: OffsetRequest, service: SchedulingService = Depends(get_service)):
    return await _call("/tasks/offset", service.set_offset_days, task_id, request.offset_days)


@app.patch("/deliverables/{deliverable_id}")
async def edit_deliverable(
    deliverable_id: int,
    request: DeliverableEditRequest,
    service: SchedulingService = Depends(get_service),
):
    """Duration and predecessor changes are validated and applied as one edit."""
    fields = {}
    if request.duration_days is not None:
        fields["duration_days"] = request.duration_days
    if request.clear_predecessor:
        fields["depends_on_deliverable_id"] = None
    elif request.depends_on_deliverable_id is not None:
        fields["depends_on_deliverable_id"] = request.depends_on_deliverable_id
    if not fields:
        raise HTTPException(status_code=422, detail="Nothing to update")
    return await _call("/deliverables", service.edit_deliverable, deliverable_id, **fields)


# ------------------------------
# Weights, risk and progress
# ------------------------------

@app.post("/weights/normalize")
async def normalize_weights(request: NormalizeRequest):
    try:
        return normalize(request.siblings, request.zero_policy)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.get("/tasks/{task_id}/schedule-state")
async def task_schedule_state(
    task_id: int,
    as_of: Optional[date] = Query(None, description="Defaults to today"),
    service: SchedulingService = Depends(get_service),
):
    state = await _call("/tasks/schedule-state", service.schedule_state, task_id, as_of)
    return {"task_id": task_id, "schedule_state": state}


@app.get("/projects/{project_id}/progress")
async def project_progress(project_id: int, service: SchedulingService = Depends(get_service)):
    return await _call("/projects/progress", service.progress, project_id)


# ------------------------------
# Lifecycle
# ------------------------------

@app.post("/tasks/{task_id}/start")
async def start_task(task_id: int, request: LifecycleRequest | None = None, service: SchedulingService = Depends(get_service)):
    return await _call("/tasks/start", service.start_task, task_id, request.on if request else None)


@app.post("/tasks/{task_id}/complete")
async def complete_task(task_id: int, request: LifecycleRequest | None = None, service: SchedulingService = Depends(get_service)):
    return await _call("/tasks/complete", service.complete_task, task_id, request.on if request else None)


@app.post("/tasks/{task_id}/reopen")
async def reopen_task(task_id: int, service: SchedulingService = Depends(get_service)):
    return await _call("/tasks/reopen", service.reopen_task, task_id)


@app.get("/tasks/{task_id}/early-start")
async def early_start(task_id: int, service: SchedulingService = Depends(get_service)):
    return await _call("/tasks/early-start", service.check_early_start, task_id)


@app.patch("/deliverables/{deliverable_id}/done")
async def toggle_deliverable(
    deliverable_id: int,
    request: DeliverableDoneRequest,
    service: SchedulingService = Depends(get_service),
):
    return await _call("/deliverables/done", service.toggle_deliverable, deliverable_id, request.is_done, request.when)


if __name__ == "__main__":
    import uvicorn
    from promin_backend.app.db.database import engine, init_schema

    init_schema(engine)
    uvicorn.run(app, host=config.UVICORN_HOST, port=config.UVICORN_PORT)
