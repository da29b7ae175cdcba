import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from aggregates import AggregateConsistencyError
from budget import BudgetPlanningService
from config import get_settings
from database import SessionLocal
from periods import BudgetPeriodKey
from reports import ReportAggregationService
from scheduler import RebuildTask, TaskManager
from schemas import PlannedValueOut, ReportPointOut, ReportQueryIn, TaskInfoOut

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Aggregates")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: int = Header(...)) -> int:
    if x_user_id < 1:
        raise HTTPException(status_code=400, detail="Invalid user id")
    return x_user_id


task_manager = TaskManager()


@app.on_event("startup")
def startup_event():
    task_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    task_manager.stop()


@app.exception_handler(AggregateConsistencyError)
def consistency_error_handler(request: Request, exc: AggregateConsistencyError):
    logger.warning(f"consistency_error: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=503, content={"detail": "Temporary conflict, try again"}
    )


def _task_out(task: RebuildTask) -> TaskInfoOut:
    return TaskInfoOut(
        id=task.id,
        user_id=task.user_id,
        status=task.status.value,
        processed=task.processed,
        total=task.total,
        error=task.error,
    )


def _owned_task(task_id: str, user_id: int) -> RebuildTask:
    task = task_manager.get(task_id)
    if task is None or task.user_id != user_id:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.post("/admin/aggregates/rebuild", response_model=TaskInfoOut, status_code=202)
def rebuild_aggregates(user_id: int = Depends(current_user_id)):
    return _task_out(task_manager.enqueue_rebuild(user_id))


@app.get("/tasks/{task_id}", response_model=TaskInfoOut)
def task_status(task_id: str, user_id: int = Depends(current_user_id)):
    return _task_out(_owned_task(task_id, user_id))


@app.post("/tasks/{task_id}/cancel", response_model=TaskInfoOut)
def cancel_task(task_id: str, user_id: int = Depends(current_user_id)):
    _owned_task(task_id, user_id)
    return _task_out(task_manager.cancel(task_id))


@app.post("/reports/query", response_model=List[ReportPointOut])
def query_report(
    payload: ReportQueryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    points = ReportAggregationService(db, user_id).query(payload)
    return [ReportPointOut.model_validate(p) for p in points]


@app.get("/budget/planned", response_model=List[PlannedValueOut])
def planned_values(
    from_period: str = Query(..., alias="from"),
    to_period: str = Query(..., alias="to"),
    purpose_id: Optional[List[int]] = Query(None),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        start = BudgetPeriodKey.parse(from_period)
        end = BudgetPeriodKey.parse(to_period)
        result = BudgetPlanningService(db).calculate_planned_values(
            user_id, purpose_id, start, end
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        PlannedValueOut(
            purpose_id=v.purpose_id, period=str(v.period), amount_cents=v.amount_cents
        )
        for v in result.values
    ]


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("main:app", host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
