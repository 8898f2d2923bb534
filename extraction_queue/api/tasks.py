from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from extraction_queue.core.errors import InvalidTransitionError, TaskNotFoundError
from extraction_queue.core.security import api_key_auth
from extraction_queue.db.crud import tasks as crud
from extraction_queue.db.models import TaskStatus
from extraction_queue.db.session import get_db
from extraction_queue.db.types import utcnow
from extraction_queue.schemas.dto import TaskResponse, TaskStats
from extraction_queue.workers.aggregator import CompletionAggregator
from extraction_queue.workers.scheduler import build_aggregator

router = APIRouter(dependencies=[Depends(api_key_auth)])


def get_aggregator() -> CompletionAggregator:
    return build_aggregator()


@router.get("", response_model=list[TaskResponse])
def list_tasks(
    status_filter: Optional[TaskStatus] = Query(default=None, alias="status"),
    email_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[TaskResponse]:
    tasks = crud.list_tasks(db, status=status_filter, email_id=email_id, limit=limit, offset=offset)
    return [TaskResponse.from_model(t) for t in tasks]


@router.get("/stats", response_model=TaskStats)
def task_stats(db: Session = Depends(get_db)) -> TaskStats:
    counts = crud.count_by_status(db)
    return TaskStats(**counts, total=sum(counts.values()))


@router.get("/{task_id}", response_model=TaskResponse)
def get_task(task_id: int, db: Session = Depends(get_db)) -> TaskResponse:
    task = crud.get_task(db, task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task not found: {task_id}")
    return TaskResponse.from_model(task)


@router.post("/{task_id}/retry", response_model=TaskResponse)
def retry_task(task_id: int, db: Session = Depends(get_db)) -> TaskResponse:
    """Give a FAILED task a fresh attempt budget."""
    try:
        task = crud.retry_task(db, task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    db.commit()
    return TaskResponse.from_model(task)


@router.post("/{task_id}/cancel", response_model=TaskResponse)
def cancel_task(
    task_id: int,
    db: Session = Depends(get_db),
    aggregator: CompletionAggregator = Depends(get_aggregator),
) -> TaskResponse:
    try:
        task = crud.cancel_task(db, task_id, utcnow())
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    db.commit()
    aggregator.check_email_completion(task.email_id)
    return TaskResponse.from_model(task)
