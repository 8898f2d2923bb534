from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from extraction_queue.core.errors import InvalidTransitionError, WebhookEventNotFoundError
from extraction_queue.core.security import api_key_auth
from extraction_queue.db.crud import webhook_events as crud
from extraction_queue.db.models import WebhookEventStatus
from extraction_queue.db.session import get_db
from extraction_queue.schemas.dto import (
    RetryAllResponse,
    WebhookEventPage,
    WebhookEventResponse,
    WebhookStats,
)

router = APIRouter(dependencies=[Depends(api_key_auth)])


def _stats(counts: dict[str, int]) -> WebhookStats:
    return WebhookStats(**counts, total=sum(counts.values()))


@router.get("", response_model=WebhookEventPage)
def list_events(
    status_filter: Optional[WebhookEventStatus] = Query(default=None, alias="status"),
    tenant_id: Optional[int] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> WebhookEventPage:
    items, total = crud.list_events(db, status=status_filter, tenant_id=tenant_id, limit=limit, offset=offset)
    return WebhookEventPage(
        items=[WebhookEventResponse.from_model(e) for e in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=WebhookStats)
def event_stats(db: Session = Depends(get_db)) -> WebhookStats:
    return _stats(crud.count_by_status(db))


@router.get("/stats/tenant/{tenant_id}", response_model=WebhookStats)
def tenant_event_stats(tenant_id: int, db: Session = Depends(get_db)) -> WebhookStats:
    return _stats(crud.count_by_status(db, tenant_id=tenant_id))


@router.get("/entity/{entity_type}/{entity_id}", response_model=list[WebhookEventResponse])
def events_for_entity(entity_type: str, entity_id: int, db: Session = Depends(get_db)) -> list[WebhookEventResponse]:
    return [WebhookEventResponse.from_model(e) for e in crud.list_events_for_entity(db, entity_type, entity_id)]


@router.post("/retry-all-failed", response_model=RetryAllResponse)
def retry_all_failed(db: Session = Depends(get_db)) -> RetryAllResponse:
    count = crud.retry_all_failed(db)
    db.commit()
    return RetryAllResponse(retried=count)


@router.get("/{event_id}", response_model=WebhookEventResponse)
def get_event(event_id: int, db: Session = Depends(get_db)) -> WebhookEventResponse:
    event = crud.get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Webhook event not found: {event_id}")
    return WebhookEventResponse.from_model(event, include_payload=True)


@router.post("/{event_id}/retry", response_model=WebhookEventResponse)
def retry_event(event_id: int, db: Session = Depends(get_db)) -> WebhookEventResponse:
    """Queue a FAILED event for redelivery with a fresh attempt budget."""
    try:
        event = crud.retry_event(db, event_id)
    except WebhookEventNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    db.commit()
    return WebhookEventResponse.from_model(event)
