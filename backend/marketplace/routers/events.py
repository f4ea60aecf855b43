from typing import Optional

from fastapi import APIRouter, Depends, Query

from marketplace.auth import require_principal
from marketplace.models import ExpiringQuotation, Principal, StatusEvent, StatusEventPage
from marketplace.services.status_events import status_event_feed

router = APIRouter(prefix="/status-events", tags=["status-events"])


@router.get("", response_model=StatusEventPage)
def list_status_events(
    after_id: int = Query(default=0),
    limit: int = Query(default=50),
    subject_type: Optional[str] = Query(default=None),
    principal: Principal = Depends(require_principal),
):
    return status_event_feed.list_events(principal, after_id=after_id, limit=limit, subject_type=subject_type)


@router.get("/expiring-quotations", response_model=list[ExpiringQuotation])
def expiring_quotations(
    within_hours: int = Query(default=72),
    principal: Principal = Depends(require_principal),
):
    return status_event_feed.expiring_quotations(principal, within_hours=within_hours)


@router.get("/{event_id}", response_model=StatusEvent)
def get_status_event(event_id: int, principal: Principal = Depends(require_principal)):
    return status_event_feed.get_event(principal, event_id)
