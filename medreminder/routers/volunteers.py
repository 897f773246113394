# medreminder/routers/volunteers.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..dependencies import get_clock, get_escalation_service
from ..models import NotificationStatus
from ..security import rate_limit, require_admin_token
from ..services.escalation_service import EscalationService, NotificationStateError

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Volunteers"],
    dependencies=[Depends(require_admin_token), Depends(rate_limit("admin"))],
)


@router.get("/volunteers/notifications", response_model=List[schemas.VolunteerNotificationResponse])
def list_notifications(
    status_filter: Optional[NotificationStatus] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    return crud.list_volunteer_notifications(db, status=status_filter, skip=skip, limit=limit)


@router.post("/volunteers/notifications/{notification_id}/assign",
             response_model=schemas.VolunteerNotificationResponse)
def assign_notification(
    notification_id: int,
    body: schemas.NotificationAssign,
    escalation: EscalationService = Depends(get_escalation_service),
):
    try:
        return escalation.assign(notification_id, body.volunteer_id)
    except NotificationStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/volunteers/notifications/{notification_id}/respond",
             response_model=schemas.VolunteerNotificationResponse)
def respond_to_notification(
    notification_id: int,
    body: schemas.NotificationRespond,
    escalation: EscalationService = Depends(get_escalation_service),
    clock=Depends(get_clock),
):
    """Volunteer answer; may also settle the linked confirmation."""
    try:
        return escalation.respond(notification_id, body.response, clock(), outcome=body.outcome)
    except (NotificationStateError, crud.ConfirmationConflictError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
