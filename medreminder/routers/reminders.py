# medreminder/routers/reminders.py
# Caregiver-facing reminder management.
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..civil_time import civil_today, to_civil
from ..database import get_db
from ..dependencies import get_clock, get_confirmation_processor
from ..models import DeliveryStatus
from ..security import rate_limit, require_admin_token
from ..services.confirmation_service import ConfirmationProcessor
from ..services.recurrence import RecurrenceRule, expand_occurrence_dates

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Reminders"],
    dependencies=[Depends(require_admin_token), Depends(rate_limit("admin"))],
    responses={404: {"description": "Not found"}},
)


@router.post("/reminders/patients/{patient_id}", response_model=schemas.ReminderScheduleResponse,
             status_code=status.HTTP_201_CREATED)
def create_reminder(
    patient_id: int,
    reminder: schemas.ReminderCreate,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Create a reminder and expand it into dated occurrences."""
    patient = crud.get_patient(db, patient_id)
    if not patient:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")

    start_date = reminder.start_date or civil_today(clock())
    if reminder.recurrence:
        rule = RecurrenceRule(**reminder.recurrence.model_dump())
        dates = expand_occurrence_dates(start_date, rule)
        recurrence = reminder.recurrence.model_dump()
    else:
        dates = sorted(set(reminder.selected_dates))
        recurrence = None

    if not dates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No dates specified for reminder")

    schedule = crud.create_reminder_schedule(
        db,
        patient_id=patient.id,
        message=reminder.message,
        scheduled_time=reminder.time,
        start_date=start_date,
        occurrence_dates=dates,
        recurrence=recurrence,
        created_by=reminder.created_by,
    )
    logger.info(f"Created reminder schedule {schedule.id} for patient {patient.id} with {len(dates)} occurrences")
    return {
        "id": schedule.id,
        "patient_id": patient.id,
        "scheduled_time": schedule.scheduled_time,
        "message": schedule.message,
        "occurrence_count": len(dates),
        "first_date": dates[0],
        "last_date": dates[-1],
    }


@router.get("/reminders/patients/{patient_id}", response_model=List[schemas.OccurrenceResponse])
def list_reminders(patient_id: int, include_inactive: bool = False, db: Session = Depends(get_db)):
    patient = crud.get_patient(db, patient_id)
    if not patient:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")

    results = []
    for occurrence in crud.list_patient_occurrences(db, patient_id, include_inactive=include_inactive):
        logs = sorted(occurrence.delivery_logs, key=lambda entry: entry.id)
        delivered = next((entry for entry in logs if entry.status == DeliveryStatus.DELIVERED), None)
        latest = delivered or (logs[-1] if logs else None)
        results.append({
            "id": occurrence.id,
            "patient_id": occurrence.patient_id,
            "scheduled_time": occurrence.scheduled_time,
            "civil_date": to_civil(occurrence.occurrence_date).date(),
            "message": occurrence.message,
            "is_active": occurrence.is_active,
            "delivery_status": latest.status if latest else None,
            "confirmation_status": delivered.confirmation.status if delivered and delivered.confirmation else None,
        })
    return results


@router.delete("/reminders/{occurrence_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_reminder(occurrence_id: int, db: Session = Depends(get_db), clock=Depends(get_clock)):
    occurrence = crud.deactivate_occurrence(db, occurrence_id, clock())
    if not occurrence:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reminder not found")


@router.post("/reminders/deliveries/{delivery_log_id}/confirmation", response_model=schemas.ConfirmationResponse)
def confirm_manually(
    delivery_log_id: int,
    body: schemas.ManualConfirmationRequest,
    processor: ConfirmationProcessor = Depends(get_confirmation_processor),
    clock=Depends(get_clock),
):
    """Caregiver marks a delivered reminder as taken / not taken."""
    try:
        return processor.manual_override(delivery_log_id, body.taken, clock(), note=body.note)
    except crud.ConfirmationConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Confirmation was already resolved",
                "status": e.confirmation.status.value,
                "resolved_by": e.confirmation.resolved_by,
            },
        )
    except crud.CRUDError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
