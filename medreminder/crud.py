# medreminder/crud.py
# Persistence operations consumed by the reminder engine.
import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import and_, exists, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .models import ConfirmationStatus, DeliveryStatus, OPEN_CONFIRMATION_STATUSES
from .civil_time import civil_midnight_utc

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    """Custom exception for CRUD operations"""
    pass


class DuplicateDeliveryError(CRUDError):
    """A DELIVERED log already exists for the occurrence"""
    pass


class ConfirmationConflictError(CRUDError):
    """The confirmation was already resolved by another path"""

    def __init__(self, confirmation: "models.Confirmation"):
        self.confirmation = confirmation
        super().__init__(
            f"Confirmation {confirmation.id} already resolved as {confirmation.status.value}"
            f" by {confirmation.resolved_by or 'unknown'}"
        )


# --- Patients / volunteers ---

def get_patient(db: Session, patient_id: int) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(
        models.Patient.id == patient_id,
        models.Patient.deleted_at.is_(None),
    ).first()


def get_patient_by_phone(db: Session, phone_variants: Iterable[str]) -> Optional[models.Patient]:
    variants = list(phone_variants)
    if not variants:
        return None
    return db.query(models.Patient).filter(
        models.Patient.phone_number.in_(variants),
        models.Patient.is_active.is_(True),
        models.Patient.deleted_at.is_(None),
    ).order_by(models.Patient.id.desc()).first()


def get_active_volunteers(db: Session) -> List[models.Volunteer]:
    return db.query(models.Volunteer).filter(models.Volunteer.is_active.is_(True)).all()


# --- Reminder schedules & occurrences ---

def create_reminder_schedule(
    db: Session,
    patient_id: int,
    message: str,
    scheduled_time: str,
    start_date: date,
    occurrence_dates: List[date],
    recurrence: Optional[dict] = None,
    created_by: Optional[str] = None,
) -> models.ReminderSchedule:
    """Persist the schedule and one occurrence per date in a single transaction."""
    recurrence = recurrence or {}
    schedule = models.ReminderSchedule(
        patient_id=patient_id,
        message=message,
        scheduled_time=scheduled_time,
        start_date=start_date,
        frequency=recurrence.get("frequency"),
        interval=recurrence.get("interval") or 1,
        days_of_week=recurrence.get("days_of_week"),
        end_type=recurrence.get("end_type"),
        end_date=recurrence.get("end_date"),
        occurrence_limit=recurrence.get("occurrences"),
        created_by=created_by,
    )
    db.add(schedule)
    db.flush()
    for day in occurrence_dates:
        db.add(models.ReminderOccurrence(
            schedule_id=schedule.id,
            patient_id=patient_id,
            scheduled_time=scheduled_time,
            occurrence_date=civil_midnight_utc(day),
            message=message,
            is_active=True,
        ))
    db.commit()
    db.refresh(schedule)
    return schedule


def list_patient_occurrences(db: Session, patient_id: int, include_inactive: bool = False) -> List[models.ReminderOccurrence]:
    query = db.query(models.ReminderOccurrence).filter(models.ReminderOccurrence.patient_id == patient_id)
    if not include_inactive:
        query = query.filter(
            models.ReminderOccurrence.is_active.is_(True),
            models.ReminderOccurrence.deleted_at.is_(None),
        )
    return query.order_by(
        models.ReminderOccurrence.occurrence_date,
        models.ReminderOccurrence.scheduled_time,
    ).all()


def deactivate_occurrence(db: Session, occurrence_id: int, now: datetime) -> Optional[models.ReminderOccurrence]:
    occurrence = db.query(models.ReminderOccurrence).filter(
        models.ReminderOccurrence.id == occurrence_id
    ).first()
    if not occurrence:
        return None
    occurrence.is_active = False
    occurrence.deleted_at = now
    db.commit()
    db.refresh(occurrence)
    return occurrence


def _delivered_exists(occurrence_id_column):
    return exists().where(and_(
        models.DeliveryLog.occurrence_id == occurrence_id_column,
        models.DeliveryLog.status == DeliveryStatus.DELIVERED,
    ))


def _undelivered_query(db: Session, window_start: datetime, window_end: datetime):
    occ = models.ReminderOccurrence
    return db.query(occ).filter(
        occ.is_active.is_(True),
        occ.deleted_at.is_(None),
        occ.occurrence_date >= window_start,
        occ.occurrence_date <= window_end,
        ~_delivered_exists(occ.id),
    )


def count_undelivered_occurrences(db: Session, window_start: datetime, window_end: datetime) -> int:
    return _undelivered_query(db, window_start, window_end).count()


def get_undelivered_occurrences(
    db: Session,
    window_start: datetime,
    window_end: datetime,
    offset: int = 0,
    limit: Optional[int] = None,
) -> List[models.ReminderOccurrence]:
    query = _undelivered_query(db, window_start, window_end).order_by(
        models.ReminderOccurrence.scheduled_time,
        models.ReminderOccurrence.id,
    )
    if offset:
        query = query.offset(offset)
    if limit:
        query = query.limit(limit)
    return query.all()


def has_delivered_log(db: Session, occurrence_id: int) -> bool:
    return db.query(_delivered_exists(occurrence_id)).scalar()


def create_delivery_log(
    db: Session,
    occurrence: models.ReminderOccurrence,
    status: DeliveryStatus,
    sent_at: datetime,
    phone_number: str,
    provider: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    error: Optional[str] = None,
) -> models.DeliveryLog:
    log_entry = models.DeliveryLog(
        occurrence_id=occurrence.id,
        patient_id=occurrence.patient_id,
        sent_at=sent_at,
        status=status,
        provider=provider,
        provider_message_id=provider_message_id,
        message=occurrence.message,
        phone_number=phone_number,
        error=error,
    )
    db.add(log_entry)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateDeliveryError(
            f"Occurrence {occurrence.id} already has a DELIVERED log"
        ) from exc
    db.refresh(log_entry)
    return log_entry


def get_delivery_log(db: Session, delivery_log_id: int) -> Optional[models.DeliveryLog]:
    return db.query(models.DeliveryLog).filter(models.DeliveryLog.id == delivery_log_id).first()


def get_latest_open_delivery(db: Session, patient_id: int, since: datetime) -> Optional[models.DeliveryLog]:
    """Most recent DELIVERED reminder whose confirmation is missing, PENDING or UNCLEAR"""
    dl = models.DeliveryLog
    conf = models.Confirmation
    return db.query(dl).outerjoin(conf, conf.delivery_log_id == dl.id).filter(
        dl.patient_id == patient_id,
        dl.status == DeliveryStatus.DELIVERED,
        dl.sent_at >= since,
        or_(conf.id.is_(None), conf.status.in_(OPEN_CONFIRMATION_STATUSES)),
    ).order_by(dl.sent_at.desc(), dl.id.desc()).first()


# --- Confirmations ---

def get_confirmation_for_delivery(db: Session, delivery_log_id: int) -> Optional[models.Confirmation]:
    return db.query(models.Confirmation).filter(
        models.Confirmation.delivery_log_id == delivery_log_id
    ).first()


def get_or_create_confirmation(db: Session, delivery_log: models.DeliveryLog) -> models.Confirmation:
    confirmation = get_confirmation_for_delivery(db, delivery_log.id)
    if confirmation:
        return confirmation
    confirmation = models.Confirmation(
        delivery_log_id=delivery_log.id,
        patient_id=delivery_log.patient_id,
        status=ConfirmationStatus.PENDING,
    )
    db.add(confirmation)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another inbound message
        db.rollback()
        return get_confirmation_for_delivery(db, delivery_log.id)
    db.refresh(confirmation)
    return confirmation


def resolve_confirmation(
    db: Session,
    confirmation: models.Confirmation,
    status: ConfirmationStatus,
    resolved_by: str,
    responded_at: datetime,
    response_text: Optional[str] = None,
    intent: Optional[str] = None,
    confidence: Optional[float] = None,
) -> bool:
    """Compare-and-set: only moves a confirmation that is still PENDING or UNCLEAR.

    Returns False when another resolver got there first.
    """
    values = {
        models.Confirmation.status: status,
        models.Confirmation.resolved_by: resolved_by,
        models.Confirmation.responded_at: responded_at,
    }
    if response_text is not None:
        values[models.Confirmation.response_text] = response_text
    if intent is not None:
        values[models.Confirmation.intent] = intent
    if confidence is not None:
        values[models.Confirmation.confidence] = confidence

    updated = db.query(models.Confirmation).filter(
        models.Confirmation.id == confirmation.id,
        models.Confirmation.status.in_(OPEN_CONFIRMATION_STATUSES),
    ).update(values, synchronize_session=False)
    db.commit()
    db.refresh(confirmation)
    return updated == 1


def record_confirmation_response(
    db: Session,
    confirmation: models.Confirmation,
    response_text: str,
    intent: Optional[str],
    confidence: Optional[float],
) -> None:
    """Store the latest reply on an open confirmation without resolving it"""
    db.query(models.Confirmation).filter(
        models.Confirmation.id == confirmation.id,
        models.Confirmation.status.in_(OPEN_CONFIRMATION_STATUSES),
    ).update({
        models.Confirmation.response_text: response_text,
        models.Confirmation.intent: intent,
        models.Confirmation.confidence: confidence,
    }, synchronize_session=False)
    db.commit()
    db.refresh(confirmation)


# --- Volunteer notifications ---

def create_volunteer_notification(db: Session, **fields) -> models.VolunteerNotification:
    notification = models.VolunteerNotification(**fields)
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def get_volunteer_notification(db: Session, notification_id: int) -> Optional[models.VolunteerNotification]:
    return db.query(models.VolunteerNotification).filter(
        models.VolunteerNotification.id == notification_id
    ).first()


def list_volunteer_notifications(
    db: Session,
    status: Optional[models.NotificationStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.VolunteerNotification]:
    query = db.query(models.VolunteerNotification)
    if status:
        query = query.filter(models.VolunteerNotification.status == status)
    return query.order_by(models.VolunteerNotification.created_at.desc(), models.VolunteerNotification.id.desc()).offset(skip).limit(limit).all()


def start_of_lookback(today: date) -> datetime:
    """Start of yesterday's civil day"""
    return civil_midnight_utc(today - timedelta(days=1))
