# medreminder/services/escalation_service.py
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from .. import crud, models
from ..models import (
    ConfirmationStatus, EscalationReason, NotificationPriority, NotificationStatus,
)
from .whatsapp_service import MessagingConfigurationError, MessagingGateway

log = structlog.get_logger(__name__)

# Below this the classifier is effectively guessing
HIGH_PRIORITY_CONFIDENCE = 0.3


class NotificationStateError(Exception):
    pass


def priority_for(reason: EscalationReason, confidence: Optional[float]) -> NotificationPriority:
    if reason == EscalationReason.emergency_detection:
        return NotificationPriority.emergency
    if reason == EscalationReason.low_confidence:
        if (confidence or 0.0) < HIGH_PRIORITY_CONFIDENCE:
            return NotificationPriority.high
        return NotificationPriority.medium
    if reason == EscalationReason.complex_inquiry:
        return NotificationPriority.medium
    return NotificationPriority.low


class EscalationService:
    """Hands messages the engine cannot resolve safely to human volunteers."""

    def __init__(self, db: Session, gateway: Optional[MessagingGateway] = None):
        self.db = db
        self.gateway = gateway

    async def escalate(
        self,
        patient: models.Patient,
        message: str,
        reason: EscalationReason,
        intent: Optional[str] = None,
        confidence: Optional[float] = None,
        confirmation_id: Optional[int] = None,
    ) -> models.VolunteerNotification:
        priority = priority_for(reason, confidence)
        notification = crud.create_volunteer_notification(
            self.db,
            patient_id=patient.id,
            confirmation_id=confirmation_id,
            message=message,
            priority=priority,
            escalation_reason=reason,
            intent=intent,
            confidence=confidence,
            status=NotificationStatus.pending,
        )
        log.info("escalation.created", notification_id=notification.id, patient_id=patient.id,
                 reason=reason.value, priority=priority.value)

        if priority in (NotificationPriority.emergency, NotificationPriority.high):
            await self._alert_volunteers(patient, notification)
        return notification

    async def _alert_volunteers(self, patient: models.Patient, notification: models.VolunteerNotification) -> None:
        """Best effort: the notification row is the source of truth."""
        if self.gateway is None:
            return
        label = "DARURAT" if notification.priority == NotificationPriority.emergency else "PRIORITAS TINGGI"
        body = (
            f"[{label}] Pesan dari pasien {patient.name} perlu ditindaklanjuti.\n"
            f"Pesan: \"{notification.message}\"\n"
            f"ID notifikasi: {notification.id}"
        )
        for volunteer in crud.get_active_volunteers(self.db):
            if not volunteer.phone_number:
                continue
            try:
                result = await self.gateway.send(volunteer.phone_number, body)
            except MessagingConfigurationError as exc:
                log.warning("escalation.alert_skipped", error=str(exc))
                return
            if not result.success:
                log.warning("escalation.alert_failed", volunteer_id=volunteer.id, error=result.error)

    def assign(self, notification_id: int, volunteer_id: int) -> models.VolunteerNotification:
        notification = crud.get_volunteer_notification(self.db, notification_id)
        if notification is None:
            raise crud.CRUDError(f"Volunteer notification {notification_id} not found")
        if notification.status == NotificationStatus.resolved:
            raise NotificationStateError("Notification is already resolved")
        notification.assigned_volunteer_id = volunteer_id
        notification.status = NotificationStatus.assigned
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def respond(
        self,
        notification_id: int,
        response: str,
        now: datetime,
        outcome: Optional[ConfirmationStatus] = None,
    ) -> models.VolunteerNotification:
        """Record the volunteer's answer; optionally resolve the linked confirmation.

        Raises ConfirmationConflictError if the confirmation was resolved by
        another path in the meantime.
        """
        notification = crud.get_volunteer_notification(self.db, notification_id)
        if notification is None:
            raise crud.CRUDError(f"Volunteer notification {notification_id} not found")
        if notification.status == NotificationStatus.resolved:
            raise NotificationStateError("Notification is already resolved")

        if outcome is not None and notification.confirmation_id:
            confirmation = self.db.query(models.Confirmation).filter(
                models.Confirmation.id == notification.confirmation_id
            ).first()
            if confirmation and not crud.resolve_confirmation(
                self.db, confirmation, outcome, resolved_by="volunteer", responded_at=now
            ):
                raise crud.ConfirmationConflictError(confirmation)

        notification.response = response
        notification.responded_at = now
        notification.status = NotificationStatus.resolved
        self.db.commit()
        self.db.refresh(notification)
        log.info("escalation.resolved", notification_id=notification.id,
                 outcome=outcome.value if outcome else None)
        return notification
