# medreminder/services/confirmation_service.py
# Turns a patient's reply into a confirmation outcome or a volunteer escalation.
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from .. import crud, models
from ..civil_time import civil_today
from ..config import Settings, get_settings
from ..models import ConfirmationStatus, ConversationContext, EscalationReason, MessageDirection
from .conversation_state import ConversationStateService
from .escalation_service import EscalationService
from .intent_classifier import IntentResult, detect_emergency, intent_to_status
from .whatsapp_service import MessagingConfigurationError, MessagingGateway, normalize_phone_number

log = structlog.get_logger(__name__)

ACKNOWLEDGMENTS = {
    ConfirmationStatus.CONFIRMED: "Terima kasih {name}, konfirmasi minum obat Anda sudah kami catat. Tetap semangat!",
    ConfirmationStatus.MISSED: "Terima kasih {name}. Jangan lupa segera minum obat Anda ya. Relawan kami siap membantu bila ada kendala.",
}


@dataclass
class ProcessResult:
    success: bool
    action: str
    confirmation_id: Optional[int] = None
    status: Optional[ConfirmationStatus] = None
    notification_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "action": self.action,
            "confirmation_id": self.confirmation_id,
            "status": self.status.value if self.status else None,
            "notification_id": self.notification_id,
        }


class ConfirmationProcessor:
    """Resolves the most recent open reminder for a patient from their reply.

    Every status change goes through crud.resolve_confirmation, a
    compare-and-set on PENDING/UNCLEAR, so the first resolver wins whether it
    is the classifier, a caregiver or a volunteer.
    """

    def __init__(
        self,
        db: Session,
        classifier,
        gateway: Optional[MessagingGateway] = None,
        escalation: Optional[EscalationService] = None,
        settings: Optional[Settings] = None,
        states: Optional[ConversationStateService] = None,
    ):
        self.db = db
        self.classifier = classifier
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.escalation = escalation or EscalationService(db, gateway)
        self.states = states or ConversationStateService(db, self.settings.conversation_ttl_hours)

    async def _classify(self, text: str, context: dict) -> IntentResult:
        try:
            return await self.classifier.classify(text, context)
        except Exception as exc:
            # Classifier is external; whatever it raises, the reply goes to a human
            log.error("confirmation.classifier_failed", error=str(exc))
            return IntentResult.unclear(str(exc))

    async def process_reply(self, patient: models.Patient, text: str, now: datetime) -> ProcessResult:
        today = civil_today(now, self.settings.civil_utc_offset_hours)
        since = crud.start_of_lookback(today)
        delivery = crud.get_latest_open_delivery(self.db, patient.id, since)
        if delivery is None:
            log.info("confirmation.no_pending", patient_id=patient.id)
            return ProcessResult(True, "no_pending_reminder")

        confirmation = crud.get_or_create_confirmation(self.db, delivery)
        state = self.states.get_or_create(
            patient, normalize_phone_number(patient.phone_number or delivery.phone_number or ""),
            ConversationContext.confirmation, now,
        )

        context = {
            "patient_name": patient.name,
            "reminder_message": delivery.message,
            "sent_at": delivery.sent_at.isoformat() if delivery.sent_at else None,
            "conversation_context": ConversationContext.confirmation.value,
        }
        result = await self._classify(text, context)
        self.states.log_message(state, text, MessageDirection.inbound, now, message_type="confirmation",
                                intent=result.intent, confidence=result.confidence)

        status = intent_to_status(result.intent)
        confident = result.confidence >= self.settings.intent_confidence_threshold
        urgent = result.urgency or detect_emergency(text)

        if status.is_terminal and confident and not urgent:
            if not crud.resolve_confirmation(
                self.db, confirmation, status, resolved_by="classifier", responded_at=now,
                response_text=text, intent=result.intent, confidence=result.confidence,
            ):
                log.info("confirmation.already_resolved", confirmation_id=confirmation.id,
                         status=confirmation.status.value)
                return ProcessResult(True, "already_resolved", confirmation.id, confirmation.status)

            log.info("confirmation.resolved", confirmation_id=confirmation.id, status=status.value,
                     confidence=result.confidence)
            await self._acknowledge(patient, state, status, now)
            return ProcessResult(True, "confirmed" if status == ConfirmationStatus.CONFIRMED else "missed",
                                 confirmation.id, status)

        # Not safe to resolve automatically: keep it open and hand it to a volunteer
        crud.record_confirmation_response(self.db, confirmation, text, result.intent, result.confidence)
        reason = EscalationReason.emergency_detection if urgent else EscalationReason.low_confidence
        notification = await self.escalation.escalate(
            patient, text, reason,
            intent=result.intent, confidence=result.confidence, confirmation_id=confirmation.id,
        )
        return ProcessResult(True, "escalated", confirmation.id, confirmation.status, notification.id)

    async def _acknowledge(self, patient: models.Patient, state: models.ConversationState,
                           status: ConfirmationStatus, now: datetime) -> None:
        """Best effort; the confirmation is already stored."""
        if self.gateway is None or not patient.phone_number:
            return
        body = ACKNOWLEDGMENTS[status].format(name=patient.name)
        try:
            result = await self.gateway.send(patient.phone_number, body)
        except MessagingConfigurationError as exc:
            log.warning("confirmation.ack_skipped", error=str(exc))
            return
        if not result.success:
            log.warning("confirmation.ack_failed", patient_id=patient.id, error=result.error)
            return
        self.states.log_message(state, body, MessageDirection.outbound, now, message_type="confirmation")

    def manual_override(self, delivery_log_id: int, taken: bool, now: datetime,
                        note: Optional[str] = None) -> models.Confirmation:
        """Caregiver sets the outcome directly. Conflicts once anyone else resolved it."""
        delivery = crud.get_delivery_log(self.db, delivery_log_id)
        if delivery is None:
            raise crud.CRUDError(f"Delivery log {delivery_log_id} not found")
        confirmation = crud.get_or_create_confirmation(self.db, delivery)
        status = ConfirmationStatus.CONFIRMED if taken else ConfirmationStatus.MISSED
        if not crud.resolve_confirmation(self.db, confirmation, status, resolved_by="manual",
                                         responded_at=now, response_text=note):
            raise crud.ConfirmationConflictError(confirmation)
        log.info("confirmation.manual_override", confirmation_id=confirmation.id, status=status.value)
        return confirmation
