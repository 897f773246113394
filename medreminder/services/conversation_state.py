# medreminder/services/conversation_state.py
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from .. import models
from ..civil_time import as_utc
from ..models import ConversationContext, MessageDirection

log = structlog.get_logger(__name__)


class ConversationStateService:
    """Per-patient conversation context store"""

    def __init__(self, db: Session, ttl_hours: int = 24):
        self.db = db
        self.ttl = timedelta(hours=ttl_hours)

    def get_active(
        self,
        patient_id: int,
        now: datetime,
        context: Optional[ConversationContext] = None,
    ) -> Optional[models.ConversationState]:
        query = self.db.query(models.ConversationState).filter(
            models.ConversationState.patient_id == patient_id,
            models.ConversationState.is_active.is_(True),
            models.ConversationState.expires_at > now,
        )
        if context is not None:
            query = query.filter(models.ConversationState.current_context == context)
        return query.order_by(models.ConversationState.id.desc()).first()

    def get_or_create(
        self,
        patient: models.Patient,
        phone_number: str,
        context: ConversationContext,
        now: datetime,
        state_data: Optional[dict] = None,
        expires_at: Optional[datetime] = None,
    ) -> models.ConversationState:
        state = self.get_active(patient.id, now)
        if state:
            return state
        return self.create(patient, phone_number, context, now, state_data, expires_at)

    def create(
        self,
        patient: models.Patient,
        phone_number: str,
        context: ConversationContext,
        now: datetime,
        state_data: Optional[dict] = None,
        expires_at: Optional[datetime] = None,
    ) -> models.ConversationState:
        state = models.ConversationState(
            patient_id=patient.id,
            phone_number=phone_number,
            current_context=context,
            state_data=state_data or {},
            is_active=True,
            expires_at=expires_at or now + self.ttl,
        )
        self.db.add(state)
        self.db.commit()
        self.db.refresh(state)
        log.info("conversation.created", patient_id=patient.id, context=context.value, state_id=state.id)
        return state

    def update(
        self,
        state: models.ConversationState,
        state_data: Optional[dict] = None,
        context: Optional[ConversationContext] = None,
        expires_at: Optional[datetime] = None,
    ) -> models.ConversationState:
        if state_data is not None:
            # Reassign so the JSON column is flagged dirty
            state.state_data = dict(state_data)
        if context is not None:
            state.current_context = context
        if expires_at is not None:
            state.expires_at = expires_at
        self.db.commit()
        self.db.refresh(state)
        return state

    def deactivate(self, state: models.ConversationState) -> None:
        state.is_active = False
        self.db.commit()
        log.info("conversation.deactivated", state_id=state.id, patient_id=state.patient_id)

    def deactivate_all(self, patient_id: int, context: Optional[ConversationContext] = None) -> int:
        query = self.db.query(models.ConversationState).filter(
            models.ConversationState.patient_id == patient_id,
            models.ConversationState.is_active.is_(True),
        )
        if context is not None:
            query = query.filter(models.ConversationState.current_context == context)
        count = query.update({models.ConversationState.is_active: False}, synchronize_session=False)
        self.db.commit()
        return count

    def log_message(
        self,
        state: models.ConversationState,
        message: str,
        direction: MessageDirection,
        now: datetime,
        message_type: str = "general",
        intent: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> models.ConversationMessage:
        entry = models.ConversationMessage(
            conversation_state_id=state.id,
            message=message,
            direction=direction,
            message_type=message_type,
            intent=intent,
            confidence=confidence,
            created_at=now,
        )
        self.db.add(entry)
        if direction == MessageDirection.inbound:
            state.last_message = message
            state.last_message_at = now
        self.db.commit()
        return entry

    def cleanup_expired(self, now: datetime) -> int:
        """Deactivate expired states. Verification flows are left to VerificationFlowEngine.process_timeouts."""
        count = self.db.query(models.ConversationState).filter(
            models.ConversationState.is_active.is_(True),
            models.ConversationState.expires_at <= now,
            models.ConversationState.current_context != ConversationContext.verification,
        ).update({models.ConversationState.is_active: False}, synchronize_session=False)
        self.db.commit()
        if count:
            log.info("conversation.cleanup", expired=count)
        return count

    @staticmethod
    def is_expired(state: models.ConversationState, now: datetime) -> bool:
        return as_utc(state.expires_at) <= now
