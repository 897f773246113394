# medreminder/services/inbound_service.py
from datetime import datetime

import structlog
from sqlalchemy.orm import Session

from .. import crud
from .confirmation_service import ConfirmationProcessor, ProcessResult
from .conversation_state import ConversationStateService
from .verification_flow import VerificationFlowEngine
from .whatsapp_service import phone_lookup_variants

log = structlog.get_logger(__name__)

STOP_KEYWORDS = {"stop", "berhenti", "batal"}


class InboundMessageRouter:
    """Entry point for every inbound chat message.

    Order: unknown sender, STOP keyword, active verification flow, then the
    confirmation processor.
    """

    def __init__(
        self,
        db: Session,
        verification: VerificationFlowEngine,
        confirmation: ConfirmationProcessor,
        states: ConversationStateService,
    ):
        self.db = db
        self.verification = verification
        self.confirmation = confirmation
        self.states = states

    async def handle(self, phone_number: str, text: str, now: datetime) -> ProcessResult:
        patient = crud.get_patient_by_phone(self.db, phone_lookup_variants(phone_number))
        if patient is None:
            log.info("inbound.unknown_sender", phone_number=phone_number)
            return ProcessResult(False, "unknown_sender")

        if text.strip().lower() in STOP_KEYWORDS:
            closed = self.states.deactivate_all(patient.id)
            log.info("inbound.stop", patient_id=patient.id, closed_states=closed)
            return ProcessResult(True, "conversation_stopped")

        state = self.verification.open_flow_state(patient.id)
        if state is not None:
            outcome = await self.verification.handle_message(patient, state, text, now)
            if outcome.action != "flow_expired" and outcome.action != "no_active_flow":
                return ProcessResult(True, outcome.action)
            # Expired flows no longer own the conversation

        return await self.confirmation.process_reply(patient, text, now)
