# medreminder/services/verification_flow.py
# Onboarding verification as an enumerated step machine stored in ConversationState.
import enum
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from .. import models
from ..civil_time import as_utc
from ..models import ConversationContext, MessageDirection, VerificationStatus
from .conversation_state import ConversationStateService
from .whatsapp_service import MessagingGateway, normalize_phone_number

log = structlog.get_logger(__name__)

AFFIRMATIVE_WORDS = {"ya", "iya", "yes", "y", "setuju", "oke", "ok", "baik", "mau", "ingin", "benar"}
NEGATIVE_WORDS = {"tidak", "tdk", "no", "n", "bukan", "gak", "nggak", "enggak", "tolak"}


class VerificationStep(str, enum.Enum):
    welcome = "welcome"
    confirm_identity = "confirm_identity"
    terms_acceptance = "terms_acceptance"
    final_confirmation = "final_confirmation"


class FlowStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    expired = "expired"
    declined = "declined"


class ResponseKind(str, enum.Enum):
    yes_no = "yes_no"
    text = "text"
    any = "any"


def _tokens(text: str) -> List[str]:
    return re.findall(r"[a-z]+", (text or "").lower())


def is_affirmative(text: str) -> bool:
    return any(token in AFFIRMATIVE_WORDS for token in _tokens(text))


def is_negative(text: str) -> bool:
    return any(token in NEGATIVE_WORDS for token in _tokens(text))


def accept_any(text: str) -> bool:
    return bool((text or "").strip())


@dataclass
class VerificationFlowState:
    """Typed payload kept in ConversationState.state_data"""
    flow_id: str
    current_step: VerificationStep
    status: FlowStatus
    started_at: datetime
    expires_at: datetime
    step_started_at: datetime
    nudged_steps: List[str] = field(default_factory=list)
    responses: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "flow": "verification",
            "flow_id": self.flow_id,
            "current_step": self.current_step.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "step_started_at": self.step_started_at.isoformat(),
            "nudged_steps": list(self.nudged_steps),
            "responses": dict(self.responses),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationFlowState":
        return cls(
            flow_id=data["flow_id"],
            current_step=VerificationStep(data["current_step"]),
            status=FlowStatus(data["status"]),
            started_at=as_utc(datetime.fromisoformat(data["started_at"])),
            expires_at=as_utc(datetime.fromisoformat(data["expires_at"])),
            step_started_at=as_utc(datetime.fromisoformat(data["step_started_at"])),
            nudged_steps=list(data.get("nudged_steps", [])),
            responses=dict(data.get("responses", {})),
        )


@dataclass
class StepDefinition:
    step: VerificationStep
    template: str
    expected_response: ResponseKind
    timeout: timedelta
    validator: Callable[[str], bool]
    next_step: Optional[VerificationStep] = None
    nudge: str = "Mohon balas pesan sebelumnya agar pendaftaran dapat dilanjutkan."
    on_success: Optional[Callable[["VerificationFlowEngine", models.Patient, VerificationFlowState, str], None]] = None

    @property
    def is_terminal(self) -> bool:
        return self.next_step is None

    def render(self, patient: models.Patient) -> str:
        return self.template.format(name=patient.name)


def _store_identity(engine, patient, flow, text):
    flow.responses["identity_confirmed_at"] = flow.step_started_at.isoformat()


def _store_terms(engine, patient, flow, text):
    flow.responses["terms_accepted"] = "true"


STEP_DEFINITIONS: Dict[VerificationStep, StepDefinition] = {
    VerificationStep.welcome: StepDefinition(
        step=VerificationStep.welcome,
        template=(
            "Halo {name}, selamat datang di layanan pengingat minum obat.\n"
            "Apakah Anda bersedia menerima pengingat melalui WhatsApp? Balas YA atau TIDAK."
        ),
        expected_response=ResponseKind.yes_no,
        timeout=timedelta(minutes=30),
        validator=is_affirmative,
        next_step=VerificationStep.confirm_identity,
    ),
    VerificationStep.confirm_identity: StepDefinition(
        step=VerificationStep.confirm_identity,
        template="Apakah benar nomor ini milik {name}? Balas YA untuk konfirmasi.",
        expected_response=ResponseKind.yes_no,
        timeout=timedelta(minutes=15),
        validator=is_affirmative,
        next_step=VerificationStep.terms_acceptance,
        on_success=_store_identity,
    ),
    VerificationStep.terms_acceptance: StepDefinition(
        step=VerificationStep.terms_acceptance,
        template=(
            "Data Anda hanya digunakan untuk pengingat obat dan pendampingan relawan.\n"
            "Apakah Anda setuju dengan ketentuan ini? Balas SETUJU atau TIDAK."
        ),
        expected_response=ResponseKind.yes_no,
        timeout=timedelta(minutes=20),
        validator=is_affirmative,
        next_step=VerificationStep.final_confirmation,
        on_success=_store_terms,
    ),
    VerificationStep.final_confirmation: StepDefinition(
        step=VerificationStep.final_confirmation,
        template="Terima kasih {name}! Balas pesan apa saja untuk menyelesaikan pendaftaran.",
        expected_response=ResponseKind.any,
        timeout=timedelta(minutes=5),
        validator=accept_any,
    ),
}

COMPLETED_MESSAGE = "Pendaftaran selesai. Anda akan menerima pengingat minum obat sesuai jadwal. Semoga lekas sehat!"
EXPIRED_MESSAGE = "Waktu verifikasi telah habis. Relawan kami akan menghubungi Anda untuk memulai ulang."
DECLINED_MESSAGE = "Baik, kami tidak akan mengirimkan pengingat. Terima kasih."


@dataclass
class FlowOutcome:
    action: str
    step: Optional[VerificationStep] = None
    status: Optional[FlowStatus] = None


class VerificationFlowEngine:
    """Drives welcome -> confirm_identity -> terms_acceptance -> final_confirmation.

    The flow-level expires_at is a hard ceiling; per-step timeouts only trigger
    a single reminder nudge from process_timeouts().
    """

    def __init__(self, db: Session, gateway: MessagingGateway, flow_ttl_hours: int = 2,
                 states: Optional[ConversationStateService] = None):
        self.db = db
        self.gateway = gateway
        self.flow_ttl = timedelta(hours=flow_ttl_hours)
        self.states = states or ConversationStateService(db)

    async def _send(self, state: models.ConversationState, body: str, now: datetime, message_type: str) -> None:
        result = await self.gateway.send(state.phone_number, body)
        if not result.success:
            log.warning("verification.send_failed", state_id=state.id, error=result.error)
        self.states.log_message(state, body, MessageDirection.outbound, now, message_type=message_type)

    def load(self, state: models.ConversationState) -> Optional[VerificationFlowState]:
        data = state.state_data or {}
        if state.current_context != ConversationContext.verification or data.get("flow") != "verification":
            return None
        return VerificationFlowState.from_dict(data)

    def open_flow_state(self, patient_id: int) -> Optional[models.ConversationState]:
        """Active verification state, including ones past expiry that nobody has marked yet."""
        return self.db.query(models.ConversationState).filter(
            models.ConversationState.patient_id == patient_id,
            models.ConversationState.is_active.is_(True),
            models.ConversationState.current_context == ConversationContext.verification,
        ).order_by(models.ConversationState.id.desc()).first()

    async def start_flow(self, patient: models.Patient, now: datetime) -> models.ConversationState:
        self.states.deactivate_all(patient.id, context=ConversationContext.verification)
        flow = VerificationFlowState(
            flow_id=uuid.uuid4().hex,
            current_step=VerificationStep.welcome,
            status=FlowStatus.active,
            started_at=now,
            expires_at=now + self.flow_ttl,
            step_started_at=now,
        )
        state = self.states.create(
            patient,
            normalize_phone_number(patient.phone_number),
            ConversationContext.verification,
            now,
            state_data=flow.to_dict(),
            expires_at=flow.expires_at,
        )
        patient.verification_status = VerificationStatus.pending
        patient.verification_sent_at = now
        self.db.commit()

        await self._send(state, STEP_DEFINITIONS[VerificationStep.welcome].render(patient), now, "verification")
        log.info("verification.started", patient_id=patient.id, flow_id=flow.flow_id)
        return state

    async def _expire(self, patient: models.Patient, state: models.ConversationState,
                      flow: VerificationFlowState, now: datetime, notify: bool = True) -> FlowOutcome:
        flow.status = FlowStatus.expired
        self.states.update(state, state_data=flow.to_dict())
        self.states.deactivate(state)
        if patient.verification_status == VerificationStatus.pending:
            patient.verification_status = VerificationStatus.expired
            self.db.commit()
        if notify:
            await self._send(state, EXPIRED_MESSAGE, now, "verification")
        log.info("verification.expired", patient_id=patient.id, flow_id=flow.flow_id, step=flow.current_step.value)
        return FlowOutcome("flow_expired", flow.current_step, FlowStatus.expired)

    async def handle_message(self, patient: models.Patient, state: models.ConversationState,
                             text: str, now: datetime) -> FlowOutcome:
        flow = self.load(state)
        if flow is None or flow.status != FlowStatus.active:
            return FlowOutcome("no_active_flow")
        self.states.log_message(state, text, MessageDirection.inbound, now, message_type="verification")

        if now > flow.expires_at:
            return await self._expire(patient, state, flow, now)

        definition = STEP_DEFINITIONS[flow.current_step]
        if not definition.validator(text):
            if definition.expected_response == ResponseKind.yes_no and is_negative(text) \
                    and flow.current_step in (VerificationStep.welcome, VerificationStep.terms_acceptance):
                return await self._decline(patient, state, flow, now)
            # Same message again, unchanged
            await self._send(state, definition.render(patient), now, "verification")
            return FlowOutcome("step_repeated", flow.current_step, flow.status)

        flow.responses[flow.current_step.value] = text.strip()
        if definition.on_success:
            definition.on_success(self, patient, flow, text)

        if definition.is_terminal:
            return await self._complete(patient, state, flow, now)

        flow.current_step = definition.next_step
        flow.step_started_at = now
        self.states.update(state, state_data=flow.to_dict())
        await self._send(state, STEP_DEFINITIONS[flow.current_step].render(patient), now, "verification")
        return FlowOutcome("step_advanced", flow.current_step, flow.status)

    async def _complete(self, patient: models.Patient, state: models.ConversationState,
                        flow: VerificationFlowState, now: datetime) -> FlowOutcome:
        flow.status = FlowStatus.completed
        state.state_data = flow.to_dict()
        state.current_context = ConversationContext.general_inquiry
        state.is_active = False
        patient.verification_status = VerificationStatus.verified
        patient.verification_response_at = now
        # Flow completion and the patient's status change commit together
        self.db.commit()
        await self._send(state, COMPLETED_MESSAGE, now, "verification")
        log.info("verification.completed", patient_id=patient.id, flow_id=flow.flow_id)
        return FlowOutcome("flow_completed", flow.current_step, FlowStatus.completed)

    async def _decline(self, patient: models.Patient, state: models.ConversationState,
                       flow: VerificationFlowState, now: datetime) -> FlowOutcome:
        flow.status = FlowStatus.declined
        state.state_data = flow.to_dict()
        state.is_active = False
        patient.verification_status = VerificationStatus.declined
        patient.verification_response_at = now
        self.db.commit()
        await self._send(state, DECLINED_MESSAGE, now, "verification")
        log.info("verification.declined", patient_id=patient.id, step=flow.current_step.value)
        return FlowOutcome("flow_declined", flow.current_step, FlowStatus.declined)

    async def process_timeouts(self, now: datetime) -> Dict[str, int]:
        """Nudge once per overdue step; expire flows past their ceiling."""
        counts = {"nudged": 0, "expired": 0}
        states = self.db.query(models.ConversationState).filter(
            models.ConversationState.is_active.is_(True),
            models.ConversationState.current_context == ConversationContext.verification,
        ).all()
        for state in states:
            flow = self.load(state)
            if flow is None or flow.status != FlowStatus.active:
                continue
            patient = self.db.query(models.Patient).filter(models.Patient.id == state.patient_id).first()
            if patient is None:
                continue
            if now > flow.expires_at:
                await self._expire(patient, state, flow, now, notify=False)
                counts["expired"] += 1
                continue
            definition = STEP_DEFINITIONS[flow.current_step]
            overdue = now - flow.step_started_at > definition.timeout
            if overdue and flow.current_step.value not in flow.nudged_steps:
                flow.nudged_steps.append(flow.current_step.value)
                self.states.update(state, state_data=flow.to_dict())
                await self._send(state, definition.nudge, now, "verification_nudge")
                counts["nudged"] += 1
        return counts
