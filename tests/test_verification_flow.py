from datetime import timedelta

import pytest

from medreminder.models import ConversationContext, VerificationStatus
from medreminder.services.conversation_state import ConversationStateService
from medreminder.services.verification_flow import (
    STEP_DEFINITIONS, FlowStatus, VerificationFlowEngine, VerificationStep, is_affirmative,
)

from conftest import NOW, make_patient


@pytest.fixture
def engine_(db, gateway):
    return VerificationFlowEngine(db, gateway, flow_ttl_hours=2)


def _flow(engine_, state):
    engine_.db.refresh(state)
    return engine_.load(state)


def test_every_step_has_a_definition():
    assert set(STEP_DEFINITIONS) == set(VerificationStep)
    assert STEP_DEFINITIONS[VerificationStep.final_confirmation].is_terminal


@pytest.mark.parametrize("text, expected", [
    ("Ya", True), ("iya saya mau", True), ("SETUJU!", True), ("oke", True),
    ("tidak", False), ("yayasan", False), ("", False),
])
def test_affirmative_tokens(text, expected):
    assert is_affirmative(text) is expected


@pytest.mark.asyncio
async def test_start_sends_welcome_and_marks_pending(db, engine_, backend):
    patient = make_patient(db)

    state = await engine_.start_flow(patient, NOW)

    assert state.current_context == ConversationContext.verification
    assert patient.verification_status == VerificationStatus.pending
    assert "selamat datang" in backend.sent[0][1]
    flow = engine_.load(state)
    assert flow.current_step == VerificationStep.welcome
    assert flow.expires_at == NOW + timedelta(hours=2)


@pytest.mark.asyncio
async def test_affirmative_reply_advances_one_step(db, engine_, backend):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)

    outcome = await engine_.handle_message(patient, state, "ya", NOW + timedelta(minutes=1))

    assert outcome.action == "step_advanced"
    assert _flow(engine_, state).current_step == VerificationStep.confirm_identity
    assert backend.sent[-1][1] == STEP_DEFINITIONS[VerificationStep.confirm_identity].render(patient)


@pytest.mark.asyncio
async def test_unrecognised_reply_repeats_the_step(db, engine_, backend):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)
    welcome = backend.sent[-1][1]

    outcome = await engine_.handle_message(patient, state, "hmm apa ini", NOW + timedelta(minutes=1))

    assert outcome.action == "step_repeated"
    assert _flow(engine_, state).current_step == VerificationStep.welcome
    assert backend.sent[-1][1] == welcome


@pytest.mark.asyncio
async def test_full_flow_verifies_patient(db, engine_):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)

    for minute, reply in enumerate(["ya", "iya benar", "setuju", "terima kasih"], start=1):
        outcome = await engine_.handle_message(patient, state, reply, NOW + timedelta(minutes=minute))

    assert outcome.action == "flow_completed"
    db.refresh(patient)
    db.refresh(state)
    assert patient.verification_status == VerificationStatus.verified
    assert patient.verification_response_at is not None
    assert state.is_active is False
    assert state.current_context == ConversationContext.general_inquiry
    assert state.state_data["status"] == FlowStatus.completed.value
    assert state.state_data["responses"]["terms_acceptance"] == "setuju"


@pytest.mark.asyncio
async def test_flow_expires_regardless_of_step_timeouts(db, engine_):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)

    outcome = await engine_.handle_message(patient, state, "ya", NOW + timedelta(hours=2, seconds=1))

    assert outcome.action == "flow_expired"
    db.refresh(state)
    db.refresh(patient)
    assert state.is_active is False
    assert state.state_data["status"] == FlowStatus.expired.value
    assert state.state_data["current_step"] == VerificationStep.welcome.value
    assert patient.verification_status == VerificationStatus.expired


@pytest.mark.asyncio
async def test_decline_at_welcome_ends_flow(db, engine_):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)

    outcome = await engine_.handle_message(patient, state, "tidak", NOW + timedelta(minutes=1))

    assert outcome.action == "flow_declined"
    db.refresh(patient)
    assert patient.verification_status == VerificationStatus.declined


@pytest.mark.asyncio
async def test_step_timeout_nudges_once_without_expiring(db, engine_, backend):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)
    sent_before = len(backend.sent)

    first = await engine_.process_timeouts(NOW + timedelta(minutes=31))
    second = await engine_.process_timeouts(NOW + timedelta(minutes=45))

    assert first == {"nudged": 1, "expired": 0}
    assert second == {"nudged": 0, "expired": 0}
    assert len(backend.sent) == sent_before + 1
    db.refresh(state)
    assert state.is_active is True


@pytest.mark.asyncio
async def test_timeout_sweep_expires_old_flows(db, engine_):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)

    counts = await engine_.process_timeouts(NOW + timedelta(hours=3))

    assert counts["expired"] == 1
    db.refresh(state)
    assert state.is_active is False


@pytest.mark.asyncio
async def test_restart_replaces_previous_flow(db, engine_):
    patient = make_patient(db)
    first = await engine_.start_flow(patient, NOW)
    second = await engine_.start_flow(patient, NOW + timedelta(minutes=5))

    db.refresh(first)
    assert first.is_active is False
    assert engine_.open_flow_state(patient.id).id == second.id


def test_conversation_cleanup(db):
    patient = make_patient(db)
    states = ConversationStateService(db, ttl_hours=24)
    state = states.get_or_create(patient, "6281234567890", ConversationContext.confirmation, NOW)
    assert states.get_or_create(patient, "6281234567890", ConversationContext.confirmation, NOW).id == state.id

    assert states.cleanup_expired(NOW + timedelta(hours=25)) == 1
    db.refresh(state)
    assert state.is_active is False
    assert states.get_active(patient.id, NOW + timedelta(hours=25)) is None


@pytest.mark.asyncio
async def test_conversation_cleanup_leaves_verification_flows_to_the_engine(db, engine_):
    patient = make_patient(db)
    state = await engine_.start_flow(patient, NOW)
    later = NOW + timedelta(hours=3)

    assert engine_.states.cleanup_expired(later) == 0
    db.refresh(state)
    assert state.is_active is True

    await engine_.process_timeouts(later)
    db.refresh(state)
    db.refresh(patient)
    assert state.is_active is False
    assert state.state_data["status"] == FlowStatus.expired.value
    assert patient.verification_status == VerificationStatus.expired
