# medreminder/routers/verification.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..dependencies import get_clock, get_verification_engine
from ..security import rate_limit, require_admin_token
from ..services.verification_flow import VerificationFlowEngine
from ..services.whatsapp_service import MessagingConfigurationError

router = APIRouter(
    tags=["Verification"],
    dependencies=[Depends(require_admin_token), Depends(rate_limit("admin"))],
)


@router.post("/verification/patients/{patient_id}/start", response_model=schemas.VerificationStartResponse,
             status_code=status.HTTP_201_CREATED)
async def start_verification(
    patient_id: int,
    db: Session = Depends(get_db),
    engine: VerificationFlowEngine = Depends(get_verification_engine),
    clock=Depends(get_clock),
):
    """(Re)start the WhatsApp onboarding verification for a patient."""
    patient = crud.get_patient(db, patient_id)
    if not patient:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    if not patient.phone_number:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Patient has no phone number")
    try:
        engine.gateway.ensure_configured()
    except MessagingConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    state = await engine.start_flow(patient, clock())
    return {
        "patient_id": patient.id,
        "conversation_state_id": state.id,
        "verification_status": patient.verification_status,
        "expires_at": state.expires_at,
    }
