# medreminder/routers/cron.py
# Periodic triggers, called by an external scheduler with the CRON_SECRET bearer token.
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..dependencies import get_clock, get_conversation_states, get_dispatcher, get_verification_engine
from ..security import require_cron_secret
from ..services.conversation_state import ConversationStateService
from ..services.dispatcher import ReminderDispatcher
from ..services.verification_flow import VerificationFlowEngine
from ..services.whatsapp_service import MessagingConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Cron"],
    dependencies=[Depends(require_cron_secret)],
)

BACKUP_PROVIDER = "twilio"


async def _run_cycle(dispatcher: ReminderDispatcher, clock, provider: Optional[str] = None) -> dict:
    try:
        summary = await dispatcher.run_dispatch_cycle(clock(), provider=provider)
    except MessagingConfigurationError as e:
        logger.error("Dispatch aborted: %s", e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"success": True, **summary.as_response()}


@router.api_route("/cron/dispatch", methods=["GET", "POST"], response_model=schemas.DispatchResponse)
async def dispatch_reminders(
    dispatcher: ReminderDispatcher = Depends(get_dispatcher),
    clock=Depends(get_clock),
):
    """Run one dispatch cycle through the configured provider order."""
    return await _run_cycle(dispatcher, clock)


@router.api_route("/cron/backup-dispatch", methods=["GET", "POST"], response_model=schemas.DispatchResponse)
async def dispatch_reminders_backup(
    dispatcher: ReminderDispatcher = Depends(get_dispatcher),
    clock=Depends(get_clock),
):
    """Run one dispatch cycle through the backup provider only."""
    return await _run_cycle(dispatcher, clock, provider=BACKUP_PROVIDER)


@router.post("/cron/maintenance", response_model=schemas.MaintenanceResponse)
async def run_maintenance(
    verification: VerificationFlowEngine = Depends(get_verification_engine),
    states: ConversationStateService = Depends(get_conversation_states),
    clock=Depends(get_clock),
):
    now = clock()
    try:
        counts = await verification.process_timeouts(now)
    except MessagingConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    expired_states = states.cleanup_expired(now)
    return {
        "success": True,
        "nudged": counts["nudged"],
        "expired_flows": counts["expired"],
        "expired_states": expired_states,
    }
