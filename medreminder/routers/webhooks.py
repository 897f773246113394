# medreminder/routers/webhooks.py
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError

from .. import schemas
from ..dependencies import get_clock, get_inbound_router
from ..security import require_webhook_token
from ..services.inbound_service import InboundMessageRouter
from ..services.whatsapp_service import MessagingConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])


async def _read_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return dict(form)


def _extract_message(payload: dict):
    """Fonnte posts sender/message; other gateways use from/text."""
    sender = payload.get("sender") or payload.get("from") or payload.get("phone")
    text = payload.get("message") or payload.get("text") or payload.get("body")
    if isinstance(text, dict):
        text = text.get("body")
    return (str(sender).strip() if sender else None, str(text).strip() if text else None)


@router.post("/webhooks/whatsapp", response_model=schemas.WebhookAck,
             dependencies=[Depends(require_webhook_token)])
async def receive_whatsapp_message(
    request: Request,
    inbound: InboundMessageRouter = Depends(get_inbound_router),
    clock=Depends(get_clock),
):
    """
    Receive an inbound WhatsApp message.
    Always answers 200 once authenticated so the provider does not retry.
    """
    try:
        payload = await _read_payload(request)
    except ValueError as e:
        logger.warning(f"Unreadable webhook body: {e}")
        return {"success": False, "action": "invalid_payload"}

    sender, text = _extract_message(payload)
    if not sender or not text:
        logger.info("Webhook without sender or text ignored (status callback?)")
        return {"success": True, "action": "ignored"}

    try:
        result = await inbound.handle(sender, text, clock())
    except (SQLAlchemyError, MessagingConfigurationError) as e:
        logger.error(f"Error processing inbound message: {e}", exc_info=True)
        return {"success": False, "action": "processing_error"}
    return {"success": result.success, "action": result.action}
