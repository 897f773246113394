# medreminder/dependencies.py
# FastAPI wiring: every service receives its collaborators through these
# providers, and tests swap them via app.dependency_overrides.
from functools import lru_cache
from typing import Callable, Optional

import redis
from fastapi import Depends
from sqlalchemy.orm import Session

from .civil_time import utcnow
from .config import Settings, get_settings
from .database import get_db, get_session_factory
from .limiter import RateLimiter, messaging_rule
from .services.confirmation_service import ConfirmationProcessor
from .services.conversation_state import ConversationStateService
from .services.dispatcher import ReminderDispatcher
from .services.escalation_service import EscalationService
from .services.inbound_service import InboundMessageRouter
from .services.intent_classifier import build_classifier
from .services.verification_flow import VerificationFlowEngine
from .services.whatsapp_service import MessagingGateway, build_gateway


@lru_cache()
def _redis_client(url: str) -> "redis.Redis":
    return redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2, decode_responses=True)


def get_redis() -> Optional["redis.Redis"]:
    settings = get_settings()
    if not settings.redis_enabled:
        return None
    return _redis_client(settings.redis_url)


def get_gateway(settings: Settings = Depends(get_settings)) -> MessagingGateway:
    return build_gateway(settings)


def get_classifier(settings: Settings = Depends(get_settings)):
    return build_classifier(settings)


def get_messaging_limiter(
    redis_client=Depends(get_redis),
    settings: Settings = Depends(get_settings),
) -> RateLimiter:
    return RateLimiter(redis_client, messaging_rule(settings))


def get_dispatcher(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    gateway: MessagingGateway = Depends(get_gateway),
    limiter: RateLimiter = Depends(get_messaging_limiter),
    settings: Settings = Depends(get_settings),
) -> ReminderDispatcher:
    return ReminderDispatcher(session_factory, gateway, limiter, settings)


def get_conversation_states(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ConversationStateService:
    return ConversationStateService(db, settings.conversation_ttl_hours)


def get_escalation_service(
    db: Session = Depends(get_db),
    gateway: MessagingGateway = Depends(get_gateway),
) -> EscalationService:
    return EscalationService(db, gateway)


def get_verification_engine(
    db: Session = Depends(get_db),
    gateway: MessagingGateway = Depends(get_gateway),
    states: ConversationStateService = Depends(get_conversation_states),
    settings: Settings = Depends(get_settings),
) -> VerificationFlowEngine:
    return VerificationFlowEngine(db, gateway, settings.verification_flow_ttl_hours, states)


def get_confirmation_processor(
    db: Session = Depends(get_db),
    classifier=Depends(get_classifier),
    gateway: MessagingGateway = Depends(get_gateway),
    escalation: EscalationService = Depends(get_escalation_service),
    states: ConversationStateService = Depends(get_conversation_states),
    settings: Settings = Depends(get_settings),
) -> ConfirmationProcessor:
    return ConfirmationProcessor(db, classifier, gateway, escalation, settings, states)


def get_inbound_router(
    db: Session = Depends(get_db),
    verification: VerificationFlowEngine = Depends(get_verification_engine),
    confirmation: ConfirmationProcessor = Depends(get_confirmation_processor),
    states: ConversationStateService = Depends(get_conversation_states),
) -> InboundMessageRouter:
    return InboundMessageRouter(db, verification, confirmation, states)


def get_clock() -> Callable:
    """Current UTC time provider; overridden in tests to freeze time."""
    return utcnow
