# medreminder/routers/health.py
import logging

import redis
from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy import text

from ..config import Settings, get_settings
from ..database import get_db
from ..dependencies import get_redis

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("")
def health_check(
    db: Session = Depends(get_db),
    redis_client=Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    """Reachability of the database and the rate-limit store."""
    checks = {"database": "ok", "redis": "disabled"}
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database failure: {e}")
        checks["database"] = "error"

    if redis_client is not None:
        try:
            redis_client.ping()
            checks["redis"] = "ok"
        except redis.RedisError as e:
            # Limiter fails open, so this degrades rather than fails
            logger.warning(f"Health check redis failure: {e}")
            checks["redis"] = "degraded"

    return {
        "status": "ok" if checks["database"] == "ok" else "error",
        "version": settings.app_version,
        "checks": checks,
        "messaging": {
            "fonnte": settings.fonnte_enabled,
            "twilio": settings.twilio_enabled,
        },
    }
