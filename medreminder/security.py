# medreminder/security.py
# Shared-secret authentication and rate limiting for the HTTP surface.
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings
from .dependencies import get_redis
from .limiter import RATE_LIMIT_BUCKETS, RateLimiter

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _matches(provided: Optional[str], expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided.encode(), expected.encode())


def _check_bearer(credentials: Optional[HTTPAuthorizationCredentials], secret: Optional[str], name: str) -> None:
    if not secret:
        # Configuration error: refuse to do any work
        logger.error("%s is not configured", name)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Server misconfigured: {name} missing",
        )
    if credentials is None or not _matches(credentials.credentials, secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    _check_bearer(credentials, settings.cron_secret, "CRON_SECRET")


async def require_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    _check_bearer(credentials, settings.admin_api_token, "ADMIN_API_TOKEN")


async def require_webhook_token(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.webhook_token:
        logger.error("WEBHOOK_TOKEN is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfigured: WEBHOOK_TOKEN missing",
        )
    provided = request.headers.get("X-Webhook-Token") or request.query_params.get("token")
    if not _matches(provided, settings.webhook_token):
        logger.warning("Rejected webhook call from %s", request.client.host if request.client else "unknown")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")


def rate_limit(bucket: str):
    """Dependency factory applying one of the pre-configured buckets per client address."""
    rule = RATE_LIMIT_BUCKETS[bucket]

    async def dependency(request: Request, redis_client=Depends(get_redis)):
        limiter = RateLimiter(redis_client, rule)
        client = request.client.host if request.client else "anonymous"
        result = limiter.check(client)
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={"Retry-After": str(rule.window_ms // 1000)},
            )
        return result

    return dependency
