# medreminder/services/dispatcher.py
# Periodic dispatch of due reminder occurrences.
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models
from ..civil_time import civil_day_window, civil_today, is_due, utcnow
from ..config import Settings, get_settings
from ..limiter import RateLimiter
from ..models import DeliveryStatus
from .whatsapp_service import MessagingGateway, normalize_phone_number

log = structlog.get_logger(__name__)

# All cron invocations share one messaging budget
CRON_BUCKET_KEY = "whatsapp_cron"


@dataclass
class DispatchSummary:
    schedules_found: int = 0
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    suppressed: int = 0
    errors: int = 0
    duration_ms: int = 0

    def as_response(self) -> dict:
        return {
            "schedulesFound": self.schedules_found,
            "processed": self.processed,
            "sent": self.sent,
            # provider failures plus per-occurrence errors
            "errors": self.failed + self.errors,
            "failed": self.failed,
            "skipped": self.skipped,
            "suppressed": self.suppressed,
            "durationMs": self.duration_ms,
        }


class ReminderDispatcher:
    """Finds today's undelivered occurrences and sends the ones that are due.

    The de-duplication guarantee rests on the DELIVERED existence check and the
    partial unique index on delivery_logs; there is no lock between cycles.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: MessagingGateway,
        limiter: RateLimiter,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.limiter = limiter
        self.settings = settings or get_settings()
        self.sleep = sleep

    async def _collect_candidates(self, db: Session, window_start: datetime, window_end: datetime) -> List[models.ReminderOccurrence]:
        batch_size = self.settings.dispatch_batch_size
        total = crud.count_undelivered_occurrences(db, window_start, window_end)
        if total <= batch_size:
            return crud.get_undelivered_occurrences(db, window_start, window_end)

        candidates: List[models.ReminderOccurrence] = []
        offset = 0
        while offset < total:
            batch = crud.get_undelivered_occurrences(db, window_start, window_end, offset=offset, limit=batch_size)
            if not batch:
                break
            candidates.extend(batch)
            offset += batch_size
            if offset < total:
                await self.sleep(self.settings.dispatch_batch_pause_ms / 1000)
        log.info("dispatch.batched", total=total, batch_size=batch_size)
        return candidates

    async def run_dispatch_cycle(self, now_utc: Optional[datetime] = None, provider: Optional[str] = None) -> DispatchSummary:
        # Misconfiguration is fatal before any work is done
        self.gateway.ensure_configured(provider)

        started = time.monotonic()
        now_utc = now_utc or utcnow()
        today = civil_today(now_utc, self.settings.civil_utc_offset_hours)
        window_start, window_end = civil_day_window(today, self.settings.civil_utc_offset_hours)
        summary = DispatchSummary()

        db = self.session_factory()
        try:
            candidates = await self._collect_candidates(db, window_start, window_end)
            summary.schedules_found = len(candidates)
            log.info("dispatch.started", civil_date=today.isoformat(), candidates=len(candidates), provider=provider)

            for occurrence in candidates:
                summary.processed += 1
                try:
                    await self._process_occurrence(db, occurrence, now_utc, provider, summary)
                except SQLAlchemyError as exc:
                    db.rollback()
                    summary.errors += 1
                    log.error("dispatch.occurrence_error", occurrence_id=occurrence.id, error=str(exc))
                except ValueError as exc:
                    # Malformed stored row, e.g. a scheduled_time that is not HH:MM
                    summary.errors += 1
                    log.error("dispatch.invalid_occurrence", occurrence_id=occurrence.id, error=str(exc))
        finally:
            db.close()

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        log.info("dispatch.finished", **summary.as_response())
        return summary

    async def _process_occurrence(
        self,
        db: Session,
        occurrence: models.ReminderOccurrence,
        now_utc: datetime,
        provider: Optional[str],
        summary: DispatchSummary,
    ) -> None:
        if not is_due(occurrence.scheduled_time, now_utc,
                      self.settings.dispatch_due_tolerance_minutes,
                      self.settings.civil_utc_offset_hours):
            return

        phone_number = occurrence.patient.phone_number if occurrence.patient else None
        if not phone_number or not normalize_phone_number(phone_number):
            summary.errors += 1
            log.error("dispatch.missing_phone", occurrence_id=occurrence.id, patient_id=occurrence.patient_id)
            return

        # Another cycle may have delivered it since the candidate query ran
        if crud.has_delivered_log(db, occurrence.id):
            summary.suppressed += 1
            return

        if not self.limiter.allow(CRON_BUCKET_KEY):
            summary.skipped += 1
            log.warning("dispatch.rate_limited", occurrence_id=occurrence.id,
                        remaining=self.limiter.remaining(CRON_BUCKET_KEY))
            return

        result = await self.gateway.send(phone_number, occurrence.message, provider=provider)
        status = DeliveryStatus.DELIVERED if result.success else DeliveryStatus.FAILED
        try:
            crud.create_delivery_log(
                db,
                occurrence,
                status=status,
                sent_at=now_utc,
                phone_number=phone_number,
                provider=result.provider,
                provider_message_id=result.message_id,
                error=result.error,
            )
        except crud.DuplicateDeliveryError:
            summary.suppressed += 1
            log.warning("dispatch.duplicate_suppressed", occurrence_id=occurrence.id, provider=result.provider)
            return

        if result.success:
            summary.sent += 1
            log.info("dispatch.sent", occurrence_id=occurrence.id, patient_id=occurrence.patient_id,
                     provider=result.provider)
        else:
            summary.failed += 1
            log.warning("dispatch.failed", occurrence_id=occurrence.id, patient_id=occurrence.patient_id,
                        provider=result.provider, error=result.error)
