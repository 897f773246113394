# medreminder/schemas.py
from datetime import datetime, date
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import (
    ConfirmationStatus, DeliveryStatus, EscalationReason, NotificationPriority,
    NotificationStatus, RecurrenceEnd, RecurrenceFrequency, VerificationStatus,
)

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# --- Reminders ---

class RecurrenceIn(BaseModel):
    frequency: RecurrenceFrequency = RecurrenceFrequency.day
    interval: int = Field(default=1, ge=1, le=365)
    days_of_week: List[str] = Field(default_factory=list)
    end_type: Optional[RecurrenceEnd] = None
    end_date: Optional[date] = None
    occurrences: Optional[int] = Field(default=None, ge=1, le=1000)

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v):
        valid = {"sun", "mon", "tue", "wed", "thu", "fri", "sat"}
        days = [d.strip().lower()[:3] for d in v]
        unknown = [d for d in days if d not in valid]
        if unknown:
            raise ValueError(f"Unknown day(s) of week: {', '.join(unknown)}")
        return days

    @model_validator(mode="after")
    def check_end(self):
        if self.end_type == RecurrenceEnd.on and not self.end_date:
            raise ValueError("end_date is required when end_type is 'on'")
        if self.end_type == RecurrenceEnd.after and not self.occurrences:
            raise ValueError("occurrences is required when end_type is 'after'")
        return self


class ReminderCreate(BaseModel):
    time: str = Field(..., pattern=HHMM_PATTERN, description="Civil time of day, HH:MM")
    message: str = Field(..., min_length=1, max_length=1000)
    start_date: Optional[date] = None
    recurrence: Optional[RecurrenceIn] = None
    selected_dates: List[date] = Field(default_factory=list)
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self):
        if not self.recurrence and not self.selected_dates:
            raise ValueError("Either recurrence or selected_dates must be provided")
        return self


class ReminderScheduleResponse(BaseModel):
    id: int
    patient_id: int
    scheduled_time: str
    message: str
    occurrence_count: int
    first_date: Optional[date] = None
    last_date: Optional[date] = None


class OccurrenceResponse(BaseModel):
    id: int
    patient_id: int
    scheduled_time: str
    civil_date: date
    message: str
    is_active: bool
    delivery_status: Optional[DeliveryStatus] = None
    confirmation_status: Optional[ConfirmationStatus] = None


# --- Confirmations ---

class ManualConfirmationRequest(BaseModel):
    taken: bool
    note: Optional[str] = Field(default=None, max_length=500)


class ConfirmationResponse(BaseModel):
    id: int
    delivery_log_id: int
    patient_id: int
    status: ConfirmationStatus
    response_text: Optional[str] = None
    responded_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    class Config:
        from_attributes = True


# --- Verification ---

class VerificationStartResponse(BaseModel):
    patient_id: int
    conversation_state_id: int
    verification_status: VerificationStatus
    expires_at: datetime


# --- Volunteers ---

class VolunteerNotificationResponse(BaseModel):
    id: int
    patient_id: int
    confirmation_id: Optional[int] = None
    message: str
    priority: NotificationPriority
    escalation_reason: EscalationReason
    intent: Optional[str] = None
    confidence: Optional[float] = None
    status: NotificationStatus
    assigned_volunteer_id: Optional[int] = None
    response: Optional[str] = None
    responded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationAssign(BaseModel):
    volunteer_id: int


class NotificationRespond(BaseModel):
    response: str = Field(..., min_length=1)
    outcome: Optional[ConfirmationStatus] = None


# --- Cron / webhook ---

class DispatchResponse(BaseModel):
    success: bool = True
    schedulesFound: int
    processed: int
    sent: int
    errors: int
    failed: int
    skipped: int
    suppressed: int
    durationMs: int


class MaintenanceResponse(BaseModel):
    success: bool = True
    nudged: int
    expired_flows: int
    expired_states: int


class WebhookAck(BaseModel):
    success: bool
    action: str
