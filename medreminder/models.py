# medreminder/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text, Float,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class VerificationStatus(str, enum.Enum):
    unverified = "unverified"
    pending = "pending"
    verified = "verified"
    declined = "declined"
    expired = "expired"


class RecurrenceFrequency(str, enum.Enum):
    day = "day"
    week = "week"
    month = "month"


class RecurrenceEnd(str, enum.Enum):
    never = "never"
    on = "on"
    after = "after"


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class ConfirmationStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    MISSED = "MISSED"
    UNCLEAR = "UNCLEAR"

    @property
    def is_terminal(self) -> bool:
        return self in (ConfirmationStatus.CONFIRMED, ConfirmationStatus.MISSED)


class ConversationContext(str, enum.Enum):
    verification = "verification"
    confirmation = "confirmation"
    general_inquiry = "general_inquiry"


class MessageDirection(str, enum.Enum):
    inbound = "inbound"
    outbound = "outbound"


class EscalationReason(str, enum.Enum):
    emergency_detection = "emergency_detection"
    low_confidence = "low_confidence"
    complex_inquiry = "complex_inquiry"


class NotificationPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    emergency = "emergency"


class NotificationStatus(str, enum.Enum):
    pending = "pending"
    assigned = "assigned"
    responded = "responded"
    resolved = "resolved"


# Statuses an automated or manual resolver may still act on
OPEN_CONFIRMATION_STATUSES = (ConfirmationStatus.PENDING, ConfirmationStatus.UNCLEAR)


class Patient(Base):
    """Patient record as seen by the reminder engine. Managed elsewhere."""
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_phone', 'phone_number'),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    phone_number = Column(String(20), nullable=True)
    verification_status = Column(SQLAlchemyEnum(VerificationStatus), default=VerificationStatus.unverified, nullable=False)
    verification_sent_at = Column(DateTime(timezone=True), nullable=True)
    verification_response_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    occurrences = relationship("ReminderOccurrence", back_populates="patient")


class Volunteer(Base):
    __tablename__ = "volunteers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    phone_number = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ReminderSchedule(Base):
    """Caregiver-defined reminder, expanded into ReminderOccurrence rows on creation"""
    __tablename__ = "reminder_schedules"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    scheduled_time = Column(String(5), nullable=False)  # HH:MM civil
    start_date = Column(Date, nullable=False)

    # Recurrence definition (null frequency = explicit dates)
    frequency = Column(SQLAlchemyEnum(RecurrenceFrequency), nullable=True)
    interval = Column(Integer, default=1, nullable=False)
    days_of_week = Column(JSON, nullable=True)
    end_type = Column(SQLAlchemyEnum(RecurrenceEnd), nullable=True)
    end_date = Column(Date, nullable=True)
    occurrence_limit = Column(Integer, nullable=True)

    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    occurrences = relationship("ReminderOccurrence", back_populates="schedule")


class ReminderOccurrence(Base):
    """One concrete dated reminder. occurrence_date holds the UTC instant of civil midnight."""
    __tablename__ = "reminder_occurrences"
    __table_args__ = (
        Index('idx_occurrence_due', 'is_active', 'occurrence_date', 'scheduled_time'),
        Index('idx_occurrence_patient', 'patient_id', 'occurrence_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey("reminder_schedules.id"), nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    scheduled_time = Column(String(5), nullable=False)
    occurrence_date = Column(DateTime(timezone=True), nullable=False)
    message = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    patient = relationship("Patient", back_populates="occurrences")
    schedule = relationship("ReminderSchedule", back_populates="occurrences")
    delivery_logs = relationship("DeliveryLog", back_populates="occurrence")


class DeliveryLog(Base):
    """One send attempt. At most one DELIVERED row may exist per occurrence."""
    __tablename__ = "delivery_logs"
    __table_args__ = (
        Index(
            'uq_delivery_logs_delivered_occurrence', 'occurrence_id',
            unique=True,
            sqlite_where=text("status = 'DELIVERED'"),
            postgresql_where=text("status = 'DELIVERED'"),
        ),
        Index('idx_delivery_patient_sent', 'patient_id', 'sent_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    occurrence_id = Column(Integer, ForeignKey("reminder_occurrences.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(SQLAlchemyEnum(DeliveryStatus), nullable=False)
    provider = Column(String(30), nullable=True)
    provider_message_id = Column(String(100), nullable=True)
    message = Column(Text, nullable=True)
    phone_number = Column(String(20), nullable=True)
    error = Column(Text, nullable=True)

    occurrence = relationship("ReminderOccurrence", back_populates="delivery_logs")
    confirmation = relationship("Confirmation", back_populates="delivery_log", uselist=False)


class Confirmation(Base):
    __tablename__ = "confirmations"

    id = Column(Integer, primary_key=True, index=True)
    delivery_log_id = Column(Integer, ForeignKey("delivery_logs.id"), nullable=False, unique=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    status = Column(SQLAlchemyEnum(ConfirmationStatus), default=ConfirmationStatus.PENDING, nullable=False)
    response_text = Column(Text, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(20), nullable=True)  # classifier, manual, volunteer
    intent = Column(String(50), nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    delivery_log = relationship("DeliveryLog", back_populates="confirmation")


class ConversationState(Base):
    """Short-lived per-patient conversation context"""
    __tablename__ = "conversation_states"
    __table_args__ = (
        Index('idx_conversation_patient_active', 'patient_id', 'is_active', 'expires_at'),
        Index('idx_conversation_phone', 'phone_number'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    phone_number = Column(String(20), nullable=False)
    current_context = Column(SQLAlchemyEnum(ConversationContext), nullable=False)
    state_data = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_message = Column(Text, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    messages = relationship("ConversationMessage", back_populates="conversation_state")


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_state_id = Column(Integer, ForeignKey("conversation_states.id"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    direction = Column(SQLAlchemyEnum(MessageDirection), nullable=False)
    message_type = Column(String(30), nullable=False, default="general")
    intent = Column(String(50), nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    conversation_state = relationship("ConversationState", back_populates="messages")


class VolunteerNotification(Base):
    """Escalation of an inbound message to a human volunteer"""
    __tablename__ = "volunteer_notifications"
    __table_args__ = (
        Index('idx_volunteer_notification_status', 'status', 'priority'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    confirmation_id = Column(Integer, ForeignKey("confirmations.id"), nullable=True)
    message = Column(Text, nullable=False)
    priority = Column(SQLAlchemyEnum(NotificationPriority), nullable=False)
    escalation_reason = Column(SQLAlchemyEnum(EscalationReason), nullable=False)
    intent = Column(String(50), nullable=True)
    confidence = Column(Float, nullable=True)
    status = Column(SQLAlchemyEnum(NotificationStatus), default=NotificationStatus.pending, nullable=False)
    assigned_volunteer_id = Column(Integer, ForeignKey("volunteers.id"), nullable=True)
    response = Column(Text, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
