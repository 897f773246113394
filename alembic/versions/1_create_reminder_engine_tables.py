"""create reminder engine tables

Revision ID: 1
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1'
down_revision = None
branch_labels = None
depends_on = None


verification_status = sa.Enum('unverified', 'pending', 'verified', 'declined', 'expired', name='verificationstatus')
recurrence_frequency = sa.Enum('day', 'week', 'month', name='recurrencefrequency')
recurrence_end = sa.Enum('never', 'on', 'after', name='recurrenceend')
delivery_status = sa.Enum('DELIVERED', 'FAILED', name='deliverystatus')
confirmation_status = sa.Enum('PENDING', 'CONFIRMED', 'MISSED', 'UNCLEAR', name='confirmationstatus')
conversation_context = sa.Enum('verification', 'confirmation', 'general_inquiry', name='conversationcontext')
message_direction = sa.Enum('inbound', 'outbound', name='messagedirection')
escalation_reason = sa.Enum('emergency_detection', 'low_confidence', 'complex_inquiry', name='escalationreason')
notification_priority = sa.Enum('low', 'medium', 'high', 'emergency', name='notificationpriority')
notification_status = sa.Enum('pending', 'assigned', 'responded', 'resolved', name='notificationstatus')


def upgrade():
    op.create_table(
        'patients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('verification_status', verification_status, nullable=False, server_default='unverified'),
        sa.Column('verification_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verification_response_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_patients_phone', 'patients', ['phone_number'])

    op.create_table(
        'volunteers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'reminder_schedules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False, index=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('scheduled_time', sa.String(5), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('frequency', recurrence_frequency, nullable=True),
        sa.Column('interval', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('days_of_week', sa.JSON(), nullable=True),
        sa.Column('end_type', recurrence_end, nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('occurrence_limit', sa.Integer(), nullable=True),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'reminder_occurrences',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('schedule_id', sa.Integer(), sa.ForeignKey('reminder_schedules.id'), nullable=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('scheduled_time', sa.String(5), nullable=False),
        sa.Column('occurrence_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_occurrence_due', 'reminder_occurrences', ['is_active', 'occurrence_date', 'scheduled_time'])
    op.create_index('idx_occurrence_patient', 'reminder_occurrences', ['patient_id', 'occurrence_date'])

    op.create_table(
        'delivery_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('occurrence_id', sa.Integer(), sa.ForeignKey('reminder_occurrences.id'), nullable=False, index=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', delivery_status, nullable=False),
        sa.Column('provider', sa.String(30), nullable=True),
        sa.Column('provider_message_id', sa.String(100), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
    )
    # One DELIVERED row per occurrence; a racing second insert fails instead of double-logging
    op.create_index(
        'uq_delivery_logs_delivered_occurrence', 'delivery_logs', ['occurrence_id'],
        unique=True,
        postgresql_where=sa.text("status = 'DELIVERED'"),
        sqlite_where=sa.text("status = 'DELIVERED'"),
    )
    op.create_index('idx_delivery_patient_sent', 'delivery_logs', ['patient_id', 'sent_at'])

    op.create_table(
        'confirmations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('delivery_log_id', sa.Integer(), sa.ForeignKey('delivery_logs.id'), nullable=False, unique=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False, index=True),
        sa.Column('status', confirmation_status, nullable=False, server_default='PENDING'),
        sa.Column('response_text', sa.Text(), nullable=True),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(20), nullable=True),
        sa.Column('intent', sa.String(50), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'conversation_states',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=False),
        sa.Column('current_context', conversation_context, nullable=False),
        sa.Column('state_data', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_message', sa.Text(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_conversation_patient_active', 'conversation_states', ['patient_id', 'is_active', 'expires_at'])
    op.create_index('idx_conversation_phone', 'conversation_states', ['phone_number'])

    op.create_table(
        'conversation_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('conversation_state_id', sa.Integer(), sa.ForeignKey('conversation_states.id'), nullable=False, index=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('direction', message_direction, nullable=False),
        sa.Column('message_type', sa.String(30), nullable=False, server_default='general'),
        sa.Column('intent', sa.String(50), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'volunteer_notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False, index=True),
        sa.Column('confirmation_id', sa.Integer(), sa.ForeignKey('confirmations.id'), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('priority', notification_priority, nullable=False),
        sa.Column('escalation_reason', escalation_reason, nullable=False),
        sa.Column('intent', sa.String(50), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('status', notification_status, nullable=False, server_default='pending'),
        sa.Column('assigned_volunteer_id', sa.Integer(), sa.ForeignKey('volunteers.id'), nullable=True),
        sa.Column('response', sa.Text(), nullable=True),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_volunteer_notification_status', 'volunteer_notifications', ['status', 'priority'])


def downgrade():
    op.drop_table('volunteer_notifications')
    op.drop_table('conversation_messages')
    op.drop_table('conversation_states')
    op.drop_table('confirmations')
    op.drop_table('delivery_logs')
    op.drop_table('reminder_occurrences')
    op.drop_table('reminder_schedules')
    op.drop_table('volunteers')
    op.drop_table('patients')
    bind = op.get_bind()
    for enum_type in (
        notification_status, notification_priority, escalation_reason, message_direction,
        conversation_context, confirmation_status, delivery_status, recurrence_end,
        recurrence_frequency, verification_status,
    ):
        enum_type.drop(bind, checkfirst=True)
