"""lifecycle core tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261018_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=160), nullable=False, server_default=''),
        sa.Column('email', sa.String(length=200), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='student'),
        sa.Column('contract_start_date', sa.Date(), nullable=True),
        sa.Column('contract_length_months', sa.Integer(), nullable=True),
        sa.Column('vacation_days_remaining', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('booking_lead_time_hours', sa.Integer(), nullable=True),
        sa.Column('cancellation_policy_hours', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])

    op.create_table(
        'student_teacher_links',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('teacher_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('student_id', 'teacher_id', name='uq_student_teacher_links_pair'),
    )
    op.create_index('ix_student_teacher_links_id', 'student_teacher_links', ['id'])
    op.create_index('ix_student_teacher_links_student_id', 'student_teacher_links', ['student_id'])
    op.create_index('ix_student_teacher_links_teacher_id', 'student_teacher_links', ['teacher_id'])

    op.create_table(
        'schedule_template_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('teacher_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('language', sa.String(length=40), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('student_id', 'weekday', 'start_time', name='uq_schedule_template_entries_slot'),
    )
    op.create_index('ix_schedule_template_entries_id', 'schedule_template_entries', ['id'])
    op.create_index('ix_schedule_template_entries_student_id', 'schedule_template_entries', ['student_id'])
    op.create_index('ix_schedule_template_entries_teacher_id', 'schedule_template_entries', ['teacher_id'])

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('credit_id', sa.Integer(), sa.ForeignKey('credit_transactions.id'), nullable=True),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False, server_default=''),
        sa.Column('class_id', sa.Integer(), nullable=True),
        sa.Column('performed_by', sa.Integer(), nullable=True),
        sa.Column('performed_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_credit_transactions_id', 'credit_transactions', ['id'])
    op.create_index('ix_credit_transactions_student_id', 'credit_transactions', ['student_id'])
    op.create_index('ix_credit_transactions_credit_id', 'credit_transactions', ['credit_id'])
    op.create_index('ix_credit_transactions_type', 'credit_transactions', ['type'])
    op.create_index('ix_credit_transactions_expires_at', 'credit_transactions', ['expires_at'])
    op.create_index('ix_credit_transactions_performed_at', 'credit_transactions', ['performed_at'])
    op.create_index('ix_credit_transactions_student_action', 'credit_transactions', ['student_id', 'action'])

    op.create_table(
        'class_instances',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('teacher_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('language', sa.String(length=40), nullable=False, server_default=''),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='scheduled'),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('feedback', sa.Text(), nullable=False, server_default=''),
        sa.Column('rescheduled_from_id', sa.Integer(), sa.ForeignKey('class_instances.id'), nullable=True),
        sa.Column('reschedule_reason', sa.Text(), nullable=False, server_default=''),
        sa.Column(
            'template_entry_id',
            sa.Integer(),
            sa.ForeignKey('schedule_template_entries.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('availability_slot_id', sa.Integer(), nullable=True),
        sa.Column('credit_transaction_id', sa.Integer(), sa.ForeignKey('credit_transactions.id'), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_by_role', sa.String(length=20), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=False, server_default=''),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('reminder_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('template_entry_id', 'scheduled_at', name='uq_class_instances_entry_slot'),
    )
    op.create_index('ix_class_instances_id', 'class_instances', ['id'])
    op.create_index('ix_class_instances_student_id', 'class_instances', ['student_id'])
    op.create_index('ix_class_instances_teacher_id', 'class_instances', ['teacher_id'])
    op.create_index('ix_class_instances_scheduled_at', 'class_instances', ['scheduled_at'])
    op.create_index('ix_class_instances_status', 'class_instances', ['status'])
    op.create_index('ix_class_instances_rescheduled_from_id', 'class_instances', ['rescheduled_from_id'])
    op.create_index('ix_class_instances_template_entry_id', 'class_instances', ['template_entry_id'])
    op.create_index('ix_class_instances_reminder_sent', 'class_instances', ['reminder_sent'])
    op.create_index('ix_class_instances_student_scheduled', 'class_instances', ['student_id', 'scheduled_at'])
    op.create_index(
        'uq_class_instances_teacher_scheduled',
        'class_instances',
        ['teacher_id', 'scheduled_at'],
        unique=True,
        sqlite_where=sa.text("status = 'scheduled'"),
        postgresql_where=sa.text("status = 'scheduled'"),
    )

    op.create_table(
        'teacher_availability_slots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('teacher_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False, server_default=''),
        sa.Column('title', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_teacher_availability_slots_id', 'teacher_availability_slots', ['id'])
    op.create_index('ix_teacher_availability_slots_teacher_id', 'teacher_availability_slots', ['teacher_id'])
    op.create_index(
        'ix_teacher_availability_slots_teacher_weekday', 'teacher_availability_slots', ['teacher_id', 'weekday']
    )

    op.create_table(
        'vacations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('teacher_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_vacations_id', 'vacations', ['id'])
    op.create_index('ix_vacations_teacher_id', 'vacations', ['teacher_id'])
    op.create_index('ix_vacations_start_date', 'vacations', ['start_date'])

    op.create_table(
        'monthly_reschedule_counts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('month', sa.String(length=7), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('student_id', 'month', name='uq_monthly_reschedule_counts_student_month'),
    )
    op.create_index('ix_monthly_reschedule_counts_id', 'monthly_reschedule_counts', ['id'])
    op.create_index('ix_monthly_reschedule_counts_student_id', 'monthly_reschedule_counts', ['student_id'])

    op.create_table(
        'contract_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('tax_id', sa.String(length=20), nullable=False),
        sa.Column('birth_date', sa.Date(), nullable=False),
        sa.Column('address', sa.String(length=240), nullable=False),
        sa.Column('city', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('state', sa.String(length=60), nullable=False, server_default=''),
        sa.Column('zip_code', sa.String(length=20), nullable=False, server_default=''),
        sa.Column('ip', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('browser', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('viewed_at', sa.DateTime(), nullable=True),
        sa.Column('signed_at', sa.DateTime(), nullable=False),
        sa.Column('agreed_to_terms', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('admin_name', sa.String(length=160), nullable=True),
        sa.Column('admin_tax_id', sa.String(length=20), nullable=True),
        sa.Column('admin_ip', sa.String(length=64), nullable=True),
        sa.Column('admin_browser', sa.String(length=255), nullable=True),
        sa.Column('admin_signed_at', sa.DateTime(), nullable=True),
        sa.Column('contract_version', sa.String(length=20), nullable=False, server_default='1.0'),
    )
    op.create_index('ix_contract_logs_id', 'contract_logs', ['id'])
    op.create_index('ix_contract_logs_user_id', 'contract_logs', ['user_id'])

    op.create_table(
        'contracts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('signed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('signed_at', sa.DateTime(), nullable=True),
        sa.Column('signed_by_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('admin_signed_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('auto_renewal', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.Integer(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('renewal_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_renewal_at', sa.DateTime(), nullable=True),
        sa.Column('log_id', sa.Integer(), sa.ForeignKey('contract_logs.id'), nullable=True),
        sa.Column('contract_version', sa.String(length=20), nullable=False, server_default='1.0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_contracts_id', 'contracts', ['id'])
    op.create_index('ix_contracts_user_id', 'contracts', ['user_id'], unique=True)
    op.create_index('ix_contracts_expires_at', 'contracts', ['expires_at'])

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=60), nullable=False),
        sa.Column('entity_type', sa.String(length=40), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('payload_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_events_id', 'audit_events', ['id'])
    op.create_index('ix_audit_events_actor_id', 'audit_events', ['actor_id'])
    op.create_index('ix_audit_events_action', 'audit_events', ['action'])
    op.create_index('ix_audit_events_created_at', 'audit_events', ['created_at'])
    op.create_index('ix_audit_events_entity', 'audit_events', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_table('contracts')
    op.drop_table('contract_logs')
    op.drop_table('monthly_reschedule_counts')
    op.drop_table('vacations')
    op.drop_table('teacher_availability_slots')
    op.drop_table('class_instances')
    op.drop_table('credit_transactions')
    op.drop_table('schedule_template_entries')
    op.drop_table('student_teacher_links')
    op.drop_table('users')
