from datetime import date, datetime
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.config import settings
from backoffice.core.time_provider import default_time_provider
from backoffice.db import Base


def _local_now() -> datetime:
    return default_time_provider.local_naive_now()


class Role(str, Enum):
    ADMIN = 'admin'
    MANAGER = 'manager'
    TEACHER = 'teacher'
    STUDENT = 'student'


STAFF_ROLES = frozenset({Role.ADMIN.value, Role.MANAGER.value})


class ClassStatus(str, Enum):
    SCHEDULED = 'scheduled'
    COMPLETED = 'completed'
    NO_SHOW = 'no-show'
    RESCHEDULED = 'rescheduled'
    CANCELED_STUDENT = 'canceled-student'
    CANCELED_TEACHER = 'canceled-teacher'
    CANCELED_TEACHER_MAKEUP = 'canceled-teacher-makeup'
    CANCELED_ADMIN = 'canceled-admin'
    CANCELED_CREDIT = 'canceled-credit'
    TEACHER_VACATION = 'teacher-vacation'
    OVERDUE = 'overdue'


class CreditType(str, Enum):
    BONUS = 'bonus'
    LATE_STUDENTS = 'late-students'
    TEACHER_CANCELLATION = 'teacher-cancellation'


class CreditAction(str, Enum):
    GRANTED = 'granted'
    USED = 'used'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(160), default='')
    email: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default=Role.STUDENT.value, index=True)
    contract_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contract_length_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vacation_days_remaining: Mapped[int] = mapped_column(Integer, default=lambda: settings.vacation_default_days)
    booking_lead_time_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancellation_policy_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)


class StudentTeacherLink(Base):
    __tablename__ = 'student_teacher_links'
    __table_args__ = (
        UniqueConstraint('student_id', 'teacher_id', name='uq_student_teacher_links_pair'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)


class ScheduleTemplateEntry(Base):
    __tablename__ = 'schedule_template_entries'
    __table_args__ = (
        UniqueConstraint('student_id', 'weekday', 'start_time', name='uq_schedule_template_entries_slot'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    weekday: Mapped[int] = mapped_column(Integer)  # Monday=0 ... Sunday=6
    start_time: Mapped[str] = mapped_column(String(5))
    teacher_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    language: Mapped[str] = mapped_column(String(40), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)


class ClassInstance(Base):
    __tablename__ = 'class_instances'
    __table_args__ = (
        UniqueConstraint('template_entry_id', 'scheduled_at', name='uq_class_instances_entry_slot'),
        Index(
            'uq_class_instances_teacher_scheduled',
            'teacher_id',
            'scheduled_at',
            unique=True,
            sqlite_where=text("status = 'scheduled'"),
            postgresql_where=text("status = 'scheduled'"),
        ),
        Index('ix_class_instances_student_scheduled', 'student_id', 'scheduled_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    teacher_id: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True, index=True)
    language: Mapped[str] = mapped_column(String(40), default='')
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=50)
    status: Mapped[str] = mapped_column(String(32), default=ClassStatus.SCHEDULED.value, index=True)
    notes: Mapped[str] = mapped_column(Text, default='')
    feedback: Mapped[str] = mapped_column(Text, default='')
    rescheduled_from_id: Mapped[int | None] = mapped_column(ForeignKey('class_instances.id'), nullable=True, index=True)
    reschedule_reason: Mapped[str] = mapped_column(Text, default='')
    template_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey('schedule_template_entries.id', ondelete='SET NULL'), nullable=True, index=True
    )
    availability_slot_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credit_transaction_id: Mapped[int | None] = mapped_column(ForeignKey('credit_transactions.id'), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    canceled_by_role: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cancel_reason: Mapped[str] = mapped_column(Text, default='')
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)


class TeacherAvailabilitySlot(Base):
    __tablename__ = 'teacher_availability_slots'
    __table_args__ = (
        Index('ix_teacher_availability_slots_teacher_weekday', 'teacher_id', 'weekday'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    weekday: Mapped[int] = mapped_column(Integer)  # Monday=0 ... Sunday=6
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5), default='')
    title: Mapped[str] = mapped_column(String(120), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)


class Vacation(Base):
    __tablename__ = 'vacations'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    start_date: Mapped[date] = mapped_column(Date, index=True)
    end_date: Mapped[date] = mapped_column(Date)
    reason: Mapped[str] = mapped_column(Text, default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)


class MonthlyRescheduleCount(Base):
    __tablename__ = 'monthly_reschedule_counts'
    __table_args__ = (
        UniqueConstraint('student_id', 'month', name='uq_monthly_reschedule_counts_student_month'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    month: Mapped[str] = mapped_column(String(7))  # YYYY-MM
    count: Mapped[int] = mapped_column(Integer, default=0)


class CreditTransaction(Base):
    __tablename__ = 'credit_transactions'
    __table_args__ = (
        Index('ix_credit_transactions_student_action', 'student_id', 'action'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    credit_id: Mapped[int | None] = mapped_column(ForeignKey('credit_transactions.id'), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(32), index=True)
    action: Mapped[str] = mapped_column(String(16))
    amount: Mapped[int] = mapped_column(Integer, default=1)
    remaining: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reason: Mapped[str] = mapped_column(Text, default='')
    class_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    performed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, index=True)


class ContractLog(Base):
    __tablename__ = 'contract_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    name: Mapped[str] = mapped_column(String(160))
    tax_id: Mapped[str] = mapped_column(String(20))
    birth_date: Mapped[date] = mapped_column(Date)
    address: Mapped[str] = mapped_column(String(240))
    city: Mapped[str] = mapped_column(String(120), default='')
    state: Mapped[str] = mapped_column(String(60), default='')
    zip_code: Mapped[str] = mapped_column(String(20), default='')
    ip: Mapped[str] = mapped_column(String(64), default='')
    browser: Mapped[str] = mapped_column(String(255), default='')
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    signed_at: Mapped[datetime] = mapped_column(DateTime)
    agreed_to_terms: Mapped[bool] = mapped_column(Boolean, default=False)
    admin_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    admin_tax_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    admin_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    admin_browser: Mapped[str | None] = mapped_column(String(255), nullable=True)
    admin_signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    contract_version: Mapped[str] = mapped_column(String(20), default='1.0')


class Contract(Base):
    __tablename__ = 'contracts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), unique=True, index=True)
    signed: Mapped[bool] = mapped_column(Boolean, default=False)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    signed_by_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    admin_signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    auto_renewal: Mapped[bool] = mapped_column(Boolean, default=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    renewal_count: Mapped[int] = mapped_column(Integer, default=0)
    last_renewal_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    log_id: Mapped[int | None] = mapped_column(ForeignKey('contract_logs.id'), nullable=True)
    contract_version: Mapped[str] = mapped_column(String(20), default='1.0')
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)


class AuditEvent(Base):
    __tablename__ = 'audit_events'
    __table_args__ = (
        Index('ix_audit_events_entity', 'entity_type', 'entity_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(60), index=True)
    entity_type: Mapped[str] = mapped_column(String(40))
    entity_id: Mapped[int] = mapped_column(Integer)
    payload_json: Mapped[str] = mapped_column(Text, default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, index=True)
