from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ClassTeacherUpdateRequest(_CamelModel):
    teacher_id: int | None = Field(default=None, alias='teacherId')


class ClassStatusUpdateRequest(_CamelModel):
    status: str
    feedback: str | None = None
    reason: str | None = None


class ClassCancelRequest(_CamelModel):
    reason: str | None = None
    allow_makeup: bool = Field(default=True, alias='allowMakeup')


class RescheduleRequest(_CamelModel):
    scheduled_at: datetime = Field(alias='scheduledAt')
    reason: str | None = None


class CreditBookingRequest(_CamelModel):
    student_id: int = Field(alias='studentId')
    teacher_id: int = Field(alias='teacherId')
    scheduled_at: datetime = Field(alias='scheduledAt')
    credit_id: int | None = Field(default=None, alias='creditId')
    slot_id: int | None = Field(default=None, alias='slotId')
    language: str = ''
    notes: str = ''


class GenerateClassesRequest(_CamelModel):
    student_id: int = Field(alias='studentId')
    from_date: date | None = Field(default=None, alias='fromDate')
    to_date: date | None = Field(default=None, alias='toDate')


class TemplateDay(_CamelModel):
    weekday: int = Field(ge=0, le=6)
    start_time: str = Field(alias='startTime')
    teacher_id: int = Field(alias='teacherId')
    language: str = ''


class TemplateSaveRequest(_CamelModel):
    days: list[TemplateDay]


class DeleteClassesRequest(_CamelModel):
    option: Literal['all', 'from-date', 'date-range'] = 'all'
    from_date: date | None = Field(default=None, alias='fromDate')
    to_date: date | None = Field(default=None, alias='toDate')
    template_entries: list[int] | None = Field(default=None, alias='templateEntries')


class AssignScheduleRequest(_CamelModel):
    student_id: int = Field(alias='studentId')
    teacher_id: int = Field(alias='teacherId')
    slot_id: int = Field(alias='slotId')
    language: str = ''
    day: int | None = Field(default=None, ge=0, le=6)
    start_time: str | None = Field(default=None, alias='startTime')


class AvailabilitySlotCreateRequest(_CamelModel):
    teacher_id: int = Field(alias='teacherId')
    weekday: int = Field(ge=0, le=6)
    start_time: str = Field(alias='startTime')
    end_time: str = Field(default='', alias='endTime')
    title: str = ''


class CreditGrantRequest(_CamelModel):
    student_id: int = Field(alias='studentId')
    type: Literal['bonus', 'late-students', 'teacher-cancellation']
    amount: int
    expires_at: datetime = Field(alias='expiresAt')
    reason: str = ''


class ContractSignRequest(_CamelModel):
    name: str
    tax_id: str = Field(alias='taxId')
    birth_date: date = Field(alias='birthDate')
    address: str
    city: str = ''
    state: str = ''
    zip_code: str = Field(default='', alias='zipCode')
    agreed_to_terms: bool = Field(default=False, alias='agreedToTerms')
    viewed_at: datetime | None = Field(default=None, alias='viewedAt')


class ContractAdminSignRequest(_CamelModel):
    name: str = ''
    tax_id: str = Field(default='', alias='taxId')


class ContractCancelRequest(_CamelModel):
    reason: str | None = None
    is_admin_cancellation: bool | None = Field(default=None, alias='isAdminCancellation')


class ContractRenewRequest(_CamelModel):
    renewal_type: Literal['manual', 'automatic'] = Field(default='manual', alias='renewalType')


class AutoRenewalUpdateRequest(_CamelModel):
    enabled: bool


class VacationCreateRequest(_CamelModel):
    teacher_id: int | None = Field(default=None, alias='teacherId')
    start_date: date = Field(alias='startDate')
    end_date: date = Field(alias='endDate')
    reason: str = ''
