from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from backoffice.core.errors import AuthorizationError
from backoffice.models import STAFF_ROLES, ClassInstance, ClassStatus, Role


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_teacher(self) -> bool:
        return self.role == Role.TEACHER.value

    @property
    def is_student(self) -> bool:
        return self.role == Role.STUDENT.value

    @classmethod
    def from_session(cls, user: dict) -> 'Actor':
        return cls(user_id=int(user.get('user_id') or 0), role=str(user.get('role') or '').strip().lower())


SYSTEM_ACTOR = Actor(user_id=0, role=Role.ADMIN.value)


# Who may move a class into each target status.
STATUS_TRANSITION_ACTORS: dict[str, frozenset[str]] = {
    ClassStatus.COMPLETED.value: frozenset({'staff', 'assigned_teacher'}),
    ClassStatus.NO_SHOW.value: frozenset({'staff', 'assigned_teacher'}),
    ClassStatus.CANCELED_TEACHER.value: frozenset({'staff', 'assigned_teacher'}),
    ClassStatus.CANCELED_TEACHER_MAKEUP.value: frozenset({'staff', 'assigned_teacher'}),
    ClassStatus.CANCELED_STUDENT.value: frozenset({'staff', 'owner_student'}),
    ClassStatus.CANCELED_ADMIN.value: frozenset({'staff'}),
    ClassStatus.CANCELED_CREDIT.value: frozenset({'staff'}),
    ClassStatus.OVERDUE.value: frozenset({'staff'}),
    ClassStatus.TEACHER_VACATION.value: frozenset({'staff'}),
}


def class_relations(actor: Actor, instance: ClassInstance) -> set[str]:
    relations: set[str] = set()
    if actor.is_staff:
        relations.add('staff')
    if actor.is_teacher and instance.teacher_id is not None and int(instance.teacher_id) == actor.user_id:
        relations.add('assigned_teacher')
    if actor.is_student and int(instance.student_id) == actor.user_id:
        relations.add('owner_student')
    return relations


def _staff(actor: Actor, resource: Any) -> bool:
    return actor.is_staff


def _self_or_staff(actor: Actor, resource: Any) -> bool:
    return actor.is_staff or (resource is not None and int(resource) == actor.user_id)


def _self_only(actor: Actor, resource: Any) -> bool:
    return resource is not None and int(resource) == actor.user_id


def _teacher_self_or_staff(actor: Actor, resource: Any) -> bool:
    if actor.is_staff:
        return True
    return actor.is_teacher and resource is not None and int(resource) == actor.user_id


def _class_party(actor: Actor, resource: Any) -> bool:
    return bool(class_relations(actor, resource))


def _class_status(actor: Actor, resource: Any) -> bool:
    instance, target_status = resource
    allowed = STATUS_TRANSITION_ACTORS.get(target_status, frozenset())
    return bool(allowed & class_relations(actor, instance))


def _authenticated(actor: Actor, resource: Any) -> bool:
    return actor.user_id > 0 and actor.role in {role.value for role in Role}


_RULES: dict[str, Callable[[Actor, Any], bool]] = {
    'class.view': _class_party,
    'class.assign_teacher': _staff,
    'class.mark_status': _class_status,
    'class.cancel': _class_party,
    'class.reschedule': _class_party,
    'class.book_with_credit': _self_or_staff,
    'classes.generate': _staff,
    'template.view': _self_or_staff,
    'template.manage': _staff,
    'schedule.assign': _staff,
    'availability.view': _authenticated,
    'availability.manage': _teacher_self_or_staff,
    'vacation.view': _teacher_self_or_staff,
    'vacation.manage': _teacher_self_or_staff,
    'credits.grant': _staff,
    'credits.view': _self_or_staff,
    'audit.view': _staff,
    'contract.view': _self_or_staff,
    'contract.sign': _self_only,
    'contract.admin_sign': _staff,
    'contract.cancel': _self_or_staff,
    'contract.renew': _self_or_staff,
    'contract.auto_renewal': _self_or_staff,
}


def can(actor: Actor, action: str, resource: Any = None) -> bool:
    rule = _RULES.get(action)
    if rule is None:
        return False
    return rule(actor, resource)


def require(actor: Actor, action: str, resource: Any = None) -> None:
    if not can(actor, action, resource):
        raise AuthorizationError('Forbidden')
