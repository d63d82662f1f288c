import unittest

from backoffice.core.errors import AuthorizationError
from backoffice.core.permissions import Actor, can, require
from backoffice.models import ClassInstance


class PermissionTests(unittest.TestCase):
    def setUp(self):
        self.instance = ClassInstance(id=10, student_id=3, teacher_id=2, status='scheduled')
        self.admin = Actor(user_id=1, role='admin')
        self.manager = Actor(user_id=9, role='manager')
        self.teacher = Actor(user_id=2, role='teacher')
        self.other_teacher = Actor(user_id=5, role='teacher')
        self.student = Actor(user_id=3, role='student')
        self.other_student = Actor(user_id=4, role='student')

    def test_class_parties(self):
        for actor in (self.admin, self.manager, self.teacher, self.student):
            self.assertTrue(can(actor, 'class.view', self.instance))
            self.assertTrue(can(actor, 'class.reschedule', self.instance))
        for actor in (self.other_teacher, self.other_student):
            self.assertFalse(can(actor, 'class.view', self.instance))
            self.assertFalse(can(actor, 'class.cancel', self.instance))

    def test_status_targets_by_relation(self):
        self.assertTrue(can(self.teacher, 'class.mark_status', (self.instance, 'completed')))
        self.assertTrue(can(self.teacher, 'class.mark_status', (self.instance, 'no-show')))
        self.assertFalse(can(self.teacher, 'class.mark_status', (self.instance, 'canceled-admin')))
        self.assertFalse(can(self.teacher, 'class.mark_status', (self.instance, 'canceled-student')))
        self.assertTrue(can(self.student, 'class.mark_status', (self.instance, 'canceled-student')))
        self.assertFalse(can(self.student, 'class.mark_status', (self.instance, 'completed')))
        self.assertTrue(can(self.manager, 'class.mark_status', (self.instance, 'overdue')))
        self.assertFalse(can(self.admin, 'class.mark_status', (self.instance, 'rescheduled')))

    def test_staff_only_actions(self):
        for action in (
            'class.assign_teacher',
            'classes.generate',
            'template.manage',
            'credits.grant',
            'contract.admin_sign',
            'audit.view',
        ):
            self.assertTrue(can(self.admin, action, 3))
            self.assertTrue(can(self.manager, action, 3))
            self.assertFalse(can(self.teacher, action, 3))
            self.assertFalse(can(self.student, action, 3))

    def test_self_scoped_actions(self):
        self.assertTrue(can(self.student, 'credits.view', 3))
        self.assertFalse(can(self.student, 'credits.view', 4))
        self.assertTrue(can(self.student, 'class.book_with_credit', 3))
        self.assertFalse(can(self.student, 'class.book_with_credit', 4))
        self.assertTrue(can(self.manager, 'class.book_with_credit', 4))
        self.assertTrue(can(self.student, 'contract.sign', 3))
        self.assertFalse(can(self.admin, 'contract.sign', 3))
        self.assertTrue(can(self.teacher, 'vacation.manage', 2))
        self.assertFalse(can(self.student, 'vacation.manage', 3))
        self.assertTrue(can(self.other_teacher, 'availability.view', 2))

    def test_unknown_action_is_denied(self):
        self.assertFalse(can(self.admin, 'class.delete', self.instance))
        with self.assertRaises(AuthorizationError):
            require(self.admin, 'class.delete', self.instance)

    def test_actor_from_session_normalizes_role(self):
        actor = Actor.from_session({'user_id': '7', 'role': ' Teacher '})
        self.assertEqual(actor, Actor(user_id=7, role='teacher'))
        self.assertTrue(actor.is_teacher)
        self.assertFalse(actor.is_staff)


if __name__ == '__main__':
    unittest.main()
