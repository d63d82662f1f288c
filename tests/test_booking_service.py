import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backoffice.core.errors import AuthorizationError, ConflictError, ValidationError
from backoffice.core.permissions import Actor
from backoffice.core.time_provider import APP_ZONEINFO, TimeProvider
from backoffice.db import Base
from backoffice.models import (
    ClassInstance,
    CreditTransaction,
    StudentTeacherLink,
    TeacherAvailabilitySlot,
    User,
    Vacation,
)
from backoffice.services.booking_service import book_class_with_credit
from backoffice.services.reschedule_service import reschedule_class


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


# Monday morning; the teacher is open on Monday and Wednesday at 10:00.
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=APP_ZONEINFO)
WEDNESDAY_10 = datetime(2026, 3, 4, 10, 0)


class BookingServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_booking_service.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.clock = FixedTimeProvider(NOW)
        db = self._session_factory()
        try:
            for model in (
                CreditTransaction,
                ClassInstance,
                StudentTeacherLink,
                Vacation,
                TeacherAvailabilitySlot,
                User,
            ):
                db.query(model).delete()
            admin = User(name='Admin', email='admin@example.com', role='admin')
            teacher = User(name='Teacher', email='teacher@example.com', role='teacher')
            student = User(name='Student', email='student@example.com', role='student')
            other = User(name='Other', email='other@example.com', role='student')
            db.add_all([admin, teacher, student, other])
            db.commit()
            self.admin = Actor(user_id=admin.id, role='admin')
            self.teacher_id = teacher.id
            self.student = Actor(user_id=student.id, role='student')
            self.other = Actor(user_id=other.id, role='student')
            monday = TeacherAvailabilitySlot(teacher_id=teacher.id, weekday=0, start_time='10:00')
            wednesday = TeacherAvailabilitySlot(teacher_id=teacher.id, weekday=2, start_time='10:00')
            db.add_all([monday, wednesday])
            db.commit()
            self.monday_slot_id = monday.id
            self.wednesday_slot_id = wednesday.id
        finally:
            db.close()

    def _grant(self, db, credit_type='bonus', *, student_id=None):
        row = CreditTransaction(
            student_id=student_id or self.student.user_id,
            type=credit_type,
            action='granted',
            amount=1,
            remaining=1,
            expires_at=datetime(2026, 4, 30, 0, 0),
            reason='Loyalty bonus',
            performed_at=datetime(2026, 2, 20, 12, 0),
        )
        db.add(row)
        db.commit()
        return row.id

    def _book(self, db, scheduled_at=WEDNESDAY_10, actor=None, **kwargs):
        return book_class_with_credit(
            db,
            student_id=self.student.user_id,
            teacher_id=self.teacher_id,
            scheduled_at=scheduled_at,
            actor=actor or self.student,
            time_provider=self.clock,
            **kwargs,
        )

    def _remaining(self, db, credit_id):
        return db.get(CreditTransaction, credit_id).remaining

    def test_booking_spends_the_credit_and_links_the_teacher(self):
        db = self._session_factory()
        try:
            credit_id = self._grant(db)
            result = self._book(db, notes='Conversation practice')

            self.assertEqual(result['class']['status'], 'scheduled')
            self.assertEqual(result['class']['scheduled_at'], '2026-03-04T10:00:00')
            self.assertEqual(result['class']['credit_transaction_id'], credit_id)
            self.assertEqual(result['credit_used_id'], credit_id)
            self.assertEqual(result['credit_type'], 'bonus')
            self.assertEqual(self._remaining(db, credit_id), 0)

            usage = db.query(CreditTransaction).filter(CreditTransaction.action == 'used').one()
            self.assertEqual(usage.credit_id, credit_id)
            self.assertEqual(usage.class_id, result['class']['id'])
            self.assertEqual(db.get(ClassInstance, result['class']['id']).availability_slot_id, self.wednesday_slot_id)
            self.assertEqual(db.query(StudentTeacherLink).count(), 1)
        finally:
            db.close()

    def test_late_student_credit_is_used_when_no_bonus_exists(self):
        db = self._session_factory()
        try:
            self._grant(db, 'teacher-cancellation')
            late_id = self._grant(db, 'late-students')
            result = self._book(db, actor=self.admin)
            self.assertEqual(result['credit_used_id'], late_id)
            self.assertEqual(result['credit_type'], 'late-students')
        finally:
            db.close()

    def test_booking_respects_lead_time_and_horizon(self):
        db = self._session_factory()
        try:
            credit_id = self._grant(db)
            with self.assertRaises(ValidationError):
                self._book(db, datetime(2026, 3, 2, 10, 0))
            with self.assertRaises(ValidationError):
                self._book(db, datetime(2026, 4, 6, 10, 0))
            self.assertEqual(self._remaining(db, credit_id), 1)
            self.assertEqual(db.query(ClassInstance).count(), 0)
        finally:
            db.close()

    def test_booking_requires_an_open_slot(self):
        db = self._session_factory()
        try:
            credit_id = self._grant(db)
            with self.assertRaises(ConflictError):
                self._book(db, datetime(2026, 3, 4, 11, 0))
            with self.assertRaises(ConflictError):
                self._book(db, slot_id=self.monday_slot_id)
            self.assertEqual(self._remaining(db, credit_id), 1)
        finally:
            db.close()

    def test_booking_rejects_busy_or_vacationing_teacher(self):
        db = self._session_factory()
        try:
            credit_id = self._grant(db)
            db.add(
                ClassInstance(
                    student_id=self.other.user_id,
                    teacher_id=self.teacher_id,
                    scheduled_at=datetime(2026, 3, 4, 9, 30),
                    duration_minutes=50,
                    status='scheduled',
                )
            )
            db.add(Vacation(teacher_id=self.teacher_id, start_date=date(2026, 3, 9), end_date=date(2026, 3, 9)))
            db.commit()
            with self.assertRaises(ConflictError):
                self._book(db)
            with self.assertRaises(ConflictError):
                self._book(db, datetime(2026, 3, 9, 10, 0))
            self.assertEqual(self._remaining(db, credit_id), 1)
        finally:
            db.close()

    def test_booking_needs_a_bonus_or_late_student_credit(self):
        db = self._session_factory()
        try:
            makeup_id = self._grant(db, 'teacher-cancellation')
            with self.assertRaises(ConflictError):
                self._book(db)
            with self.assertRaises(ValidationError):
                self._book(db, credit_id=makeup_id)
            self.assertEqual(self._remaining(db, makeup_id), 1)
            self.assertEqual(db.query(ClassInstance).count(), 0)
        finally:
            db.close()

    def test_student_cannot_book_for_someone_else(self):
        db = self._session_factory()
        try:
            self._grant(db)
            with self.assertRaises(AuthorizationError):
                self._book(db, actor=self.other)
        finally:
            db.close()

    def test_credit_booked_class_cannot_be_rescheduled(self):
        db = self._session_factory()
        try:
            self._grant(db)
            booked = self._book(db)
            with self.assertRaises(ConflictError) as ctx:
                reschedule_class(
                    db, booked['class']['id'], datetime(2026, 3, 9, 10, 0), self.student, time_provider=self.clock
                )
            self.assertIn('cannot be rescheduled', str(ctx.exception))
            self.assertEqual(db.get(ClassInstance, booked['class']['id']).status, 'scheduled')
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
