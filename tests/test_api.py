import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from fastapi.testclient import TestClient
from freezegun import freeze_time
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backoffice.config import settings
from backoffice.db import Base, get_db
from backoffice.main import app
from backoffice.models import (
    AuditEvent,
    ClassInstance,
    Contract,
    ContractLog,
    CreditTransaction,
    MonthlyRescheduleCount,
    ScheduleTemplateEntry,
    StudentTeacherLink,
    TeacherAvailabilitySlot,
    User,
    Vacation,
)
from backoffice.services.auth_service import issue_session_token


FROZEN_UTC = '2026-03-02 12:00:00'  # 09:00 in the app timezone


class ApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_api.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

        def override_get_db():
            db = cls._session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        cls._orig_cron_secret = settings.cron_secret
        settings.cron_secret = 'cron-test-secret'
        cls.client = TestClient(app)

    @classmethod
    def tearDownClass(cls):
        app.dependency_overrides.pop(get_db, None)
        settings.cron_secret = cls._orig_cron_secret
        cls.client.close()
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        db = self._session_factory()
        try:
            for model in (
                AuditEvent,
                MonthlyRescheduleCount,
                CreditTransaction,
                ClassInstance,
                ScheduleTemplateEntry,
                StudentTeacherLink,
                TeacherAvailabilitySlot,
                Vacation,
                Contract,
                ContractLog,
                User,
            ):
                db.query(model).delete()
            admin = User(name='Admin', email='admin@example.com', role='admin')
            teacher = User(name='Teacher', email='teacher@example.com', role='teacher')
            other_teacher = User(name='Other Teacher', email='other@example.com', role='teacher')
            student = User(name='Student', email='student@example.com', role='student')
            db.add_all([admin, teacher, other_teacher, student])
            db.commit()
            self.admin_id = admin.id
            self.teacher_id = teacher.id
            self.other_teacher_id = other_teacher.id
            self.student_id = student.id

            db.add(TeacherAvailabilitySlot(teacher_id=teacher.id, weekday=2, start_time='10:00'))
            instance = ClassInstance(
                student_id=student.id,
                teacher_id=teacher.id,
                scheduled_at=datetime(2026, 3, 5, 15, 0),
                status='scheduled',
            )
            db.add(instance)
            db.commit()
            self.class_id = instance.id
        finally:
            db.close()

    def _headers(self, user_id, role):
        return {'Authorization': f'Bearer {issue_session_token(user_id, role)}'}

    def _admin(self):
        return self._headers(self.admin_id, 'admin')

    def _teacher(self):
        return self._headers(self.teacher_id, 'teacher')

    def _student(self):
        return self._headers(self.student_id, 'student')

    def test_health_is_public(self):
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})

    @freeze_time(FROZEN_UTC)
    def test_missing_or_tampered_session_is_unauthorized(self):
        response = self.client.get(f'/classes/{self.class_id}')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {'error': 'Unauthorized'})

        token = issue_session_token(self.admin_id, 'admin')
        response = self.client.get(f'/classes/{self.class_id}', headers={'Authorization': f'Bearer {token}x'})
        self.assertEqual(response.status_code, 401)

        response = self.client.get(f'/classes/{self.class_id}', headers={'Cookie': f'auth_session={token}'})
        self.assertEqual(response.status_code, 200)

    @freeze_time(FROZEN_UTC)
    def test_errors_use_status_codes_and_error_body(self):
        missing = self.client.get('/classes/999999', headers=self._admin())
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json(), {'error': 'Class not found'})

        forbidden = self.client.put(
            f'/classes/{self.class_id}/teacher',
            json={'teacherId': self.other_teacher_id},
            headers=self._student(),
        )
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(forbidden.json(), {'error': 'Forbidden'})

        completed = self.client.put(
            f'/classes/{self.class_id}/status',
            json={'status': 'completed', 'feedback': 'Well done'},
            headers=self._teacher(),
        )
        self.assertEqual(completed.status_code, 200)
        self.assertEqual(completed.json()['class']['status'], 'completed')

        conflict = self.client.put(
            f'/classes/{self.class_id}/status',
            json={'status': 'no-show'},
            headers=self._admin(),
        )
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json(), {'error': 'Class is already completed'})

    @freeze_time(FROZEN_UTC)
    def test_assign_teacher_over_http(self):
        with self.assertLogs('backoffice.route_logging', level='INFO') as captured:
            response = self.client.put(
                f'/classes/{self.class_id}/teacher',
                json={'teacherId': self.other_teacher_id},
                headers=self._admin(),
            )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['class']['teacher_id'], self.other_teacher_id)
        self.assertIn('operation=PUT /classes/{class_id}/teacher status=200', captured.output[0])

    @freeze_time(FROZEN_UTC)
    def test_teacher_manages_own_availability(self):
        created = self.client.post(
            '/availability',
            json={'teacherId': self.teacher_id, 'weekday': 4, 'startTime': '14:00', 'endTime': '15:00'},
            headers=self._teacher(),
        )
        self.assertEqual(created.status_code, 200)
        slot_id = created.json()['slot']['id']

        listed = self.client.get(f'/admin/teacher-availability/{self.teacher_id}', headers=self._student())
        self.assertEqual(listed.status_code, 200)
        self.assertEqual(
            [(row['weekday'], row['start_time']) for row in listed.json()['slots']],
            [(2, '10:00'), (4, '14:00')],
        )

        foreign = self.client.post(
            '/availability',
            json={'teacherId': self.other_teacher_id, 'weekday': 1, 'startTime': '09:00'},
            headers=self._teacher(),
        )
        self.assertEqual(foreign.status_code, 403)
        bad_time = self.client.post(
            '/availability',
            json={'teacherId': self.teacher_id, 'weekday': 1, 'startTime': '9am'},
            headers=self._teacher(),
        )
        self.assertEqual(bad_time.status_code, 400)

        deleted = self.client.delete(f'/availability/{slot_id}', headers=self._teacher())
        self.assertEqual(deleted.json(), {'success': True})
        missing = self.client.delete(f'/availability/{slot_id}', headers=self._teacher())
        self.assertEqual(missing.status_code, 404)

    @freeze_time(FROZEN_UTC)
    def test_request_body_errors_are_bad_requests(self):
        response = self.client.post(
            '/admin/credits/grant',
            json={'studentId': self.student_id, 'type': 'bonus'},
            headers=self._admin(),
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn('error', response.json())

    @freeze_time(FROZEN_UTC)
    def test_credit_grant_balance_and_history(self):
        past = self.client.post(
            '/admin/credits/grant',
            json={
                'studentId': self.student_id,
                'type': 'bonus',
                'amount': 3,
                'expiresAt': '2026-02-01T00:00:00-03:00',
            },
            headers=self._admin(),
        )
        self.assertEqual(past.status_code, 400)
        self.assertEqual(past.json(), {'error': 'expiresAt must be in the future'})

        granted = self.client.post(
            '/admin/credits/grant',
            json={
                'studentId': self.student_id,
                'type': 'bonus',
                'amount': 3,
                'expiresAt': '2026-04-01T00:00:00-03:00',
                'reason': 'Referral',
            },
            headers=self._admin(),
        )
        self.assertEqual(granted.status_code, 200)
        self.assertTrue(granted.json()['success'])

        teacher_grant = self.client.post(
            '/admin/credits/grant',
            json={'studentId': self.student_id, 'type': 'bonus', 'amount': 1, 'expiresAt': '2026-04-01T00:00:00'},
            headers=self._teacher(),
        )
        self.assertEqual(teacher_grant.status_code, 403)

        balance = self.client.get(f'/admin/credits/balance/{self.student_id}', headers=self._student())
        self.assertEqual(balance.status_code, 200)
        self.assertEqual(balance.json()['bonus_credits'], 3)
        self.assertEqual(balance.json()['total_credits'], 3)

        history = self.client.get(f'/admin/credits/history/{self.student_id}', headers=self._admin())
        self.assertEqual(len(history.json()['items']), 1)

    @freeze_time(FROZEN_UTC)
    def test_reschedule_options_and_reschedule(self):
        options = self.client.get(f'/classes/{self.class_id}/reschedule-options', headers=self._student())
        self.assertEqual(options.status_code, 200)
        offered = [row['scheduled_at'] for row in options.json()['candidates']]
        self.assertEqual(offered[0], '2026-03-04T10:00:00')

        moved = self.client.post(
            f'/classes/{self.class_id}/reschedule',
            json={'scheduledAt': '2026-03-04T10:00:00', 'reason': 'Dentist'},
            headers=self._student(),
        )
        self.assertEqual(moved.status_code, 200)
        body = moved.json()
        self.assertEqual(body['original']['status'], 'rescheduled')
        self.assertEqual(body['rescheduled']['scheduled_at'], '2026-03-04T10:00:00')
        self.assertEqual(body['monthly_count'], 1)

        lineage = self.client.get(f"/classes/{body['rescheduled']['id']}/lineage", headers=self._student())
        self.assertEqual([row['id'] for row in lineage.json()['items']], [body['rescheduled']['id'], self.class_id])

    @freeze_time(FROZEN_UTC)
    def test_reschedule_options_empty_while_teacher_is_away(self):
        db = self._session_factory()
        try:
            db.add(
                Vacation(
                    teacher_id=self.teacher_id,
                    start_date=datetime(2026, 3, 1).date(),
                    end_date=datetime(2026, 4, 5).date(),
                )
            )
            db.commit()
        finally:
            db.close()
        response = self.client.get(f'/classes/{self.class_id}/reschedule-options', headers=self._student())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['candidates'], [])
        self.assertEqual(response.json()['message'], 'no slots available')

    @freeze_time(FROZEN_UTC)
    def test_contract_sign_flow_over_http(self):
        signed = self.client.post(
            f'/contract/sign/{self.student_id}',
            json={
                'name': 'Student Name',
                'taxId': '123.456.789-01',
                'birthDate': '1994-05-04',
                'address': 'Rua das Flores, 10',
                'agreedToTerms': True,
            },
            headers={**self._student(), 'User-Agent': 'pytest-browser'},
        )
        self.assertEqual(signed.status_code, 200)
        self.assertEqual(signed.json()['contract']['state'], 'student_signed')

        countersigned = self.client.post(
            f'/contract/admin-sign/{self.student_id}', json={'name': 'Office'}, headers=self._admin()
        )
        self.assertEqual(countersigned.status_code, 200)
        self.assertTrue(countersigned.json()['contract']['is_valid'])

        eligibility = self.client.get(f'/contract/cancel/{self.student_id}', headers=self._student())
        self.assertEqual(eligibility.json(), {'user_id': self.student_id, 'can_cancel': False})

        no_reason = self.client.post(f'/contract/cancel/{self.student_id}', json={}, headers=self._admin())
        self.assertEqual(no_reason.status_code, 400)

        posing_as_admin = self.client.post(
            f'/contract/cancel/{self.student_id}',
            json={'reason': 'Moving', 'isAdminCancellation': True},
            headers=self._student(),
        )
        self.assertEqual(posing_as_admin.status_code, 403)

        db = self._session_factory()
        try:
            log = db.query(ContractLog).filter(ContractLog.user_id == self.student_id).one()
            self.assertEqual(log.browser, 'pytest-browser')
            contract_id = db.query(Contract.id).filter(Contract.user_id == self.student_id).scalar()
        finally:
            db.close()

        trail = self.client.get(f'/admin/audit/contract/{contract_id}', headers=self._admin())
        self.assertEqual(trail.status_code, 200)
        self.assertEqual([row['action'] for row in trail.json()['items']], ['contract.signed', 'contract.admin_signed'])
        hidden = self.client.get(f'/admin/audit/contract/{contract_id}', headers=self._student())
        self.assertEqual(hidden.status_code, 403)

    @freeze_time(FROZEN_UTC)
    def test_book_class_with_bonus_credit_over_http(self):
        db = self._session_factory()
        try:
            credit = CreditTransaction(
                student_id=self.student_id,
                type='bonus',
                action='granted',
                amount=1,
                remaining=1,
                expires_at=datetime(2026, 4, 1, 0, 0),
            )
            db.add(credit)
            db.commit()
            credit_id = credit.id
        finally:
            db.close()

        booked = self.client.post(
            '/classes/book-with-credit',
            json={'studentId': self.student_id, 'teacherId': self.teacher_id, 'scheduledAt': '2026-03-04T10:00:00'},
            headers=self._student(),
        )
        self.assertEqual(booked.status_code, 200)
        body = booked.json()
        self.assertEqual(body['class']['scheduled_at'], '2026-03-04T10:00:00')
        self.assertEqual(body['credit_used_id'], credit_id)

        again = self.client.post(
            '/classes/book-with-credit',
            json={'studentId': self.student_id, 'teacherId': self.teacher_id, 'scheduledAt': '2026-03-11T10:00:00'},
            headers=self._student(),
        )
        self.assertEqual(again.status_code, 409)

        moved = self.client.post(
            f"/classes/{body['class']['id']}/reschedule",
            json={'scheduledAt': '2026-03-11T10:00:00'},
            headers=self._student(),
        )
        self.assertEqual(moved.status_code, 409)

    @freeze_time(FROZEN_UTC)
    def test_auto_renewal_job_requires_cron_secret(self):
        denied = self.client.post('/contract/auto-renewal/process')
        self.assertEqual(denied.status_code, 401)
        wrong = self.client.post(
            '/contract/auto-renewal/process', headers={'Authorization': 'Bearer not-the-secret'}
        )
        self.assertEqual(wrong.status_code, 401)

        db = self._session_factory()
        try:
            db.add(
                Contract(
                    user_id=self.student_id,
                    signed=True,
                    signed_by_admin=True,
                    expires_at=datetime(2026, 3, 6, 9, 0),
                    auto_renewal=True,
                )
            )
            db.commit()
        finally:
            db.close()

        allowed = self.client.post(
            '/contract/auto-renewal/process', headers={'Authorization': 'Bearer cron-test-secret'}
        )
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()['renewed'], [self.student_id])

    @freeze_time(FROZEN_UTC)
    def test_template_generation_and_vacation_over_http(self):
        db = self._session_factory()
        try:
            db.add(
                Contract(
                    user_id=self.student_id,
                    signed=True,
                    signed_by_admin=True,
                    expires_at=datetime(2026, 9, 1, 9, 0),
                )
            )
            db.commit()
        finally:
            db.close()

        saved = self.client.put(
            f'/class-templates/{self.student_id}',
            json={'days': [{'weekday': 0, 'startTime': '18:00', 'teacherId': self.teacher_id}]},
            headers=self._admin(),
        )
        self.assertEqual(saved.status_code, 200)
        self.assertEqual(saved.json()['days'][0]['start_time'], '18:00')

        generated = self.client.post(
            '/classes/generate-classes',
            json={'studentId': self.student_id, 'fromDate': '2026-04-01', 'toDate': '2026-04-30'},
            headers=self._admin(),
        )
        self.assertEqual(generated.status_code, 200)
        self.assertEqual(generated.json()['created'], 4)

        vacation = self.client.post(
            '/vacations',
            json={'startDate': '2026-04-13', 'endDate': '2026-04-17', 'reason': 'Trip'},
            headers=self._teacher(),
        )
        self.assertEqual(vacation.status_code, 200)
        self.assertEqual(vacation.json()['vacation']['classes_affected'], 1)
        vacation_id = vacation.json()['vacation']['id']

        listed = self.client.get('/vacations', params={'teacherId': self.teacher_id}, headers=self._admin())
        self.assertEqual([row['id'] for row in listed.json()['items']], [vacation_id])

        removed = self.client.delete('/vacations', params={'id': vacation_id}, headers=self._teacher())
        self.assertEqual(removed.status_code, 200)
        self.assertEqual(removed.json()['classes_restored'], 1)


if __name__ == '__main__':
    unittest.main()
