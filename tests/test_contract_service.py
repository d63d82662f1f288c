import tempfile
import unittest
from datetime import date, datetime, timedelta
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backoffice.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from backoffice.core.permissions import Actor
from backoffice.core.time_provider import APP_ZONEINFO, TimeProvider
from backoffice.db import Base
from backoffice.models import AuditEvent, Contract, ContractLog, User
from backoffice.services.audit_service import list_events
from backoffice.services.contract_service import (
    ContractState,
    add_months,
    admin_sign_contract,
    cancel_contract,
    contract_state,
    get_contract,
    has_active_contract,
    process_contract_renewals,
    renew_contract,
    set_auto_renewal,
    sign_contract,
)


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=APP_ZONEINFO)
LOCAL_NOW = NOW.replace(tzinfo=None)

SIGNATURE = {
    'name': 'Ana Souza',
    'tax_id': '123.456.789-01',
    'birth_date': date(1994, 5, 4),
    'address': 'Rua das Flores, 10',
    'city': 'Campinas',
    'state': 'SP',
    'zip_code': '13010-000',
    'agreed_to_terms': True,
    'ip': '10.0.0.8',
    'browser': 'Firefox',
}


def _transient(**overrides):
    values = {
        'signed': True,
        'signed_by_admin': True,
        'cancelled_at': None,
        'expires_at': LOCAL_NOW + timedelta(days=120),
    }
    values.update(overrides)
    return Contract(user_id=1, **values)


class ContractStateTests(unittest.TestCase):
    def test_contract_expiring_in_five_days_is_near_expiration(self):
        flags = contract_state(_transient(expires_at=LOCAL_NOW + timedelta(days=5)), LOCAL_NOW)
        self.assertTrue(flags.is_near_expiration)
        self.assertFalse(flags.is_expired)
        self.assertTrue(flags.is_valid)
        self.assertEqual(flags.days_until_expiration, 5)
        self.assertEqual(flags.state, ContractState.EXPIRING_SOON)

    def test_validity_requires_both_signatures_no_cancellation_and_future_expiry(self):
        self.assertTrue(contract_state(_transient(), LOCAL_NOW).is_valid)
        self.assertEqual(contract_state(_transient(), LOCAL_NOW).state, ContractState.VALID)

        student_only = contract_state(_transient(signed_by_admin=False), LOCAL_NOW)
        self.assertFalse(student_only.is_valid)
        self.assertEqual(student_only.state, ContractState.STUDENT_SIGNED)

        cancelled = contract_state(_transient(cancelled_at=LOCAL_NOW - timedelta(days=1)), LOCAL_NOW)
        self.assertFalse(cancelled.is_valid)
        self.assertEqual(cancelled.state, ContractState.CANCELLED)

        expired = contract_state(_transient(expires_at=LOCAL_NOW - timedelta(minutes=1)), LOCAL_NOW)
        self.assertFalse(expired.is_valid)
        self.assertTrue(expired.is_expired)
        self.assertFalse(expired.is_near_expiration)
        self.assertEqual(expired.state, ContractState.EXPIRED)

        self.assertFalse(contract_state(_transient(expires_at=None), LOCAL_NOW).is_valid)
        self.assertEqual(contract_state(_transient(signed=False), LOCAL_NOW).state, ContractState.PENDING)
        self.assertEqual(contract_state(None, LOCAL_NOW).state, ContractState.PENDING)

    def test_add_months_clamps_to_month_end(self):
        self.assertEqual(add_months(datetime(2026, 1, 31, 8, 0), 1), datetime(2026, 2, 28, 8, 0))
        self.assertEqual(add_months(datetime(2026, 8, 31), 6), datetime(2027, 2, 28))
        self.assertEqual(add_months(datetime(2026, 3, 2, 9, 0), 6), datetime(2026, 9, 2, 9, 0))


class ContractServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_contract_service.db'
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
            for model in (AuditEvent, Contract, ContractLog, User):
                db.query(model).delete()
            admin = User(name='Admin', email='admin@example.com', role='admin')
            student = User(name='Ana', email='ana@example.com', role='student')
            second = User(name='Bruno', email='bruno@example.com', role='student')
            third = User(name='Carla', email='carla@example.com', role='student')
            db.add_all([admin, student, second, third])
            db.commit()
            self.admin = Actor(user_id=admin.id, role='admin')
            self.student = Actor(user_id=student.id, role='student')
            self.second = Actor(user_id=second.id, role='student')
            self.third = Actor(user_id=third.id, role='student')
        finally:
            db.close()

    def _store(self, db, user_id, *, days_left, signed_by_admin=True, auto_renewal=True):
        contract = Contract(
            user_id=user_id,
            signed=True,
            signed_at=LOCAL_NOW - timedelta(days=170),
            signed_by_admin=signed_by_admin,
            admin_signed_at=LOCAL_NOW - timedelta(days=169) if signed_by_admin else None,
            expires_at=LOCAL_NOW + timedelta(days=days_left),
            auto_renewal=auto_renewal,
        )
        db.add(contract)
        db.commit()
        return contract

    def test_user_without_contract_reports_pending(self):
        db = self._session_factory()
        try:
            payload = get_contract(db, self.student.user_id, self.student, time_provider=self.clock)
            self.assertEqual(payload['state'], ContractState.PENDING)
            self.assertFalse(payload['is_valid'])
            self.assertFalse(payload['can_cancel'])
            with self.assertRaises(AuthorizationError):
                get_contract(db, self.student.user_id, self.second, time_provider=self.clock)
            with self.assertRaises(NotFoundError):
                get_contract(db, 999999, self.admin, time_provider=self.clock)
        finally:
            db.close()

    def test_sign_then_countersign_makes_contract_valid(self):
        db = self._session_factory()
        try:
            signed = sign_contract(db, self.student.user_id, dict(SIGNATURE), self.student, time_provider=self.clock)
            self.assertEqual(signed['state'], ContractState.STUDENT_SIGNED)
            self.assertFalse(signed['is_valid'])
            self.assertEqual(signed['expires_at'], '2026-09-02T09:00:00')
            self.assertTrue(signed['auto_renewal'])
            self.assertEqual(signed['log']['tax_id'], '12345678901')
            self.assertFalse(has_active_contract(db, self.student.user_id, time_provider=self.clock))

            countersigned = admin_sign_contract(
                db, self.student.user_id, {'name': 'Office'}, self.admin, time_provider=self.clock
            )
            self.assertEqual(countersigned['state'], ContractState.VALID)
            self.assertTrue(countersigned['is_valid'])
            self.assertEqual(countersigned['log']['admin_name'], 'Office')
            self.assertTrue(has_active_contract(db, self.student.user_id, time_provider=self.clock))

            with self.assertRaises(ConflictError):
                admin_sign_contract(db, self.student.user_id, {}, self.admin, time_provider=self.clock)
            with self.assertRaises(ConflictError):
                sign_contract(db, self.student.user_id, dict(SIGNATURE), self.student, time_provider=self.clock)
        finally:
            db.close()

    def test_signature_is_validated_and_personal(self):
        db = self._session_factory()
        try:
            with self.assertRaises(ValidationError):
                sign_contract(
                    db, self.student.user_id, dict(SIGNATURE, tax_id='123'), self.student, time_provider=self.clock
                )
            with self.assertRaises(ValidationError):
                sign_contract(
                    db,
                    self.student.user_id,
                    dict(SIGNATURE, agreed_to_terms=False),
                    self.student,
                    time_provider=self.clock,
                )
            with self.assertRaises(ValidationError):
                sign_contract(
                    db,
                    self.student.user_id,
                    dict(SIGNATURE, birth_date=date(2027, 1, 1)),
                    self.student,
                    time_provider=self.clock,
                )
            with self.assertRaises(AuthorizationError):
                sign_contract(db, self.student.user_id, dict(SIGNATURE), self.admin, time_provider=self.clock)
            with self.assertRaises(NotFoundError):
                admin_sign_contract(db, self.student.user_id, {}, self.admin, time_provider=self.clock)
            self.assertEqual(db.query(ContractLog).count(), 0)
        finally:
            db.close()

    def test_cancellation_rules(self):
        db = self._session_factory()
        try:
            self._store(db, self.student.user_id, days_left=120)
            with self.assertRaises(ValidationError):
                cancel_contract(db, self.student.user_id, self.student, reason='  ', time_provider=self.clock)
            with self.assertRaises(ConflictError):
                cancel_contract(db, self.student.user_id, self.student, reason='Moving', time_provider=self.clock)

            payload = cancel_contract(
                db, self.student.user_id, self.admin, reason='Payment issue', time_provider=self.clock
            )
            self.assertEqual(payload['state'], ContractState.CANCELLED)
            self.assertFalse(payload['auto_renewal'])
            self.assertEqual(payload['cancelled_by'], self.admin.user_id)
            self.assertEqual(payload['cancellation_reason'], 'Payment issue')

            with self.assertRaises(ConflictError):
                cancel_contract(db, self.student.user_id, self.admin, reason='Again', time_provider=self.clock)
        finally:
            db.close()

    def test_student_may_cancel_inside_expiring_window(self):
        db = self._session_factory()
        try:
            self._store(db, self.student.user_id, days_left=10)
            payload = get_contract(db, self.student.user_id, self.student, time_provider=self.clock)
            self.assertTrue(payload['can_cancel'])
            cancelled = cancel_contract(
                db, self.student.user_id, self.student, reason='Moving abroad', time_provider=self.clock
            )
            self.assertEqual(cancelled['state'], ContractState.CANCELLED)
        finally:
            db.close()

    def test_renewing_cancelled_contract_restarts_from_now_and_keeps_log(self):
        db = self._session_factory()
        try:
            sign_contract(db, self.student.user_id, dict(SIGNATURE), self.student, time_provider=self.clock)
            admin_sign_contract(db, self.student.user_id, {}, self.admin, time_provider=self.clock)
            original = get_contract(db, self.student.user_id, self.admin, time_provider=self.clock)
            cancel_contract(db, self.student.user_id, self.admin, reason='Paused', time_provider=self.clock)

            later = FixedTimeProvider(NOW + timedelta(days=3))
            renewed = renew_contract(db, self.student.user_id, self.admin, time_provider=later)
            self.assertEqual(renewed['state'], ContractState.VALID)
            self.assertEqual(renewed['expires_at'], '2026-09-05T09:00:00')
            self.assertEqual(renewed['renewal_count'], 1)
            self.assertEqual(renewed['log_id'], original['log_id'])
            self.assertIsNone(renewed['cancelled_at'])

            contract = db.query(Contract).filter(Contract.user_id == self.student.user_id).one()
            actions = [row['action'] for row in list_events(db, entity_type='contract', entity_id=contract.id)]
            self.assertEqual(
                actions,
                ['contract.signed', 'contract.admin_signed', 'contract.cancelled', 'contract.renewed'],
            )
        finally:
            db.close()

    def test_renewing_active_contract_extends_current_expiry(self):
        db = self._session_factory()
        try:
            contract = self._store(db, self.student.user_id, days_left=5)
            previous = contract.expires_at
            renewed = renew_contract(db, self.student.user_id, self.student, time_provider=self.clock)
            self.assertEqual(renewed['expires_at'], add_months(previous, 6).isoformat())

            self._store(db, self.second.user_id, days_left=100, signed_by_admin=False)
            with self.assertRaises(ConflictError):
                renew_contract(db, self.second.user_id, self.admin, time_provider=self.clock)
        finally:
            db.close()

    def test_auto_renewal_processes_only_contracts_inside_window(self):
        db = self._session_factory()
        try:
            self._store(db, self.student.user_id, days_left=5)
            self._store(db, self.second.user_id, days_left=20)
            self._store(db, self.third.user_id, days_left=3, auto_renewal=False)

            result = process_contract_renewals(db, time_provider=self.clock)
            self.assertEqual(result['checked'], 2)
            self.assertEqual(result['renewed'], [self.student.user_id])
            self.assertEqual(result['failed'], [])

            contracts = {row.user_id: row for row in db.query(Contract).all()}
            self.assertEqual(contracts[self.student.user_id].renewal_count, 1)
            self.assertEqual(contracts[self.second.user_id].renewal_count, 0)
            self.assertEqual(contracts[self.third.user_id].renewal_count, 0)

            again = process_contract_renewals(db, time_provider=self.clock)
            self.assertEqual(again['renewed'], [])
        finally:
            db.close()

    def test_overlapping_renewal_runs_renew_once(self):
        db = self._session_factory()
        stale = self._session_factory()
        try:
            self._store(db, self.student.user_id, days_left=5)
            stale.query(Contract).all()

            first = process_contract_renewals(db, time_provider=self.clock)
            self.assertEqual(first['renewed'], [self.student.user_id])

            second = process_contract_renewals(stale, time_provider=self.clock)
            self.assertEqual(second['renewed'], [])
            self.assertEqual(second['failed'], [])

            db.expire_all()
            contract = db.query(Contract).filter(Contract.user_id == self.student.user_id).one()
            self.assertEqual(contract.renewal_count, 1)
            renewals = [
                event for event in list_events(db, entity_type='contract', entity_id=contract.id)
                if event['action'] == 'contract.renewed'
            ]
            self.assertEqual(len(renewals), 1)
        finally:
            stale.close()
            db.close()

    def test_renewal_type_sets_auto_renewal_flag(self):
        db = self._session_factory()
        try:
            self._store(db, self.student.user_id, days_left=5, auto_renewal=True)
            manual = renew_contract(db, self.student.user_id, self.student, time_provider=self.clock)
            self.assertFalse(manual['auto_renewal'])
            self.assertEqual(manual['renewal_count'], 1)

            self._store(db, self.second.user_id, days_left=5, auto_renewal=False)
            automatic = renew_contract(
                db, self.second.user_id, self.admin, renewal_type='automatic', time_provider=self.clock
            )
            self.assertTrue(automatic['auto_renewal'])
        finally:
            db.close()

    def test_admin_cancellation_flag_follows_role(self):
        db = self._session_factory()
        try:
            self._store(db, self.student.user_id, days_left=120)
            with self.assertRaises(AuthorizationError):
                cancel_contract(
                    db,
                    self.student.user_id,
                    self.student,
                    reason='Moving',
                    is_admin_cancellation=True,
                    time_provider=self.clock,
                )
            with self.assertRaises(ConflictError):
                cancel_contract(
                    db,
                    self.student.user_id,
                    self.admin,
                    reason='On behalf of student',
                    is_admin_cancellation=False,
                    time_provider=self.clock,
                )
            payload = cancel_contract(
                db,
                self.student.user_id,
                self.admin,
                reason='Payment issue',
                is_admin_cancellation=True,
                time_provider=self.clock,
            )
            self.assertEqual(payload['state'], ContractState.CANCELLED)
        finally:
            db.close()

    def test_toggle_auto_renewal(self):
        db = self._session_factory()
        try:
            self._store(db, self.student.user_id, days_left=60)
            payload = set_auto_renewal(db, self.student.user_id, False, self.student, time_provider=self.clock)
            self.assertFalse(payload['auto_renewal'])
            with self.assertRaises(AuthorizationError):
                set_auto_renewal(db, self.student.user_id, True, self.second, time_provider=self.clock)

            cancel_contract(db, self.student.user_id, self.admin, reason='Closed', time_provider=self.clock)
            with self.assertRaises(ConflictError):
                set_auto_renewal(db, self.student.user_id, True, self.student, time_provider=self.clock)
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
