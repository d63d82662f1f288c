import sys
from datetime import timedelta

import httpx
from alembic.config import Config
from alembic.script import ScriptDirectory
from alembic.runtime.migration import MigrationContext
from sqlalchemy import text

from backoffice.config import settings
from backoffice.core.time_provider import default_time_provider
from backoffice.db import SessionLocal, engine
from backoffice.models import ClassInstance, Contract, CreditTransaction
from backoffice.scheduler import scheduler, start_scheduler, stop_scheduler
from backoffice.services.auth_service import issue_session_token, validate_session_token
from backoffice.services.contract_service import add_months, contract_state


EXPECTED_SCHEDULER_JOBS = {
    'contract_auto_renewal',
    'class_reminders',
    'lifecycle_metrics_flush',
}

GREEN = '\033[32m'
RED = '\033[31m'
RESET = '\033[0m'


def run_check(name, fn):
    try:
        message = fn() or ''
        suffix = f' - {message}' if message else ''
        print(f'{GREEN}PASS{RESET} {name}{suffix}')
        return True
    except Exception as exc:
        print(f'{RED}FAIL{RESET} {name} - {exc}')
        return False


def check_db_connectivity_and_write():
    with engine.begin() as conn:
        conn.execute(text('SELECT 1'))
        conn.execute(text('CREATE TABLE IF NOT EXISTS _healthcheck_probe (id INTEGER PRIMARY KEY, note TEXT)'))
        conn.execute(text("INSERT INTO _healthcheck_probe (note) VALUES ('probe')"))
        conn.execute(text("DELETE FROM _healthcheck_probe WHERE note='probe'"))
        conn.execute(text('DROP TABLE IF EXISTS _healthcheck_probe'))
    return 'connect + write ok'


def check_alembic_head():
    cfg = Config('alembic.ini')
    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())
    if not heads:
        raise RuntimeError('No alembic heads found in repository')

    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()

    if current is None:
        raise RuntimeError('No migration version in DB (run alembic upgrade head)')
    if current not in heads:
        raise RuntimeError(f'DB revision {current} is not at head {sorted(heads)}')
    return f'current={current}'


def check_required_env():
    required = {
        'DATABASE_URL': settings.database_url,
        'AUTH_SECRET': '' if settings.auth_secret == 'change-me' else settings.auth_secret,
        'CRON_SECRET': settings.cron_secret,
    }
    missing = [key for key, value in required.items() if not str(value).strip()]
    if missing:
        raise RuntimeError(f'Missing env vars: {", ".join(missing)}')
    return 'all required vars present'


def check_notification_webhook():
    if not settings.notification_webhook_url:
        return 'webhook not configured, notifications are logged only'
    res = httpx.head(settings.notification_webhook_url, timeout=settings.notification_timeout_seconds)
    if res.status_code >= 500:
        raise RuntimeError(f'HTTP {res.status_code} from notification webhook')
    return f'webhook reachable status={res.status_code}'


def check_scheduler_jobs_registered():
    start_scheduler()
    try:
        registered = {job.id for job in scheduler.get_jobs()}
        missing = sorted(EXPECTED_SCHEDULER_JOBS - registered)
        if missing:
            raise RuntimeError(f'Missing jobs: {missing}')
        return f'jobs={sorted(registered)}'
    finally:
        stop_scheduler()


def check_lifecycle_tables_accessible():
    db = SessionLocal()
    try:
        classes = db.query(ClassInstance.id).count()
        credits = db.query(CreditTransaction.id).count()
        contracts = db.query(Contract.id).count()
        return f'classes={classes} credit_rows={credits} contracts={contracts}'
    finally:
        db.close()


def check_session_token_round_trip():
    token = issue_session_token(0, 'admin')
    session = validate_session_token(token)
    if session != {'user_id': 0, 'role': 'admin'}:
        raise RuntimeError(f'Unexpected session payload: {session}')
    if validate_session_token(f'{token}x') is not None:
        raise RuntimeError('Tampered token was accepted')
    return 'issue + verify ok'


def check_contract_validity_window():
    now = default_time_provider.local_naive_now()
    probe = Contract(
        signed=True,
        signed_at=now,
        signed_by_admin=True,
        expires_at=add_months(now, settings.contract_validity_months),
        auto_renewal=True,
    )
    fresh = contract_state(probe, now)
    if not fresh.is_valid or fresh.is_expired:
        raise RuntimeError('Freshly signed contract is not valid')
    late = contract_state(probe, probe.expires_at + timedelta(seconds=1))
    if not late.is_expired:
        raise RuntimeError('Contract past expiry is not reported as expired')
    return f'validity_months={settings.contract_validity_months}'


def main():
    checks = [
        ('DB connectivity + write', check_db_connectivity_and_write),
        ('Alembic at head', check_alembic_head),
        ('Required env vars', check_required_env),
        ('Notification webhook', check_notification_webhook),
        ('Scheduler jobs registered', check_scheduler_jobs_registered),
        ('Lifecycle tables accessible', check_lifecycle_tables_accessible),
        ('Session token round trip', check_session_token_round_trip),
        ('Contract validity window', check_contract_validity_window),
    ]

    results = [run_check(name, fn) for name, fn in checks]
    passed = sum(1 for ok in results if ok)
    total = len(results)
    print(f'\nSummary: {passed}/{total} checks passed')

    if passed != total:
        sys.exit(1)
    sys.exit(0)


if __name__ == '__main__':
    main()
