import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.db import SessionLocal
from backoffice.metrics import flush_lifecycle_metrics, run_timed_job
from backoffice.request_context import operation_scope
from backoffice.services.class_service import send_class_reminders
from backoffice.services.contract_service import process_contract_renewals


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)


def _with_db(task):
    db: Session = SessionLocal()
    try:
        return task(db)
    finally:
        db.close()


def _run_job(label: str, task) -> object:
    with operation_scope(f'job:{label}'):
        return run_timed_job(label, lambda: _with_db(task))


def _parse_hhmm(value: str) -> tuple[int, int]:
    hour, minute = value.split(':', 1)
    return int(hour), int(minute)


def contract_auto_renewal_job():
    return _run_job('contract_auto_renewal', lambda db: process_contract_renewals(db))


def class_reminders_job():
    return _run_job('class_reminders', lambda db: send_class_reminders(db))


def lifecycle_metrics_flush_job():
    flush_lifecycle_metrics()


def start_scheduler():
    renewal_hour, renewal_minute = _parse_hhmm(settings.contract_auto_renewal_time)
    scheduler.add_job(
        contract_auto_renewal_job,
        'cron',
        hour=renewal_hour,
        minute=renewal_minute,
        id='contract_auto_renewal',
        replace_existing=True,
    )
    scheduler.add_job(class_reminders_job, 'interval', minutes=5, id='class_reminders', replace_existing=True)
    scheduler.add_job(lifecycle_metrics_flush_job, 'interval', minutes=1, id='lifecycle_metrics_flush', replace_existing=True)

    if not scheduler.running:
        scheduler.start()
        logger.info('scheduler_started jobs=%s', [job.id for job in scheduler.get_jobs()])


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
