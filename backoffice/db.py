import logging
import time

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from backoffice.config import settings
from backoffice.request_context import current_operation


_is_sqlite = settings.database_url.startswith('sqlite')
engine = create_engine(
    settings.database_url,
    connect_args={'check_same_thread': False} if _is_sqlite else {},
    pool_pre_ping=not _is_sqlite,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

_slow_logger = logging.getLogger('backoffice.db.slow_query')
_MAX_LOGGED_SQL = 500


# Registered on the Engine class, so every engine is timed.
@event.listens_for(Engine, 'before_cursor_execute')
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    context._query_start_time = time.perf_counter()


@event.listens_for(Engine, 'after_cursor_execute')
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    start = getattr(context, '_query_start_time', None)
    if start is None:
        return
    duration_ms = (time.perf_counter() - start) * 1000.0
    if duration_ms >= settings.db_slow_query_ms:
        sql_text = ' '.join((statement or '').split())
        _slow_logger.warning(
            'slow_query duration_ms=%.2f operation=%s sql=%s',
            duration_ms,
            current_operation.get(),
            sql_text[:_MAX_LOGGED_SQL],
        )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
