from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from backoffice.config import settings


APP_TIMEZONE = settings.app_timezone or 'America/Sao_Paulo'
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def today(self) -> date:
        return self.now().date()

    def local_naive_now(self) -> datetime:
        """Wall-clock time in the app zone, in the naive form stored by the database."""
        return to_local_naive(self.now())


def to_local_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt
    return dt.astimezone(APP_ZONEINFO).replace(tzinfo=None)


default_time_provider = TimeProvider()
