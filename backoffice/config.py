from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Lesson Back Office'
    app_env: str = 'local'
    app_timezone: str = 'America/Sao_Paulo'
    database_url: str = 'sqlite:///./backoffice.db'
    auth_secret: str = 'change-me'
    auth_session_expiry_hours: int = 12
    cron_secret: str = ''
    notification_webhook_url: str = ''
    notification_timeout_seconds: float = 5.0
    enable_notifications: bool = True
    enable_scheduler: bool = True
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200

    class_duration_minutes: int = 50
    class_reminder_window_minutes: int = 30
    reschedule_lookahead_weeks: int = 4
    reschedule_lead_time_hours: int = 24
    booking_horizon_days: int = 30
    monthly_reschedule_limit: int = 2
    cancellation_policy_hours: int = 24
    makeup_credit_validity_days: int = 45

    contract_validity_months: int = 6
    contract_expiring_soon_days: int = 30
    contract_auto_renew_window_days: int = 7
    contract_auto_renewal_time: str = '03:00'
    contract_auto_admin_sign: bool = False
    contract_version: str = '1.0'

    vacation_min_notice_days: int = 40
    vacation_max_days: int = 14
    vacation_default_days: int = 30


settings = Settings()
