"""
Application configuration.

Read from the environment at call time so tests can monkeypatch variables.
"""
import os
from dataclasses import dataclass
from datetime import timedelta, timezone


# Business dates (due dates, "today" for payment notices) are Japan time.
JST = timezone(timedelta(hours=9), name="JST")


@dataclass
class AppConfig:
    db_path: str
    secret_key: str
    cron_secret: str
    base_url: str
    upload_dir: str
    resend_api_key: str
    mail_from: str
    admin_notify_email: str


def get_app_config() -> AppConfig:
    """Build the app config from environment variables."""
    return AppConfig(
        db_path=os.getenv("EXPENSYNC_DB_PATH", "expensync.db"),
        secret_key=os.getenv("EXPENSYNC_SECRET_KEY", "dev-secret-change-me"),
        cron_secret=os.getenv("CRON_SECRET", ""),
        base_url=os.getenv("APP_BASE_URL", "http://localhost:8000"),
        upload_dir=os.getenv("UPLOAD_DIR", os.path.abspath("uploads")),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        mail_from=os.getenv("MAIL_FROM", "Expensync <onboarding@resend.dev>"),
        admin_notify_email=os.getenv("ADMIN_NOTIFY_EMAIL", ""),
    )
