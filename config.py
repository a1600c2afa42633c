import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_secs: int,
        gemini_api_key: str,
        gemini_receipt_model: str,
        gemini_insight_model: str,
        gemini_timeout_secs: float,
        smtp_host: str,
        smtp_port: int,
        smtp_username: str,
        smtp_password: str,
        mail_from: str,
        rate_limit_capacity: int,
        rate_limit_refill_per_hour: int,
        blocked_clients: frozenset[str],
        recurring_cron: str,
        report_cron: str,
        budget_alert_hours: int,
        recurring_user_concurrency: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_receipt_model = gemini_receipt_model
        self.gemini_insight_model = gemini_insight_model
        self.gemini_timeout_secs = gemini_timeout_secs
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.mail_from = mail_from
        self.rate_limit_capacity = rate_limit_capacity
        self.rate_limit_refill_per_hour = rate_limit_refill_per_hour
        self.blocked_clients = blocked_clients
        self.recurring_cron = recurring_cron
        self.report_cron = report_cron
        self.budget_alert_hours = budget_alert_hours
        self.recurring_user_concurrency = recurring_user_concurrency


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_csv(raw: str) -> frozenset[str]:
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    return Settings(
        database_url=os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("LEDGER_TIMEZONE", "UTC"),
        session_secret=os.getenv(
            "LEDGER_SESSION_SECRET",
            "3f0c2d7b9a51e84c6d21f0a9b7e3c5d8a4f61b2e9c07d3a85f14e6b2c9d0a7e1",
        ),
        session_max_age_secs=int(os.getenv("LEDGER_SESSION_MAX_AGE_SECS", "86400")),
        gemini_api_key=os.getenv("LEDGER_GEMINI_API_KEY", ""),
        gemini_receipt_model=os.getenv(
            "LEDGER_GEMINI_RECEIPT_MODEL", "gemini-2.5-flash"
        ),
        gemini_insight_model=os.getenv(
            "LEDGER_GEMINI_INSIGHT_MODEL", "gemini-1.5-pro"
        ),
        gemini_timeout_secs=float(os.getenv("LEDGER_GEMINI_TIMEOUT_SECS", "20")),
        smtp_host=os.getenv("LEDGER_SMTP_HOST", ""),
        smtp_port=int(os.getenv("LEDGER_SMTP_PORT", "587")),
        smtp_username=os.getenv("LEDGER_SMTP_USERNAME", ""),
        smtp_password=os.getenv("LEDGER_SMTP_PASSWORD", ""),
        mail_from=os.getenv("LEDGER_MAIL_FROM", "Ledger <reports@ledger.local>"),
        rate_limit_capacity=int(os.getenv("LEDGER_RATE_LIMIT_CAPACITY", "10")),
        rate_limit_refill_per_hour=int(
            os.getenv("LEDGER_RATE_LIMIT_REFILL_PER_HOUR", "10")
        ),
        blocked_clients=_split_csv(os.getenv("LEDGER_BLOCKED_CLIENTS", "")),
        recurring_cron=os.getenv("LEDGER_RECURRING_CRON", "0 0 * * *"),
        report_cron=os.getenv("LEDGER_REPORT_CRON", "0 0 1 * *"),
        budget_alert_hours=int(os.getenv("LEDGER_BUDGET_ALERT_HOURS", "6")),
        recurring_user_concurrency=int(
            os.getenv("LEDGER_RECURRING_USER_CONCURRENCY", "10")
        ),
    )
