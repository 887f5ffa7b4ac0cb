import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


@dataclass
class Settings:
    """Runtime configuration for the orchestrator.

    The time windows used by the scanners and the no-show policy are plain
    policy constants; they are exposed here so deployments can tune them
    without code changes.
    """

    # Task queue
    redis_url: Optional[str] = None
    worker_count: int = 4
    poll_interval_seconds: float = 1.0
    task_max_attempts: int = 3
    task_backoff_seconds: float = 1.0
    task_backoff_max_seconds: float = 3600.0
    visibility_timeout_seconds: int = 300

    # Pipeline policy
    follow_up_delay_days: float = 2.0
    stale_after_days: float = 2.0
    max_follow_ups: int = 3
    no_show_min_minutes: int = 15
    no_show_max_minutes: int = 120
    no_show_scan_interval_minutes: int = 15
    stale_scan_hour_utc: int = 9
    no_show_penalty: int = 10
    high_value_score: int = 70
    low_value_score: int = 50
    max_handoff_depth: int = 5

    # Collaborators
    collaborator_timeout_seconds: float = 20.0
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    sendgrid_api_key: Optional[str] = None
    email_from: str = "noreply@example.com"
    email_from_name: str = "Sales Team"
    slack_bot_token: Optional[str] = None
    slack_default_channel: str = "#sales-leads"
    slack_escalation_channel: str = "#sales-escalations"
    clearbit_api_key: Optional[str] = None
    app_url: str = "http://localhost:3000"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (and a local .env file)."""
        load_dotenv()
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            worker_count=_env_int("WORKER_COUNT", 4),
            poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 1.0),
            task_max_attempts=_env_int("TASK_MAX_ATTEMPTS", 3),
            task_backoff_seconds=_env_float("TASK_BACKOFF_SECONDS", 1.0),
            task_backoff_max_seconds=_env_float("TASK_BACKOFF_MAX_SECONDS", 3600.0),
            visibility_timeout_seconds=_env_int("VISIBILITY_TIMEOUT_SECONDS", 300),
            follow_up_delay_days=_env_float("FOLLOW_UP_DELAY_DAYS", 2.0),
            stale_after_days=_env_float("STALE_AFTER_DAYS", 2.0),
            max_follow_ups=_env_int("MAX_FOLLOW_UPS", 3),
            no_show_min_minutes=_env_int("NO_SHOW_MIN_MINUTES", 15),
            no_show_max_minutes=_env_int("NO_SHOW_MAX_MINUTES", 120),
            no_show_scan_interval_minutes=_env_int("NO_SHOW_SCAN_INTERVAL_MINUTES", 15),
            stale_scan_hour_utc=_env_int("STALE_SCAN_HOUR_UTC", 9),
            no_show_penalty=_env_int("NO_SHOW_PENALTY", 10),
            high_value_score=_env_int("HIGH_VALUE_SCORE", 70),
            low_value_score=_env_int("LOW_VALUE_SCORE", 50),
            max_handoff_depth=_env_int("MAX_HANDOFF_DEPTH", 5),
            collaborator_timeout_seconds=_env_float("COLLABORATOR_TIMEOUT_SECONDS", 20.0),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY"),
            email_from=os.getenv("EMAIL_FROM", "noreply@example.com"),
            email_from_name=os.getenv("EMAIL_FROM_NAME", "Sales Team"),
            slack_bot_token=os.getenv("SLACK_BOT_TOKEN"),
            slack_default_channel=os.getenv("SLACK_DEFAULT_CHANNEL", "#sales-leads"),
            slack_escalation_channel=os.getenv("SLACK_ESCALATION_CHANNEL", "#sales-escalations"),
            clearbit_api_key=os.getenv("CLEARBIT_API_KEY"),
            app_url=os.getenv("APP_URL", "http://localhost:3000"),
        )
