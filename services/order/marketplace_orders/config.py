"""
Order Service — Configuration

Environment variables are read once, at startup, into a Settings model.
Nothing else in the service looks at os.environ: the engine, the sweeper and
the adapters receive their values through their constructors.
"""

import logging
import os
from datetime import timedelta

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"
    paystack_base_url: str = "https://api.paystack.co"
    paystack_secret_key: str = ""
    admin_token: str = ""
    commit_window_hours: float = Field(48.0, gt=0)
    reminder_window_hours: float = Field(6.0, gt=0)
    sweep_interval_seconds: float = Field(60.0, gt=0)
    log_level: str = "INFO"

    @property
    def commit_window(self) -> timedelta:
        return timedelta(hours=self.commit_window_hours)

    @property
    def reminder_window(self) -> timedelta:
        return timedelta(hours=self.reminder_window_hours)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """DATABASE_URL is required; everything else has a default."""
        env = os.environ if environ is None else environ
        values = {
            "database_url": env["DATABASE_URL"],
            "redis_url": env.get("REDIS_URL"),
            "paystack_base_url": env.get("PAYSTACK_BASE_URL"),
            "paystack_secret_key": env.get("PAYSTACK_SECRET_KEY"),
            "admin_token": env.get("ADMIN_TOKEN"),
            "commit_window_hours": env.get("COMMIT_WINDOW_HOURS"),
            "reminder_window_hours": env.get("REMINDER_WINDOW_HOURS"),
            "sweep_interval_seconds": env.get("SWEEP_INTERVAL_SECONDS"),
            "log_level": env.get("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
