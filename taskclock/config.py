"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Scheduler configuration. All values come from environment variables."""

    # Storage
    scheduler_data_dir: Path = Field(default=Path("data/scheduler"))

    # Timing
    scheduler_timezone: str = Field(default="UTC")
    scheduler_tick_seconds: float = Field(default=1.0, gt=0)
    scheduler_autosave_seconds: float = Field(default=30.0, gt=0)
    scheduler_catch_up_missed: bool = Field(default=True)

    # Execution history retention
    history_limit: int = Field(default=1000, ge=1)
    task_history_limit: int = Field(default=200, ge=1)

    # Executor defaults (seconds)
    script_timeout_seconds: float = Field(default=300.0)
    command_timeout_seconds: float = Field(default=60.0)
    agent_timeout_seconds: float = Field(default=600.0)
    reminder_timeout_seconds: float = Field(default=30.0)
    webhook_timeout_seconds: float = Field(default=30.0)
    output_max_chars: int = Field(default=2000)

    # Notifications
    default_chat_id: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="TASKCLOCK_", env_file=_env_file(), env_file_encoding="utf-8"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def tasks_file(self) -> Path:
        """Location of the persisted task document."""
        return self.scheduler_data_dir / "tasks.json"

    def timeout_for(self, task_type: str) -> float:
        """Default executor timeout for a task type, in seconds."""
        return float(getattr(self, f"{task_type}_timeout_seconds", self.command_timeout_seconds))


settings = Settings()
