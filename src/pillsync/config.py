"""Application configuration via environment variables and .env file."""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "PILLSYNC_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database (document store and realtime tree share one SQLite file)
    db_path: Path = Path("./data/pillsync.db")

    # Logging
    log_level: str = "info"

    # Missed-dose verification callback
    # Env: PILLSYNC_CHECK_MISSED_DOSE_URL="https://host/tasks/check-missed-dose"
    check_missed_dose_url: str | None = None
    task_secret: str | None = None  # sent and checked as X-Task-Secret

    # Delayed task worker
    task_worker_enabled: bool = True
    task_poll_interval: int = 15  # seconds between queue scans
    task_max_attempts: int = 5
    task_retry_backoff: int = 60  # seconds, multiplied by attempt number

    # Push gateway (FCM legacy HTTP shape)
    push_gateway_url: str = "https://fcm.googleapis.com/fcm/send"
    push_server_key: str | None = None
    push_timeout: float = 10.0

    @field_validator("check_missed_dose_url", "task_secret", "push_server_key", mode="before")
    @classmethod
    def blank_as_unset(cls, v: object) -> object:
        """Treat empty strings from the environment as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("log_level")
    @classmethod
    def lower_log_level(cls, v: str) -> str:
        return v.strip().lower()

    # Basic auth for /api (unset password disables it)
    auth_username: str = "admin"
    auth_password: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
