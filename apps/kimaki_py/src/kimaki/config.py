from __future__ import annotations

# pyright: reportUnknownVariableType=false, reportUntypedBaseClass=false, reportUnnecessaryTypeIgnoreComment=false

from pathlib import Path

from pydantic import Field  # pyright: ignore[reportMissingImports]
from pydantic_settings import BaseSettings, SettingsConfigDict  # pyright: ignore[reportMissingImports]

ROOT_ENV_PATH = Path(__file__).resolve().parents[4] / ".env"


class AppEnv(BaseSettings):
    model_config: SettingsConfigDict = SettingsConfigDict(  # pyright: ignore[reportIncompatibleVariableOverride]
        env_file=(str(ROOT_ENV_PATH), ".env"),
        extra="ignore",
    )

    LOG_LEVEL: str = "info"

    DISCORD_BOT_TOKEN: str | None = None
    DISCORD_ALLOWLIST_USER_IDS: str = ""

    KIMAKI_DATA_DIR: str = ".kimaki"
    DATABASE_URL: str | None = None
    DEFAULT_PROJECT_DIRECTORY: str = "."

    IPC_POLL_INTERVAL_MS: int = Field(default=200, gt=0)
    IPC_STALE_TTL_MS: int = Field(default=5 * 60 * 1000, gt=0)
    IPC_STALE_CHECK_INTERVAL_MS: int = Field(default=30 * 1000, gt=0)

    THREAD_INTERRUPT_TIMEOUT_MS: int = Field(default=2000, gt=0)
    FILE_UPLOAD_TIMEOUT_SEC: int = Field(default=600, gt=0)
    ACTION_BUTTONS_TTL_SEC: int = Field(default=24 * 60 * 60, gt=0)

    OPENCODE_BIN: str = "opencode"
    OPENCODE_MODEL: str | None = None
    OPENCODE_TIMEOUT_MS: int = Field(default=900000, gt=0)
    OPENCODE_RETRY_COUNT: int = Field(default=1, ge=0)
    OPENCODE_RETRY_BACKOFF_MS: int = Field(default=250, ge=0)

    def resolve_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        data_dir = Path(self.KIMAKI_DATA_DIR).expanduser().resolve()
        return f"sqlite+aiosqlite:///{data_dir / 'discord-sessions.db'}"


def read_env() -> AppEnv:
    return AppEnv()
