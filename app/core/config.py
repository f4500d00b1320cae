from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root so it loads regardless of cwd
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str
    # create_all on startup; production deployments run Alembic instead
    auto_create_tables: bool = False

    # JWT
    secret_key: str
    access_token_expire_minutes: int = 60
    algorithm: str = "HS256"
    # /ws register must carry an access token for the same user
    ws_require_token: bool = False

    # CORS
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # Scheduling rules
    slot_duration_minutes: int = 60
    recurring_weeks: int = 4
    # Expired waitlist entries / alternate offers are closed on this cadence
    housekeeping_interval_seconds: int = 60 * 60

    # Env
    env: str = "development"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.env == "production"


settings = Settings()
