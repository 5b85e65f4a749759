from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # --- database / cache ---
    DATABASE_URL: str = "sqlite:///./standings.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # 0 keeps the snapshot until the next recompute or an explicit invalidation.
    CLASSIFICATION_CACHE_TTL_SECONDS: int = 0

    # --- recompute coordination ---
    RECOMPUTE_WAIT_TIMEOUT_SECONDS: float = 30.0
    RECOMPUTE_WORKERS: int = 4

    # Whether a stage where the pilot was only disqualified still counts as a participation.
    DSQ_COUNTS_AS_PARTICIPATION: bool = False

    LOG_LEVEL: str = "INFO"


settings = Settings()
