from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://localhost:5432/habitkernel"
    store_backend: str = "memory"  # "memory" | "postgres"
    default_tz: str = "UTC"
    kernel_api_key: str | None = None
    log_level: str = "INFO"

    # Nudges
    nudge_cooldown_minutes: int = 60

    # Streaks
    milestone_days: list[int] = [7, 14, 30, 50, 100, 180, 365]
    freeze_award_milestone: int = 30  # Crossing this milestone awards one streak freeze

    # Status classifier bands (hours before the deadline)
    status_critical_hours: float = 2.0
    status_warning_hours: float = 6.0

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
