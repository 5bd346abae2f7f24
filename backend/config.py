from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Dunsumday"
    DATABASE_URL: str = "sqlite:///data/dunsumday.db"
    DATA_DIR: Path = Path("data")
    API_PATH: str = "/api"
    CORS_ORIGINS: list[str] = [
        "http://localhost:26300",
        "http://127.0.0.1:26300",
    ]
    LOG_LEVEL: str = "INFO"
    ITEMS_PAGE_SIZE: int = 500
    LOOKAHEAD_DAYS: int = 14
    PROGRESS_MAX: int = 100
    PROGRESS_MONOTONIC: bool = False
    COMPLETION_AUTO_DEACTIVATE: bool = False

    model_config = {"env_prefix": "DUNSUMDAY_", "env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_configuration(self) -> None:
        errors: list[str] = []
        if not (self.API_PATH or "").startswith("/"):
            errors.append(f"API_PATH must start with / character: {self.API_PATH}")
        if self.PROGRESS_MAX < 1:
            errors.append("PROGRESS_MAX must be at least 1")
        if self.LOOKAHEAD_DAYS < 0:
            errors.append("LOOKAHEAD_DAYS must not be negative")
        if self.ITEMS_PAGE_SIZE < 1:
            errors.append("ITEMS_PAGE_SIZE must be at least 1")
        if self.is_production_like and self.DATABASE_URL.startswith("sqlite:///:memory:"):
            errors.append("DATABASE_URL must point at a persistent database in production-like environments")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Invalid configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
