# backend/config.py
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # --- Database ---
    database_url: str = "sqlite:///backend/redevelopment_dev.db"

    # --- Security / JWT ---
    jwt_secret: str = "dev-secret-please-change"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24  # 24 hours

    # --- CORS ---
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # --- Logging ---
    log_level: str = "INFO"

    # --- Voting ---
    # Single source for the approval threshold; see DESIGN.md (open question).
    minimum_approval_percentage: int = 51
    default_voting_session: str = "proposal_selection"
    voting_reminder_window_hours: int = 48

    # --- Scheduler ---
    scheduler_enabled: bool = True
    voting_deadline_check_minutes: int = 5
    voting_threshold_check_minutes: int = 15
    voting_reminder_check_minutes: int = 60
    notification_purge_minutes: int = 60
    scheduler_item_timeout_seconds: float = 30.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

# Ensure path directory exists (for SQLite)
if settings.database_url.startswith("sqlite:///"):
    db_path = Path(settings.database_url.replace("sqlite:///", ""))
    db_path.parent.mkdir(parents=True, exist_ok=True)

# --- SQLAlchemy setup ---
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False}
    if settings.database_url.startswith("sqlite")
    else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
