"""Configuration settings for the Calendar Sync service."""
from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    data_file: Path = Path("data") / "calendar-data.json"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    environment: str = "development"
    log_level: str = "INFO"

    # Push channel liveness (seconds)
    heartbeat_interval: float = 30.0
    reap_interval: float = 60.0
    send_timeout: float = 5.0

    # CORS for the Telegram Mini App and its static hosts
    cors_origins: list[str] = [
        "https://web.telegram.org",
        "https://telegram.org",
        "http://localhost:3000",
    ]
    cors_origin_regex: str = r"https://.*\.(github\.io|render\.com)"

    class Config:
        env_prefix = "CALENDAR_SYNC_"
        env_file = ".env"


settings = Settings()
