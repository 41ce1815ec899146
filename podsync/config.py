from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Sync server
    BACKEND: str = "gpodder"  # gpodder, rest
    SERVER_URL: Optional[str] = None
    SERVER_USERNAME: Optional[str] = None
    SERVER_PASSWORD: Optional[str] = None
    DEVICE_ID: str = "podsync"

    # Persistence
    STATE_PATH: str = "./data/library.json"
    PERSIST_ENABLED: bool = True
    PENDING_ACTION_RETENTION_SECONDS: int = 604800  # 7d

    # Sync Logic
    SYNC_INTERVAL_SECONDS: int = 900
    FEED_REFRESH_INTERVAL_SECONDS: int = 3600  # 0 to disable
    SYNC_COLLECTIONS: bool = False
    FEED_FETCH_CONCURRENCY: int = 4
    EPISODE_PAGE_SIZE: int = 200

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30
    USER_AGENT: str = "podsync/0.1 (+https://github.com/podsync)"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
