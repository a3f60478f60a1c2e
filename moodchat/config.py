from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./moodchat.db"
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_HOURS: int = 24
    APP_NAME: str = "Mood Chat API"
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    # Matchmaking
    WAITING_POLL_INTERVAL_SECONDS: float = 1.5
    MATCH_TIMEOUT_MIN_SECONDS: float = 60.0  # 1 minute
    MATCH_TIMEOUT_MAX_SECONDS: float = 180.0  # 3 minutes

    # Chat
    MESSAGE_POLL_INTERVAL_SECONDS: float = 2.0
    MESSAGE_MAX_LENGTH: int = 2000

    # Optional JSON file for the local room key ring
    ROOM_KEYS_PATH: str | None = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()
