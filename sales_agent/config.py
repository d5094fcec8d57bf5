from typing import Optional

from pydantic_settings import BaseSettings

BACKLOG_THRESHOLD_MS = 10 * 60 * 1000
MAX_ENRICHMENT_LOOPS = 10
MESSAGE_GAP_MS = 1000


class Settings(BaseSettings):
    database_url: str = "sqlite:///./conversations.db"
    debug: bool = False
    log_level: str = "INFO"

    debounce_delay_ms: int = 3000
    bot_response_delay_ms: int = 2300
    session_timeout_minutes: int = 360

    notifier_url: str = "http://localhost:3001"
    notifier_timeout_seconds: float = 30.0

    alert_bot_token: Optional[str] = None
    alert_chat_id: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
