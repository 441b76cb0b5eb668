from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    gemini_api_key: str = ""
    question_model: str = "gemini-2.5-flash"

    # Polling fallback (push delivery is at-least-once but may be missed entirely)
    waiting_poll_interval_sec: float = 2.0
    question_poll_interval_sec: float = 1.0
    # Delay before a push-triggered question fetch so the replica has seen the write
    refetch_delay_ms: int = 150

    # Reconnection backoff: 1s, 2s, 4s, 8s, 16s
    reconnect_max_attempts: int = 5
    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 16000

    daily_doubles_per_board: int = 2
    command_queue_size: int = 64

    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin; appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
