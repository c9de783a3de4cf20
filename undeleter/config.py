"""Configuration settings for the iMessage undeleter."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Message store
    db_path: str = "~/Library/Messages/chat.db"
    platform: Optional[str] = None  # macos or ios, detected when unset
    attachment_root: Optional[str] = None  # Replaces ~/Library/Messages/Attachments (macOS only)

    # Output
    export_path: str = "./undeleted_messages"
    database_echo: bool = False

    # Monitoring
    window_size: Optional[int] = None  # Required, from env or --check-last-n
    conversation_filter: Optional[str] = None  # Comma-separated; empty means all conversations
    poll_interval: float = 0.5  # seconds

    # Sender display
    custom_name: Optional[str] = None
    use_caller_id: bool = False

    # Attachment I/O
    io_workers: int = 4

    # Deletion reporting
    reporter_max_retries: int = 3
    reporter_retry_backoff: float = 0.5  # seconds, doubled per retry

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_prefix = "UNDELETER_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
