"""Runtime settings read from the environment."""

import os
from typing import List

from pydantic import BaseModel

# Hard limit shown to users when composing a message
MAX_MESSAGE_LENGTH = 2000


class Settings(BaseModel):
    """Tunable limits for the chat engine."""

    max_message_length: int = MAX_MESSAGE_LENGTH
    reconnect_delay: float = 1.0  # seconds between re-subscribe attempts
    reconnect_attempts: int = 5
    cors_origins: List[str] = ["*"]

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from SKILLSWAP_* environment variables."""
        origins = os.getenv("SKILLSWAP_CORS_ORIGINS", "*")
        return cls(
            max_message_length=int(os.getenv("SKILLSWAP_MAX_MESSAGE_LENGTH", str(MAX_MESSAGE_LENGTH))),
            reconnect_delay=float(os.getenv("SKILLSWAP_RECONNECT_DELAY", "1.0")),
            reconnect_attempts=int(os.getenv("SKILLSWAP_RECONNECT_ATTEMPTS", "5")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )
