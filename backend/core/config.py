# backend/core/config.py
import os
from typing import List
from dotenv import load_dotenv


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """
    Setup environment variables.
        - JWT_SECRET / JWT_ALGORITHM / TOKEN_TTL_SECONDS for handshake tokens
        - SUBSCRIBER_QUEUE_SIZE the bounded delivery queue per room subscription
        - DELIVERY_MAX_ATTEMPTS / DELIVERY_RETRY_DELAY transport write retries
        - SESSION_CLOSE_TIMEOUT bound on the final error report and socket close
        - SEED_SAMPLE_DATA load the demo users, groups, rooms and messages

    Values can be overridden per instance, e.g. ``settings.SUBSCRIBER_QUEUE_SIZE = 4``.
    """

    # Load environment variables from the .env file
    load_dotenv()

    JWT_SECRET: str = os.getenv("JWT_SECRET", "secret")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    TOKEN_TTL_SECONDS: int = int(os.getenv("TOKEN_TTL_SECONDS", str(7 * 24 * 3600)))

    SUBSCRIBER_QUEUE_SIZE: int = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "32"))
    DELIVERY_MAX_ATTEMPTS: int = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3"))
    DELIVERY_RETRY_DELAY: float = float(os.getenv("DELIVERY_RETRY_DELAY", "0.05"))
    SESSION_CLOSE_TIMEOUT: float = float(os.getenv("SESSION_CLOSE_TIMEOUT", "1.0"))

    SEED_SAMPLE_DATA: bool = _as_bool(os.getenv("SEED_SAMPLE_DATA", "true"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    CORS_ORIGINS: List[str] = [
        origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
    ]

settings = Settings()
