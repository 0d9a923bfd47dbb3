"""Application configuration. Loads from env vars."""
from __future__ import annotations

import logging
import os
from typing import Literal

from pydantic_settings import BaseSettings

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_FILLERS_PATH = os.path.join(_PACKAGE_DIR, "resources", "fillers.json")


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Recognition: engine error policy (transient errors only consume the retry budget)
    RETRY_DELAY_SECONDS: float = 1.0
    MAX_RETRIES: int = 3

    # Meeting liveness is polled, not pushed
    LIVENESS_POLL_SECONDS: float = 5.0

    # Incomplete segment snapshots (salvaged on tab close)
    AUTOSAVE_INTERVAL_SECONDS: float = 5.0

    # Coordinator: notification cool-down and near-duplicate window
    NOTIFY_COOLDOWN_SECONDS: float = 30.0
    DUPLICATE_WINDOW_SECONDS: float = 60.0

    # Stats computation runs in an isolated worker with a hard teardown
    WORKER_TIMEOUT_SECONDS: float = 10.0
    WORKER_MODE: Literal["thread", "process"] = "thread"

    # Filler dictionary: JSON {category: [words]} (optionally under "fillerWords")
    FILLERS_PATH: str = DEFAULT_FILLERS_PATH

    # Persistence: "json" = single JSON document on disk, "memory" = process-local
    STORE_BACKEND: Literal["json", "memory"] = "json"
    STORE_PATH: str = "./data/store.json"
    FALLBACK_DIR: str = "./data/fallback"

    # Language gate. Empty URL = no detector; clients must confirm the language themselves.
    LANGUAGE_DETECTION_URL: str = ""
    LANGUAGE_WORD_THRESHOLD: int = 50
    LANGUAGE_SAMPLE_WORDS: int = 50
    LANGUAGE_MAX_CHARS: int = 250
    LANGUAGE_CONFIDENCE_THRESHOLD: float = 59.0
    LANGUAGE_ASSUME_ON_FAILURE: bool = True  # detector unreachable -> treat as English
    LANGUAGE_TIMEOUT_SECONDS: float = 10.0

    # HTTP server (meet-fluency console script)
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path empty = console only.
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Apply LOG_LEVEL / LOG_FILE to the root logger. Safe to call more than once."""
    settings = settings or get_settings()
    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.LOG_FILE:
        log_dir = os.path.dirname(settings.LOG_FILE)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(settings.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
