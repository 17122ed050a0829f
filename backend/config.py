import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent.resolve()
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "radar.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH.as_posix()}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # CORS
    CORS_ORIGINS: list[str] = ["*"]

    # Scan pipeline
    SCAN_DEFAULT_SEED: int = 111
    SCAN_DEFAULT_N_OPPS: int = 5
    SCAN_MAX_N_OPPS: int = 50  # hard cap, requests above it are truncated
    SCAN_DEFAULT_MODE: str = "fast"
    SCAN_DEFAULT_TOPIC: str = "default_topic"
    SCAN_NEWS_LIMIT: int = 5
    LLM_CACHE_TTL_SEC: int = 900
    FIXTURES_DIR: str = str(_BACKEND_DIR / "data" / "fixtures")

    # Batch fan-out
    BATCH_DEFAULT_CONCURRENCY: int = 4
    BATCH_MAX_CONCURRENCY: int = 16

    # Monitor
    MONITOR_TOP_MOVES_LIMIT: int = 10
    MONITOR_MAX_STEP: float = 5.0  # simulated moves are uniform in +/- this

    # LLM providers
    LLM_PROVIDER: str = "mock"  # mock, ollama, openrouter, deepseek, auto
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "qwen2.5:7b"
    OLLAMA_TIMEOUT_SECONDS: float = 5.0
    OPENROUTER_API_KEY: Optional[str] = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "google/gemini-2.0-flash-exp:free"
    OPENROUTER_TIMEOUT_SECONDS: float = 10.0
    DEEPSEEK_API_KEY: Optional[str] = None
    DEEPSEEK_BASE_URL: str = "https://api.deepseek.com"
    DEEPSEEK_MODEL: str = "deepseek-chat"
    DEEPSEEK_TIMEOUT_SECONDS: float = 30.0

    # News
    NEWS_PROVIDER: str = "local"  # local, web
    NEWS_FEED_PATH: str = str(_PROJECT_ROOT / "data" / "runtime" / "news_feed.jsonl")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def normalize_database_url(cls, value):
        if not isinstance(value, str):
            return value
        raw = value.strip()
        if not raw.startswith(_SQLITE_ASYNC_PREFIX):
            return raw
        path_part = raw[len(_SQLITE_ASYNC_PREFIX) :]
        if not path_part or path_part == ":memory:":
            return raw
        db_path = Path(path_part)
        if not db_path.is_absolute():
            db_path = (_PROJECT_ROOT / db_path).resolve()
            _LOGGER.debug("Resolved relative SQLite path against project root: %s", db_path)
        return f"{_SQLITE_ASYNC_PREFIX}{db_path.as_posix()}"

    @field_validator(
        "OLLAMA_BASE_URL",
        "OPENROUTER_BASE_URL",
        "DEEPSEEK_BASE_URL",
        mode="before",
    )
    @classmethod
    def strip_base_urls(cls, value):
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @field_validator("LLM_PROVIDER", "NEWS_PROVIDER", mode="before")
    @classmethod
    def lower_provider_names(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    class Config:
        env_file = (str(_PROJECT_ROOT / ".env"), str(_BACKEND_DIR / ".env"))
        extra = "ignore"


settings = Settings()
