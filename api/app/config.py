import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[2]
API_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(REPO_ROOT / ".env")


@dataclass(frozen=True)
class Settings:
    ai_provider: str
    ai_api_key: str
    ai_model: str
    ai_base_url: str
    ai_headers_json: str
    ai_temperature: float
    ai_max_tokens: int
    ai_timeout: int
    labels_path: str
    batch_concurrency: int
    batch_max_retries: int
    batch_retry_delay_ms: int
    batch_request_delay_ms: int
    batch_item_timeout: int
    batch_dedup_before_enqueue: bool
    batch_run_keys: str
    batch_cron: str
    database_url: str
    cors_origins: str
    log_level: str


_TRUTHY = ("1", "true", "yes", "on")


class _SettingSource:
    """Resolves a key from persisted overrides first, then the environment."""

    def __init__(self, overrides: Dict[str, Any]) -> None:
        self._overrides = overrides

    def raw(self, key: str) -> Any:
        if key in self._overrides:
            return self._overrides[key]
        return os.getenv(key)

    def text(self, key: str, default: str, allow_empty: bool = True) -> str:
        value = self.raw(key)
        if value is None or (not allow_empty and not str(value).strip()):
            return default
        return str(value)

    def number(self, key: str, default: Any, cast: Callable[[Any], Any]) -> Any:
        value = self.raw(key)
        if value is None:
            return default
        try:
            return cast(value)
        except (TypeError, ValueError):
            return default

    def flag(self, key: str, default: bool) -> bool:
        value = self.raw(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUTHY


def get_settings() -> Settings:
    from .settings_store import read_settings

    src = _SettingSource(read_settings())
    return Settings(
        ai_provider=src.text("AI_PROVIDER", "openai"),
        ai_api_key=os.getenv("AI_API_KEY", ""),
        ai_model=src.text("AI_MODEL", "gpt-4.1-mini"),
        ai_base_url=src.text("AI_BASE_URL", ""),
        ai_headers_json=src.text("AI_HEADERS_JSON", ""),
        ai_temperature=src.number("AI_TEMPERATURE", 0.0, float),
        ai_max_tokens=src.number("AI_MAX_TOKENS", 800, int),
        ai_timeout=src.number("AI_TIMEOUT", 30, int),
        labels_path=src.text(
            "LABELS_PATH", str(API_ROOT / "config" / "labels.yaml"), allow_empty=False
        ),
        batch_concurrency=max(1, src.number("BATCH_CONCURRENCY", 10, int)),
        batch_max_retries=max(1, src.number("BATCH_MAX_RETRIES", 3, int)),
        batch_retry_delay_ms=max(0, src.number("BATCH_RETRY_DELAY_MS", 500, int)),
        batch_request_delay_ms=max(0, src.number("BATCH_REQUEST_DELAY_MS", 500, int)),
        batch_item_timeout=max(1, src.number("BATCH_ITEM_TIMEOUT", 30, int)),
        batch_dedup_before_enqueue=src.flag("BATCH_DEDUP_BEFORE_ENQUEUE", True),
        batch_run_keys=src.text("BATCH_RUN_KEYS", ""),
        batch_cron=src.text("BATCH_CRON", "30 */6 * * *"),
        database_url=os.getenv("DATABASE_URL", "sqlite:////data/app.db"),
        cors_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
