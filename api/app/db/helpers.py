import asyncio
import functools
import json
import logging
import os
import random
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar

logger = logging.getLogger("issuelens.db")

T = TypeVar("T")

_LOCK_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def _retry_on_lock(
    max_attempts: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 0.5,
) -> Callable:
    """Retry an async store call while SQLite reports lock contention."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except sqlite3.OperationalError as exc:
                    message = str(exc).lower()
                    if not any(marker in message for marker in _LOCK_MESSAGES):
                        raise
                    if attempt >= max_attempts - 1:
                        raise
                    delay = min(max_delay, base_delay * (2**attempt))
                    delay += random.uniform(0, delay)
                    logger.warning(
                        "%s: SQLite locked (attempt %s/%s), retrying in %.2fs",
                        func.__name__,
                        attempt + 1,
                        max_attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator


def _sqlite_path(database_url: str) -> str:
    if database_url.startswith("sqlite:////"):
        return "/" + database_url[len("sqlite:////"):]
    if database_url.startswith("sqlite:///"):
        return database_url[len("sqlite:///"):]
    raise ValueError("Only sqlite is supported")


def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _expires_at(ttl_seconds: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)).isoformat(timespec="microseconds")


def _chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size <= 0:
        yield items
        return
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _load_json_object(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        loaded = json.loads(value)
        if isinstance(loaded, dict):
            return loaded
    except json.JSONDecodeError:
        return None
    return None


def _safe_json_dict(value: Optional[str]) -> Dict[str, Any]:
    return _load_json_object(value) or {}


def _int_list(values: Iterable[Any]) -> List[int]:
    result: List[int] = []
    for value in values:
        try:
            result.append(int(value))
        except (TypeError, ValueError):
            continue
    return result
