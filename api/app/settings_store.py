"""Runtime overrides for ``config.Settings``, kept in the ``app_settings`` table.

Reads use a short-lived synchronous connection because ``get_settings`` is
called from sync and async code alike.
"""

import json
import logging
import os
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any, Dict

from .db.helpers import _ensure_parent_dir, _sqlite_path

logger = logging.getLogger("issuelens.api")

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
"""

_UPSERT = """
    INSERT INTO app_settings (key, value) VALUES (?, ?)
    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
"""


def _settings_db_path() -> str:
    return _sqlite_path(os.getenv("DATABASE_URL", "sqlite:////data/app.db"))


def _decode(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def read_settings() -> Dict[str, Any]:
    db_path = _settings_db_path()
    if not Path(db_path).exists():
        return {}
    try:
        with closing(sqlite3.connect(db_path, timeout=30)) as conn:
            rows = conn.execute("SELECT key, value FROM app_settings").fetchall()
    except sqlite3.Error as exc:
        logger.debug("Settings overrides unavailable: %s", exc)
        return {}
    return {key: _decode(raw) for key, raw in rows}


def write_settings(values: Dict[str, Any]) -> None:
    """Persist overrides; a None value drops the override so env/defaults apply again."""
    if not values:
        return
    db_path = _settings_db_path()
    _ensure_parent_dir(db_path)
    with closing(sqlite3.connect(db_path, timeout=30)) as conn:
        with conn:
            conn.execute(_CREATE_TABLE)
            for key, value in values.items():
                if value is None:
                    conn.execute("DELETE FROM app_settings WHERE key = ?", (key,))
                else:
                    conn.execute(_UPSERT, (key, json.dumps(value)))
    logger.info("Updated settings overrides: %s", ", ".join(sorted(values)))
