import logging

from .helpers import _retry_on_lock
from .pool import get_connection

logger = logging.getLogger("issuelens.db")

# github_repos / github_issues are filled by the sync service; the orchestrator
# only reads them. issue_label is the label sink, batch_* hold run state.
_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS github_repos (
        id INTEGER PRIMARY KEY,
        full_name TEXT NOT NULL UNIQUE,
        name TEXT,
        owner TEXT,
        html_url TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS github_issues (
        id INTEGER PRIMARY KEY,
        repo_id INTEGER NOT NULL REFERENCES github_repos(id) ON DELETE CASCADE,
        number INTEGER NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        body TEXT,
        state TEXT,
        html_url TEXT,
        is_pull_request INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issue_label (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        issue_id INTEGER NOT NULL UNIQUE,
        is_pull_request INTEGER NOT NULL DEFAULT 0,
        labels TEXT NOT NULL DEFAULT '{}',
        need_manual_check INTEGER NOT NULL DEFAULT 0,
        provider TEXT,
        model TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS batch_runs (
        run_key TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        start_time TEXT,
        end_time TEXT,
        paused_at TEXT,
        resumed_at TEXT,
        total_count INTEGER NOT NULL DEFAULT 0,
        processed_count INTEGER NOT NULL DEFAULT 0,
        success_count INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        original_total_count INTEGER NOT NULL DEFAULT 0,
        already_analyzed_count INTEGER NOT NULL DEFAULT 0,
        concurrency INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS batch_queue (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        run_key TEXT NOT NULL,
        item_id INTEGER NOT NULL,
        payload TEXT NOT NULL,
        enqueued_at TEXT NOT NULL,
        UNIQUE (run_key, item_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS batch_in_flight (
        run_key TEXT NOT NULL,
        worker_id INTEGER NOT NULL,
        item_id INTEGER NOT NULL,
        item_number INTEGER NOT NULL,
        title TEXT,
        payload TEXT NOT NULL,
        started_at TEXT NOT NULL,
        PRIMARY KEY (run_key, worker_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS batch_failures (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_key TEXT NOT NULL,
        item_id INTEGER NOT NULL,
        item_number INTEGER NOT NULL,
        message TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL,
        failed_at TEXT NOT NULL,
        UNIQUE (run_key, item_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_github_issues_repo_id ON github_issues(repo_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_issue_label_updated_at ON issue_label(updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_batch_queue_run_seq ON batch_queue(run_key, seq)",
    "CREATE INDEX IF NOT EXISTS idx_batch_failures_run ON batch_failures(run_key, id)",
    "CREATE INDEX IF NOT EXISTS idx_batch_runs_expires_at ON batch_runs(expires_at)",
)


@_retry_on_lock()
async def init_db() -> None:
    async with get_connection() as conn:
        for statement in _TABLES:
            await conn.execute(statement)
        for statement in _INDEXES:
            await conn.execute(statement)
    logger.debug("Schema ready (%s tables)", len(_TABLES))
