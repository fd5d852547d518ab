import json
from typing import Any, Dict, Iterable, Set

from .helpers import _int_list, _now_iso, _placeholders, _retry_on_lock, _safe_json_dict
from .pool import get_connection


async def existing_label_ids(issue_ids: Iterable[int]) -> Set[int]:
    """Ids among ``issue_ids`` that already have a stored label set.

    Callers pass bounded batches; one query binds one parameter per id.
    """
    ids = _int_list(issue_ids)
    if not ids:
        return set()
    async with get_connection() as conn:
        rows = await (await conn.execute(
            f"SELECT issue_id FROM issue_label WHERE issue_id IN ({_placeholders(ids)})",
            ids,
        )).fetchall()
    return {int(row["issue_id"]) for row in rows}


@_retry_on_lock()
async def save_issue_labels(
    issue_id: int,
    is_pull_request: bool,
    labels: Dict[str, Any],
    provider: str | None = None,
    model: str | None = None,
) -> None:
    """Upsert the label set of one issue; saving again updates the same row."""
    timestamp = _now_iso()
    async with get_connection() as conn:
        await conn.execute(
            """
            INSERT INTO issue_label (
                issue_id, is_pull_request, labels, need_manual_check,
                provider, model, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(issue_id) DO UPDATE SET
                is_pull_request = excluded.is_pull_request,
                labels = excluded.labels,
                need_manual_check = excluded.need_manual_check,
                provider = excluded.provider,
                model = excluded.model,
                updated_at = excluded.updated_at
            """,
            (
                int(issue_id),
                1 if is_pull_request else 0,
                json.dumps(labels, ensure_ascii=False, sort_keys=True),
                1 if labels.get("need_manual_check") else 0,
                provider,
                model,
                timestamp,
                timestamp,
            ),
        )


async def get_issue_labels(issue_id: int) -> Dict[str, Any] | None:
    async with get_connection() as conn:
        row = await (await conn.execute(
            """
            SELECT issue_id, is_pull_request, labels, provider, model, created_at, updated_at
            FROM issue_label
            WHERE issue_id = ?
            """,
            (int(issue_id),),
        )).fetchone()
    if not row:
        return None
    return {
        "issue_id": row["issue_id"],
        "is_pull_request": bool(row["is_pull_request"]),
        "labels": _safe_json_dict(row["labels"]),
        "provider": row["provider"],
        "model": row["model"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


async def count_issue_labels(issue_id: int) -> int:
    async with get_connection() as conn:
        row = await (await conn.execute(
            "SELECT COUNT(*) FROM issue_label WHERE issue_id = ?",
            (int(issue_id),),
        )).fetchone()
    return int(row[0] if row else 0)


async def count_labeled_since(run_key: str, since: str | None) -> int:
    """Label sets written for the repository's issues at or after ``since``."""
    async with get_connection() as conn:
        row = await (await conn.execute(
            """
            SELECT COUNT(*)
            FROM issue_label AS l
            JOIN github_issues AS i ON i.id = l.issue_id
            JOIN github_repos AS r ON r.id = i.repo_id
            WHERE r.full_name = ? AND l.updated_at >= ?
            """,
            (run_key, since or ""),
        )).fetchone()
    return int(row[0] if row else 0)
