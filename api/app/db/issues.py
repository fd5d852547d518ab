from typing import Any, Dict, List, Sequence, Tuple

from ..models import WorkItem
from .helpers import _now_iso, _retry_on_lock
from .pool import get_connection, transaction


async def list_candidates(
    run_key: str,
    page_token: int | None = None,
    page_size: int = 1000,
) -> Tuple[List[WorkItem], int | None]:
    """One page of the repository's mirrored issues and pull requests.

    Pages are keyed on issue id; the returned token is None once a short page
    signals the end.
    """
    after_id = int(page_token or 0)
    async with get_connection() as conn:
        rows = await (await conn.execute(
            """
            SELECT i.id, i.number, i.title, i.body, i.is_pull_request, i.html_url
            FROM github_issues AS i
            JOIN github_repos AS r ON r.id = i.repo_id
            WHERE r.full_name = ? AND i.id > ?
            ORDER BY i.id
            LIMIT ?
            """,
            (run_key, after_id, page_size),
        )).fetchall()
    items = [
        WorkItem(
            id=row["id"],
            number=row["number"],
            title=row["title"] or "",
            body=row["body"] or "",
            is_pull_request=bool(row["is_pull_request"]),
            run_key=run_key,
            html_url=row["html_url"],
        )
        for row in rows
    ]
    next_token = items[-1].id if len(items) >= page_size and items else None
    return items, next_token


@_retry_on_lock()
async def upsert_repo_issues(full_name: str, repo_id: int, issues: Sequence[Dict[str, Any]]) -> int:
    """Mirror issues for a repository (the write side used by the sync service)."""
    timestamp = _now_iso()
    owner, _, name = full_name.partition("/")
    async with transaction() as conn:
        await conn.execute(
            """
            INSERT INTO github_repos (id, full_name, name, owner, html_url, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET full_name = excluded.full_name, updated_at = excluded.updated_at
            """,
            (repo_id, full_name, name, owner, f"https://github.com/{full_name}", timestamp),
        )
        rows = [
            (
                int(issue["id"]),
                repo_id,
                int(issue["number"]),
                issue.get("title") or "",
                issue.get("body"),
                issue.get("state") or "open",
                issue.get("html_url"),
                1 if issue.get("is_pull_request") else 0,
                issue.get("created_at") or timestamp,
                timestamp,
            )
            for issue in issues
        ]
        await conn.executemany(
            """
            INSERT INTO github_issues (
                id, repo_id, number, title, body, state, html_url,
                is_pull_request, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                body = excluded.body,
                state = excluded.state,
                html_url = excluded.html_url,
                is_pull_request = excluded.is_pull_request,
                updated_at = excluded.updated_at
            """,
            rows,
        )
    return len(rows)
