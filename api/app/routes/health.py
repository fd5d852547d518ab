import sqlite3

from fastapi import APIRouter, Depends, Request

from ..db import get_connection
from ..deps import require_admin
from ..rate_limit import limiter, RATE_LIMIT_ADMIN

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    try:
        async with get_connection() as conn:
            await conn.execute("SELECT 1")
        database = "ok"
    except sqlite3.Error as exc:
        database = f"error: {exc}"
    dispatcher = getattr(request.app.state, "dispatcher", None)
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "dispatcher": dispatcher is not None,
    }


@router.get("/auth/check", dependencies=[Depends(require_admin)])
@limiter.limit(RATE_LIMIT_ADMIN)
async def auth_check(request: Request) -> dict:
    return {"ok": True}
