import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Request

from ..batch import ACTIONS, BatchDispatcher
from ..deps import _http_error, get_dispatcher, require_admin
from ..errors import OrchestratorError
from ..rate_limit import limiter, RATE_LIMIT_BATCH_CONTROL, RATE_LIMIT_DEFAULT
from ..schemas import BatchActionRequest

logger = logging.getLogger("issuelens.api")

router = APIRouter()

_READ_ONLY_ACTIONS = ("status",)


async def _run_action(dispatcher: BatchDispatcher, action: str, run_key: str) -> dict:
    try:
        return await dispatcher.execute(action, run_key)
    except OrchestratorError as exc:
        raise _http_error(exc) from exc
    except sqlite3.Error as exc:
        logger.error("Batch %s for %s failed: %s", action, run_key, exc)
        raise HTTPException(status_code=500, detail="Batch store unavailable") from exc


@router.post("/batch-analysis")
@limiter.limit(RATE_LIMIT_BATCH_CONTROL)
async def batch_analysis(
    request: Request,
    payload: BatchActionRequest,
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
) -> dict:
    if not payload.run_key:
        raise HTTPException(status_code=400, detail="run_key (or repo) is required")
    if payload.action not in ACTIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid action. Use one of: {', '.join(ACTIONS)}",
        )
    if payload.action not in _READ_ONLY_ACTIONS:
        require_admin(request.headers.get("X-Admin-Token"))
    return await _run_action(dispatcher, payload.action, payload.run_key)


@router.get("/batch-analysis/{run_key:path}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def batch_analysis_status(
    request: Request,
    run_key: str,
    dispatcher: BatchDispatcher = Depends(get_dispatcher),
) -> dict:
    return await _run_action(dispatcher, "status", run_key)
