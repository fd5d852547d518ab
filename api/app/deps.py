import logging
import os
import secrets

from fastapi import Header, HTTPException, Request

from .batch import BatchDispatcher
from .errors import Conflict, NotFound, OrchestratorError

logger = logging.getLogger("issuelens.api")

_admin_token_warned = False


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    global _admin_token_warned
    admin_token = os.getenv("ADMIN_TOKEN", "").strip()
    if not admin_token:
        if not _admin_token_warned:
            logger.warning(
                "ADMIN_TOKEN is not set. Admin endpoints are unprotected. "
                "Set ADMIN_TOKEN environment variable for production use."
            )
            _admin_token_warned = True
        return
    if not secrets.compare_digest(x_admin_token or "", admin_token):
        raise HTTPException(status_code=401, detail="Admin token required")


def get_dispatcher(request: Request) -> BatchDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Batch dispatcher is not ready")
    return dispatcher


def _http_error(exc: OrchestratorError) -> HTTPException:
    if isinstance(exc, Conflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
