import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .ai_client import IssueClassifier
from .batch import BatchDispatcher, ClassifierGateway
from .config import get_settings
from .db import (
    close_db_pool,
    init_db,
    init_db_pool,
    purge_expired_runs,
    recover_interrupted_runs,
)
from .rate_limit import limiter
from .routes import api_router
from .state import API_SEMAPHORE_LIMIT

_init_settings = get_settings()
logging.basicConfig(
    level=_init_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("issuelens.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db_pool()
    await init_db()
    await purge_expired_runs()
    paused = await recover_interrupted_runs()
    if paused:
        logger.warning(
            "Paused %s batch runs interrupted by a restart: %s",
            len(paused),
            ", ".join(paused),
        )

    current = get_settings()
    ai_http = httpx.AsyncClient(timeout=current.ai_timeout)
    classifier = IssueClassifier(ai_http, asyncio.Semaphore(API_SEMAPHORE_LIMIT))
    gateway = ClassifierGateway(
        classifier,
        item_timeout=current.batch_item_timeout,
        provider=current.ai_provider,
        model=current.ai_model,
    )
    app.state.classifier = classifier
    app.state.dispatcher = BatchDispatcher(gateway)
    try:
        yield
    finally:
        await app.state.dispatcher.shutdown()
        await ai_http.aclose()
        await close_db_pool()


app = FastAPI(title="IssueLens API", version="0.1.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

origins: List[str] = [origin.strip() for origin in _init_settings.cors_origins.split(",") if origin.strip()]
allow_credentials = True
if not origins or "*" in origins:
    allow_credentials = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"]
)

app.include_router(api_router)
