"""Process-wide tunables read once from the environment at import time."""

import logging
import os

logger = logging.getLogger("issuelens.api")


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%r is below %s, using %s", name, raw, minimum, default)
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Worker pools and the AI client
API_SEMAPHORE_LIMIT = _env_int("API_SEMAPHORE_LIMIT", 20, minimum=1)
BATCH_CONCURRENCY_MAX = _env_int("BATCH_CONCURRENCY_MAX", 50, minimum=1)
PROGRESS_LOG_EVERY = _env_int("PROGRESS_LOG_EVERY", 10, minimum=1)

# Candidate collection and enqueueing
CANDIDATE_PAGE_SIZE = _env_int("CANDIDATE_PAGE_SIZE", 1000, minimum=1)
DEDUP_LOOKUP_BATCH_SIZE = _env_int("DEDUP_LOOKUP_BATCH_SIZE", 100, minimum=1)
ENQUEUE_BATCH_SIZE = _env_int("ENQUEUE_BATCH_SIZE", 500, minimum=1)

# Run status retention
RUN_ACTIVE_TTL_SECONDS = _env_int("RUN_ACTIVE_TTL_SECONDS", 86400, minimum=1)
RUN_TERMINAL_TTL_SECONDS = _env_int("RUN_TERMINAL_TTL_SECONDS", 3600, minimum=1)
STATUS_ERRORS_LIMIT = _env_int("STATUS_ERRORS_LIMIT", 100, minimum=1)
STATUS_RECONCILE = _env_bool("STATUS_RECONCILE", True)
