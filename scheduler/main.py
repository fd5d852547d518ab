import logging
import os
import sys
from typing import List

import requests
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger("scheduler")


def _env_float(name: str, default: float, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s=%r, using %.2f", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%r is below %.2f, using %.2f", name, raw, minimum, default)
        return default
    return value


API_BASE_URL = os.getenv("API_BASE_URL", "http://api:4321")
BATCH_CRON = os.getenv("BATCH_CRON", "30 */6 * * *")
BATCH_RUN_KEYS = os.getenv("BATCH_RUN_KEYS", "")
REQUEST_TIMEOUT = _env_float("SCHEDULER_TIMEOUT", 30.0, minimum=0.1)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "").strip()


def parse_run_keys(raw: str) -> List[str]:
    keys: List[str] = []
    for part in raw.replace("\n", ",").split(","):
        key = part.strip()
        if key and key not in keys:
            keys.append(key)
    return keys


def trigger_batch(run_key: str, session: requests.Session | None = None) -> int | None:
    """Ask the API to start a batch run; returns the HTTP status or None on network failure."""
    url = f"{API_BASE_URL.rstrip('/')}/batch-analysis"
    headers = {"X-Admin-Token": ADMIN_TOKEN} if ADMIN_TOKEN else None
    client = session or requests
    try:
        logger.info("Starting batch analysis for %s: %s", run_key, url)
        response = client.post(
            url,
            json={"run_key": run_key, "action": "start"},
            timeout=REQUEST_TIMEOUT,
            headers=headers,
        )
    except requests.RequestException as exc:
        logger.error("Batch start for %s failed: %s", run_key, exc)
        return None
    if response.status_code == 409:
        logger.info("Batch analysis for %s is still running, skipped", run_key)
    elif response.status_code >= 400:
        logger.error("Batch start for %s returned %s: %s", run_key, response.status_code, response.text[:500])
    else:
        logger.info("Batch start for %s: %s", run_key, response.text[:500])
    return response.status_code


def trigger_all(run_keys: List[str]) -> None:
    for run_key in run_keys:
        trigger_batch(run_key)


def main() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
    run_keys = parse_run_keys(BATCH_RUN_KEYS)
    if not run_keys:
        logger.error("BATCH_RUN_KEYS is empty, nothing to schedule")
        sys.exit(1)
    try:
        trigger = CronTrigger.from_crontab(BATCH_CRON)
    except ValueError as exc:
        logger.error("Invalid BATCH_CRON '%s': %s", BATCH_CRON, exc)
        sys.exit(1)

    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(trigger_all, trigger, args=[run_keys])
    logger.info("Scheduler started with cron %s for %s", BATCH_CRON, ", ".join(run_keys))

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
