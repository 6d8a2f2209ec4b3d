"""Fan-out job worker.

Why this exists:
- With JOB_EXECUTION=worker the API only records jobs as pending.
- A job whose process died mid-run stays 'running' with a stale updated_at;
  the worker claims it again and resumes (ad sets already created are reused).

Deploy as a separate service:
  Start command: python worker.py

Recommended env:
  JOB_STORE_SOURCE=db
  JOB_EXECUTION=worker
  DATABASE_URL=...
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Optional

from config import Settings
from errors import RemoteApiError
from fanout import FanOutOrchestrator
from graph_client import GraphClient
from progress import ProgressTracker
from state_store import FanOutJob, build_job_store
from token_store import CredentialError, build_credential_provider

logger = logging.getLogger("worker")

RATE_LIMIT_CODES = {4, 17, 32, 613, 80004}
RATE_LIMIT_PHRASES = ("too many calls", "rate limit", "request limit")


def _get_int_env(*names: str, default: int) -> int:
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            try:
                return int(v)
            except ValueError:
                logger.warning("Ignoring non-integer %s=%r", n, v)
    return int(default)


POLL_S = _get_int_env("WORKER_POLL_SECONDS", "WORKER_POLL_S", default=10)
STALE_AFTER_S = _get_int_env("WORKER_STALE_AFTER_SECONDS", default=1800)
RATE_LIMIT_SLEEP_S = 60


def hit_rate_limit(job: FanOutJob) -> bool:
    for r in job.results:
        if r.status != "error":
            continue
        if r.error_code in RATE_LIMIT_CODES:
            return True
        if any(p in (r.error_message or "").lower() for p in RATE_LIMIT_PHRASES):
            return True
    return False


def process_one(store, settings: Settings, provider) -> Optional[FanOutJob]:
    """Claim and run one job. Returns the finished job, or None if nothing was pending."""
    job = store.claim_next(stale_after_s=STALE_AFTER_S)
    if job is None:
        return None

    tracker = ProgressTracker(store)
    logger.info("Claimed job %s (%d siblings)", job.job_id, job.requested_count)
    try:
        credentials = provider.get(job.user_id)
    except CredentialError as e:
        tracker.attach(job)
        return tracker.finish(job.job_id, FanOutOrchestrator.terminal_status(job), error=f"Credentials unavailable: {e}")

    orchestrator = FanOutOrchestrator(
        GraphClient(credentials, settings),
        tracker,
        credentials=credentials,
        settings=settings,
    )
    return asyncio.run(orchestrator.execute(job))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = Settings.from_env()
    store = build_job_store(settings.job_db_path, source=settings.job_store_source, database_url=settings.database_url or "")
    provider = build_credential_provider()
    logger.info("Worker loop starting. POLL_S=%s store=%s", POLL_S, type(store).__name__)

    while True:
        try:
            job = process_one(store, settings, provider)
            if job is not None:
                if hit_rate_limit(job):
                    logger.warning("Rate limit hit in job %s, sleeping %ss", job.job_id, RATE_LIMIT_SLEEP_S)
                    time.sleep(RATE_LIMIT_SLEEP_S)
                # Drain back-to-back while there is work.
                continue
        except RemoteApiError as e:
            if e.is_rate_limit():
                logger.warning("Rate limit hit, sleeping %ss before retry: %s", RATE_LIMIT_SLEEP_S, e)
                time.sleep(RATE_LIMIT_SLEEP_S)
            else:
                logger.exception("Worker iteration failed")
        except Exception:
            logger.exception("Worker iteration failed")

        time.sleep(POLL_S)


if __name__ == "__main__":
    main()
