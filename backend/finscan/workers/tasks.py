"""
Celery Tasks — maintenance

Task: recover_orphaned_jobs
  Beat-driven scan for document jobs stuck in 'processing' longer than
  ORPHANED_JOB_AFTER_SECONDS (API process crashed or was killed before the
  background pipeline reached a terminal write). Each one is force-failed
  with SystemError; the conditional update makes this safe to run while
  API processes are still working on younger jobs, which refresh their
  updated_at between pipeline stages.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging

from finscan.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async bridge: Celery task bodies are synchronous, the repositories are not.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Drive `coro` to completion from a synchronous task body and return its result."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # already inside a loop (eager mode): run on a private loop in a helper thread
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Orphan scanner: runs via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="finscan.workers.tasks.recover_orphaned_jobs",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def recover_orphaned_jobs() -> dict[str, int]:
    return run_async(_recover_orphaned_jobs_async())


async def _recover_orphaned_jobs_async() -> dict[str, int]:
    from finscan.core.config import get_settings
    from finscan.db.session import build_engine, build_session_factory
    from finscan.services.jobs import JobRepository, recover_orphaned_jobs as recover

    settings = get_settings()
    engine = build_engine(settings)
    try:
        jobs = JobRepository(build_session_factory(engine))
        recovered = await recover(jobs, settings.orphaned_job_after_seconds)
    finally:
        await engine.dispose()

    logger.info("Orphan scan complete | recovered=%d", recovered)
    return {"recovered": recovered}
