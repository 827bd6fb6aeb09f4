"""Sync scheduler.

Each tick reaps stuck jobs, asks the source registry which sources are due,
and starts one job per due source. Starting a job claims the source's job
slot, so ticking twice in the same instant (or from two replicas) never
double-starts a source. Started as a background asyncio task in the API
server's FastAPI lifespan.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Callable, Optional

from knowledge_ingestion import metrics
from knowledge_ingestion.db import db_session
from knowledge_ingestion.job_runner import JobRunner, JobSummary, SessionFactory
from knowledge_ingestion.logging_setup import get_logger

logger = get_logger(__name__)

Dispatcher = Callable[[uuid.UUID], object]


class Scheduler:
    def __init__(
        self,
        runner: JobRunner,
        session_factory: SessionFactory = db_session,
        dispatch: Optional[Dispatcher] = None,
    ) -> None:
        self.runner = runner
        self.session_factory = session_factory
        # Default: run the job inline on the ticking thread.
        self.dispatch: Dispatcher = dispatch or runner.run_job

    def claim_due(self, now: Optional[datetime] = None) -> list[uuid.UUID]:
        """Reap stuck jobs, then create and claim a job for every due source."""
        now = now or self.runner.clock()
        reaped = self.runner.reap_stuck_jobs(now)
        if reaped:
            logger.warning("scheduler_reaped_jobs", count=len(reaped))

        with self.session_factory() as s:
            due = self.runner.sources.list_due(s, now)

        started: list[uuid.UUID] = []
        for source_id in due:
            try:
                job_id = self.runner.start_job(source_id, trigger="scheduled", now=now)
            except Exception:
                # One bad source must not stall the others.
                logger.exception("scheduler_start_failed", source_id=str(source_id))
                continue
            if job_id is not None:
                started.append(job_id)
        return started

    def tick(self, now: Optional[datetime] = None) -> list[uuid.UUID]:
        try:
            started = self.claim_due(now)
        except Exception:
            metrics.SCHEDULER_TICKS_TOTAL.labels(outcome="error").inc()
            raise
        metrics.SCHEDULER_TICKS_TOTAL.labels(outcome="ok").inc()
        if started:
            logger.info("scheduler_found_due_sources", count=len(started))
        for job_id in started:
            self.dispatch(job_id)
        return started

    def trigger_now(self, source_id: uuid.UUID) -> Optional[uuid.UUID]:
        """Manual sync: skips the due check but still needs the job slot."""
        job_id = self.runner.start_job(source_id, trigger="manual")
        if job_id is None:
            return None
        self.dispatch(job_id)
        return job_id


async def scheduler_loop(scheduler: Scheduler, poll_interval: float = 30) -> None:
    """Main scheduler loop. Claims due sources and runs each job in a worker thread."""
    logger.info("scheduler_started", poll_interval=poll_interval)
    running: set[asyncio.Task] = set()

    while True:
        try:
            started = await asyncio.to_thread(scheduler.claim_due)
            metrics.SCHEDULER_TICKS_TOTAL.labels(outcome="ok").inc()
            if started:
                logger.info("scheduler_found_due_sources", count=len(started))
            for job_id in started:
                # Fire and forget; each job runs independently.
                task = asyncio.create_task(_run_job(scheduler.runner, job_id))
                running.add(task)
                task.add_done_callback(running.discard)
        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            return
        except Exception:
            metrics.SCHEDULER_TICKS_TOTAL.labels(outcome="error").inc()
            logger.exception("scheduler_poll_error")

        try:
            await asyncio.sleep(poll_interval)
        except asyncio.CancelledError:
            logger.info("scheduler_cancelled")
            return


async def _run_job(runner: JobRunner, job_id: uuid.UUID) -> Optional[JobSummary]:
    try:
        return await asyncio.to_thread(runner.run_job, job_id)
    except Exception:
        logger.exception("scheduled_job_failed", job_id=str(job_id))
        return None
