"""
Sync job runner.

Drives one job end to end:

    pending -> running -> completed | failed

Each record the connector yields is reconciled in its own transaction
(upsert + search reindex + tag merge + job counters), so a job that fails
mid-stream keeps the items it already committed. The source checkpoint only
advances when the job completes. Cancellation and the maximum-duration check
are observed between records, never in the middle of an upsert.

Retryable connector errors (RateLimited, TransientIOError) restart the pull
from the cursor of the last processed record, with exponential backoff.
"""

from __future__ import annotations

import time
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_ingestion import metrics
from knowledge_ingestion.config import Settings
from knowledge_ingestion.connectors.base import Connector, RawRecord
from knowledge_ingestion.connectors.registry import (
    ConnectorRegistry,
    get_connector_registry,
)
from knowledge_ingestion.db import db_session
from knowledge_ingestion.errors import (
    ConnectorError,
    IngestionError,
    JobCancelled,
    JobNotFound,
    JobTimeout,
)
from knowledge_ingestion.item_store import ItemStore, UpsertOutcome
from knowledge_ingestion.logging_setup import get_logger
from knowledge_ingestion.models import (
    JobStatus,
    KnowledgeSource,
    SyncJob,
    as_naive_utc,
    utcnow,
)
from knowledge_ingestion.source_registry import SourceRegistry
from knowledge_ingestion.tagging import TagAssociator

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass(frozen=True)
class JobSummary:
    id: uuid.UUID
    source_id: uuid.UUID
    status: str
    trigger: str
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    items_processed: int
    items_created: int
    items_updated: int
    error_message: Optional[str]
    error_kind: Optional[str]

    @classmethod
    def from_model(cls, job: SyncJob) -> "JobSummary":
        return cls(
            id=job.id,
            source_id=job.source_id,
            status=job.status,
            trigger=job.trigger,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            items_processed=job.items_processed,
            items_created=job.items_created,
            items_updated=job.items_updated,
            error_message=job.error_message,
            error_kind=job.error_kind,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "source_id": str(self.source_id),
            "status": self.status,
            "trigger": self.trigger,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "items_processed": self.items_processed,
            "items_created": self.items_created,
            "items_updated": self.items_updated,
            "error_message": self.error_message,
            "error_kind": self.error_kind,
        }


@dataclass
class _PullState:
    cursor: Optional[str]
    started: datetime
    retries: int = 0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ConnectorError) and exc.retryable


class JobRunner:
    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        *,
        connectors: Optional[ConnectorRegistry] = None,
        sources: Optional[SourceRegistry] = None,
        items: Optional[ItemStore] = None,
        tagger: Optional[TagAssociator] = None,
        max_duration_seconds: int = 3600,
        retry_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.connectors = connectors or get_connector_registry()
        self.sources = sources or SourceRegistry(self.connectors)
        self.items = items or ItemStore()
        self.tagger = tagger or TagAssociator()
        self.max_duration = timedelta(seconds=max_duration_seconds)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "JobRunner":
        return cls(
            max_duration_seconds=settings.job_max_duration_seconds,
            retry_attempts=settings.retry_attempts,
            retry_base_seconds=settings.retry_base_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def start_job(
        self,
        source_id: uuid.UUID,
        trigger: str = "scheduled",
        now: Optional[datetime] = None,
    ) -> Optional[uuid.UUID]:
        """Create a pending job and claim the source's slot in one transaction.

        Returns None when another job already holds the slot.
        """
        job_id = uuid.uuid4()
        now = as_naive_utc(now) if now is not None else self.clock()
        try:
            with self.session_factory() as s:
                self.sources.get(s, source_id)
                if not self.sources.claim_job_slot(s, source_id, job_id, now):
                    logger.info("sync_job_slot_busy", source_id=str(source_id))
                    return None
                s.add(
                    SyncJob(
                        id=job_id,
                        source_id=source_id,
                        status=JobStatus.pending.value,
                        trigger=trigger,
                        created_at=now,
                    )
                )
        except IntegrityError:
            # A non-terminal job row already exists for this source.
            logger.info("sync_job_slot_busy", source_id=str(source_id))
            return None

        logger.info(
            "sync_job_created",
            job_id=str(job_id),
            source_id=str(source_id),
            trigger=trigger,
        )
        return job_id

    def run_job(self, job_id: uuid.UUID) -> Optional[JobSummary]:
        """Run a pending job to a terminal state.

        Returns None when the job disappears mid-run (its source was deleted).
        """
        with self.session_factory() as s:
            job = self._lock_job(s, job_id)
            if job.status != JobStatus.pending.value:
                logger.warning(
                    "sync_job_not_runnable", job_id=str(job_id), status=job.status
                )
                return JobSummary.from_model(job)
            source = s.get(KnowledgeSource, job.source_id)
            started = self.clock()
            job.transition(JobStatus.running)
            job.started_at = started
            source_id = source.id
            kind = source.type
            configuration = dict(source.configuration or {})
            checkpoint = source.checkpoint

        log = logger.bind(job_id=str(job_id), source_id=str(source_id), connector=kind)
        log.info("sync_job_started", checkpoint=checkpoint)

        state = _PullState(cursor=checkpoint, started=started)
        try:
            self._execute(job_id, source_id, kind, configuration, state, log)
            summary = self.get_job(job_id)
        except JobNotFound:
            log.warning("sync_job_vanished", last_cursor=state.cursor)
            return None

        metrics.SYNC_JOB_DURATION_SECONDS.labels(connector=kind).observe(
            max(0.0, (self.clock() - started).total_seconds())
        )
        log.info(
            "sync_job_finished",
            status=summary.status,
            processed=summary.items_processed,
            created=summary.items_created,
            updated=summary.items_updated,
            retries=state.retries,
        )
        return summary

    def _execute(
        self,
        job_id: uuid.UUID,
        source_id: uuid.UUID,
        kind: str,
        configuration: dict[str, Any],
        state: _PullState,
        log: Any,
    ) -> None:
        try:
            connector = self.connectors.build(kind, configuration)
            self._consume(job_id, source_id, kind, connector, state)
        except JobNotFound:
            raise
        except IngestionError as e:
            log.warning("sync_job_error", error=str(e), error_kind=e.kind)
            self._finalize_failed(job_id, kind, e)
        except Exception as e:
            log.exception("sync_job_crashed")
            self._finalize_failed(job_id, kind, e)
        else:
            self._finalize_completed(job_id, kind, state.cursor)

    def cancel_job(self, job_id: uuid.UUID) -> JobSummary:
        """Operator stop: pending jobs fail now, running ones at the next record."""
        with self.session_factory() as s:
            job = self._lock_job(s, job_id)
            if job.is_terminal:
                return JobSummary.from_model(job)
            if job.status == JobStatus.pending.value:
                self._fail(s, job, JobCancelled("Job cancelled by operator"))
            else:
                job.cancel_requested = True
            logger.info("sync_job_cancel_requested", job_id=str(job_id), status=job.status)
            return JobSummary.from_model(job)

    def reap_stuck_jobs(self, now: Optional[datetime] = None) -> list[uuid.UUID]:
        """Force jobs past the maximum duration to failed and free their slots."""
        now = as_naive_utc(now) if now is not None else self.clock()
        cutoff = now - self.max_duration
        reaped: list[uuid.UUID] = []
        with self.session_factory() as s:
            jobs = (
                s.execute(
                    select(SyncJob)
                    .where(
                        or_(
                            and_(
                                SyncJob.status == JobStatus.running.value,
                                SyncJob.started_at < cutoff,
                            ),
                            and_(
                                SyncJob.status == JobStatus.pending.value,
                                SyncJob.created_at < cutoff,
                            ),
                        )
                    )
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            for job in jobs:
                error = JobTimeout(
                    "Job exceeded maximum duration of "
                    f"{int(self.max_duration.total_seconds())}s"
                )
                self._fail(s, job, error, now=now)
                reaped.append(job.id)
                metrics.JOBS_REAPED_TOTAL.inc()
                logger.warning(
                    "sync_job_timed_out", job_id=str(job.id), source_id=str(job.source_id)
                )

            reaped_ids = set(reaped)
            # Slots pointing at a finished or missing job (e.g., manual DB edits).
            held = s.execute(
                select(KnowledgeSource).where(
                    KnowledgeSource.active_job_id.is_not(None),
                    KnowledgeSource.job_claimed_at < cutoff,
                )
            ).scalars().all()
            for source in held:
                if source.active_job_id in reaped_ids:
                    continue
                holder = s.get(SyncJob, source.active_job_id)
                if holder is None or holder.is_terminal:
                    self.sources.release_job_slot(s, source.id, source.active_job_id)
                    logger.warning("sync_job_slot_orphan_released", source_id=str(source.id))
        return reaped

    def get_job(self, job_id: uuid.UUID) -> JobSummary:
        with self.session_factory() as s:
            job = s.get(SyncJob, job_id)
            if job is None:
                raise JobNotFound(f"Sync job not found: {job_id}")
            return JobSummary.from_model(job)

    def list_jobs(self, source_id: uuid.UUID, limit: int = 50) -> list[JobSummary]:
        """Job history for a source, newest first."""
        with self.session_factory() as s:
            self.sources.get(s, source_id)
            jobs = s.execute(
                select(SyncJob)
                .where(SyncJob.source_id == source_id)
                .order_by(SyncJob.created_at.desc())
                .limit(limit)
            ).scalars()
            return [JobSummary.from_model(job) for job in jobs]

    # ------------------------------------------------------------------
    # Pulling and reconciliation
    # ------------------------------------------------------------------

    def _backoff(self, retry_state: RetryCallState) -> float:
        delay = wait_exponential(
            multiplier=self.retry_base_seconds, max=self.retry_max_seconds
        )(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, "retry_after", None)
        if hint:
            delay = max(delay, min(float(hint), self.retry_max_seconds))
        return delay

    def _consume(
        self,
        job_id: uuid.UUID,
        source_id: uuid.UUID,
        kind: str,
        connector: Connector,
        state: _PullState,
    ) -> None:
        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            state.retries += 1
            metrics.CONNECTOR_RETRIES_TOTAL.labels(
                connector=kind, error_kind=getattr(exc, "kind", "internal")
            ).inc()
            logger.warning(
                "connector_pull_retry",
                job_id=str(job_id),
                attempt=retry_state.attempt_number,
                delay_seconds=retry_state.upcoming_sleep,
                resume_cursor=state.cursor,
                error=str(exc),
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self._backoff,
            retry=retry_if_exception(_is_retryable),
            before_sleep=_before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                self._pull_once(job_id, source_id, kind, connector, state)

    def _pull_once(
        self,
        job_id: uuid.UUID,
        source_id: uuid.UUID,
        kind: str,
        connector: Connector,
        state: _PullState,
    ) -> None:
        self._check_interrupts(job_id, state.started)
        for record in connector.pull(state.cursor):
            self._check_interrupts(job_id, state.started)
            outcome = self._process_record(job_id, source_id, record)
            metrics.ITEMS_UPSERTED_TOTAL.labels(
                connector=kind, outcome=outcome.value
            ).inc()
            if record.cursor is not None:
                state.cursor = record.cursor

    def _check_interrupts(self, job_id: uuid.UUID, started: datetime) -> None:
        with self.session_factory() as s:
            row = s.execute(
                select(SyncJob.status, SyncJob.cancel_requested).where(
                    SyncJob.id == job_id
                )
            ).one_or_none()
        if row is None:
            raise JobNotFound(f"Sync job not found: {job_id}")
        if row.cancel_requested:
            raise JobCancelled("Job cancelled by operator")
        if row.status != JobStatus.running.value:
            raise JobCancelled(f"Job is no longer running (status={row.status})")
        if self.clock() - started > self.max_duration:
            raise JobTimeout(
                "Job exceeded maximum duration of "
                f"{int(self.max_duration.total_seconds())}s"
            )

    def _process_record(
        self, job_id: uuid.UUID, source_id: uuid.UUID, record: RawRecord
    ) -> UpsertOutcome:
        with self.session_factory() as s:
            result = self.items.upsert(s, source_id, record)
            if result.outcome is not UpsertOutcome.unchanged and record.tags:
                self.tagger.associate(s, result.item.id, record.tags)

            job = s.get(SyncJob, job_id)
            job.items_processed += 1
            if result.outcome is UpsertOutcome.created:
                job.items_created += 1
            elif result.outcome is UpsertOutcome.updated:
                job.items_updated += 1
        return result.outcome

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _lock_job(self, s: Session, job_id: uuid.UUID) -> SyncJob:
        job = s.execute(
            select(SyncJob).where(SyncJob.id == job_id).with_for_update()
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFound(f"Sync job not found: {job_id}")
        return job

    def _fail(
        self,
        s: Session,
        job: SyncJob,
        error: BaseException,
        now: Optional[datetime] = None,
    ) -> None:
        error_kind = getattr(error, "kind", "internal")
        job.transition(JobStatus.failed)
        job.completed_at = now or self.clock()
        job.error_message = str(error) or type(error).__name__
        job.error_kind = error_kind
        if error_kind != JobCancelled.kind:
            self.sources.record_failure(s, job.source_id, error_kind)
        self.sources.release_job_slot(s, job.source_id, job.id)

        source = s.get(KnowledgeSource, job.source_id)
        metrics.SYNC_JOBS_TOTAL.labels(
            connector=source.type if source else "unknown",
            status=JobStatus.failed.value,
            error_kind=error_kind,
        ).inc()

    def _finalize_failed(self, job_id: uuid.UUID, kind: str, error: BaseException) -> None:
        with self.session_factory() as s:
            job = self._lock_job(s, job_id)
            if job.is_terminal:
                # Already failed by the reaper or a pending-cancel.
                return
            self._fail(s, job, error)

    def _finalize_completed(
        self, job_id: uuid.UUID, kind: str, cursor: Optional[str]
    ) -> None:
        with self.session_factory() as s:
            job = self._lock_job(s, job_id)
            if job.is_terminal:
                return
            now = self.clock()
            job.transition(JobStatus.completed)
            job.completed_at = now
            self.sources.mark_synced(s, job.source_id, now, cursor)
            self.sources.release_job_slot(s, job.source_id, job.id)
        metrics.SYNC_JOBS_TOTAL.labels(
            connector=kind, status=JobStatus.completed.value, error_kind=""
        ).inc()
