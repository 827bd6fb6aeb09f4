"""
Source registry: configured knowledge sources, their schedule and job slot.

The job slot (`knowledge_sources.active_job_id`) is the only point of mutual
exclusion between sync jobs. It is claimed with a conditional UPDATE against
the database, so it holds across process restarts and scheduler replicas.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from knowledge_ingestion.connectors.registry import (
    ConnectorRegistry,
    get_connector_registry,
)
from knowledge_ingestion.errors import AuthError, InvalidConfiguration, SourceNotFound
from knowledge_ingestion.logging_setup import get_logger
from knowledge_ingestion.models import KnowledgeSource, as_naive_utc, utcnow

logger = get_logger(__name__)


def _check_interval(minutes: Any) -> int:
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
        raise InvalidConfiguration(
            f"sync_frequency_minutes must be a positive integer, got {minutes!r}"
        )
    return minutes


class SourceRegistry:
    def __init__(self, connectors: Optional[ConnectorRegistry] = None) -> None:
        self.connectors = connectors or get_connector_registry()

    def register(
        self,
        session: Session,
        *,
        name: str,
        kind: str,
        configuration: dict[str, Any],
        sync_frequency_minutes: int = 60,
        is_active: bool = True,
        created_by: Optional[str] = None,
    ) -> uuid.UUID:
        if not (name or "").strip():
            raise InvalidConfiguration("Source name must not be empty")
        source = KnowledgeSource(
            name=name.strip(),
            type=kind,
            configuration=self.connectors.normalize(kind, configuration),
            sync_frequency_minutes=_check_interval(sync_frequency_minutes),
            is_active=is_active,
            created_by=created_by,
        )
        session.add(source)
        session.flush()
        logger.info(
            "source_registered",
            source_id=str(source.id),
            kind=kind,
            interval_minutes=source.sync_frequency_minutes,
        )
        return source.id

    def get(self, session: Session, source_id: uuid.UUID) -> KnowledgeSource:
        source = session.get(KnowledgeSource, source_id)
        if source is None:
            raise SourceNotFound(f"Knowledge source not found: {source_id}")
        return source

    def list_sources(
        self, session: Session, active_only: bool = False
    ) -> list[KnowledgeSource]:
        stmt = select(KnowledgeSource).order_by(KnowledgeSource.created_at)
        if active_only:
            stmt = stmt.where(KnowledgeSource.is_active.is_(True))
        return list(session.execute(stmt).scalars().all())

    def update(
        self,
        session: Session,
        source_id: uuid.UUID,
        *,
        name: Optional[str] = None,
        configuration: Optional[dict[str, Any]] = None,
        sync_frequency_minutes: Optional[int] = None,
    ) -> KnowledgeSource:
        source = self.get(session, source_id)
        if name is not None:
            if not name.strip():
                raise InvalidConfiguration("Source name must not be empty")
            source.name = name.strip()
        if sync_frequency_minutes is not None:
            source.sync_frequency_minutes = _check_interval(sync_frequency_minutes)
        if configuration is not None:
            source.configuration = self.connectors.normalize(source.type, configuration)
            # New configuration: give a source parked on auth failures another go.
            source.needs_reconfiguration = False
            source.consecutive_failures = 0
        session.flush()
        return source

    def activate(self, session: Session, source_id: uuid.UUID) -> KnowledgeSource:
        source = self.get(session, source_id)
        self.connectors.validate(source.type, source.configuration)
        source.is_active = True
        session.flush()
        logger.info("source_activated", source_id=str(source_id))
        return source

    def deactivate(self, session: Session, source_id: uuid.UUID) -> KnowledgeSource:
        source = self.get(session, source_id)
        source.is_active = False
        session.flush()
        logger.info("source_deactivated", source_id=str(source_id))
        return source

    def delete(self, session: Session, source_id: uuid.UUID) -> None:
        """Delete a source with its jobs, items, postings and tag links."""
        source = self.get(session, source_id)
        session.delete(source)
        session.flush()
        logger.info("source_deleted", source_id=str(source_id))

    def list_due(self, session: Session, now: Optional[datetime] = None) -> list[uuid.UUID]:
        """Active sources whose interval has elapsed, most overdue first."""
        now = as_naive_utc(now) if now is not None else utcnow()
        sources = session.execute(
            select(KnowledgeSource).where(
                KnowledgeSource.is_active.is_(True),
                KnowledgeSource.needs_reconfiguration.is_(False),
            )
        ).scalars()

        due: list[tuple[int, float, datetime, uuid.UUID]] = []
        for source in sources:
            if source.last_sync_at is None:
                # Never synced: ahead of everything, oldest registration first.
                due.append((0, 0.0, source.created_at, source.id))
                continue
            interval = timedelta(minutes=source.sync_frequency_minutes)
            overdue = now - source.last_sync_at - interval
            if overdue >= timedelta(0):
                due.append((1, -overdue.total_seconds(), source.created_at, source.id))
        due.sort()
        return [source_id for *_, source_id in due]

    def mark_synced(
        self,
        session: Session,
        source_id: uuid.UUID,
        at: datetime,
        checkpoint: Optional[str] = None,
    ) -> None:
        """Record a successful sync; only job success may call this."""
        source = self.get(session, source_id)
        source.last_sync_at = as_naive_utc(at)
        if checkpoint is not None:
            source.checkpoint = checkpoint
        source.consecutive_failures = 0
        source.last_error_kind = None
        session.flush()

    def record_failure(
        self, session: Session, source_id: uuid.UUID, error_kind: str
    ) -> None:
        source = self.get(session, source_id)
        source.consecutive_failures += 1
        source.last_error_kind = error_kind
        if error_kind == AuthError.kind:
            # Parked until an operator updates the configuration.
            source.needs_reconfiguration = True
            logger.warning(
                "source_needs_reconfiguration",
                source_id=str(source_id),
                consecutive_failures=source.consecutive_failures,
            )
        session.flush()

    def claim_job_slot(
        self,
        session: Session,
        source_id: uuid.UUID,
        job_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> bool:
        """Atomically take the source's job slot; False if it is already held."""
        result = session.execute(
            update(KnowledgeSource)
            .where(
                KnowledgeSource.id == source_id,
                KnowledgeSource.active_job_id.is_(None),
            )
            .values(active_job_id=job_id, job_claimed_at=as_naive_utc(now or utcnow()))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def release_job_slot(
        self, session: Session, source_id: uuid.UUID, job_id: uuid.UUID
    ) -> bool:
        result = session.execute(
            update(KnowledgeSource)
            .where(
                KnowledgeSource.id == source_id,
                KnowledgeSource.active_job_id == job_id,
            )
            .values(active_job_id=None, job_claimed_at=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1
