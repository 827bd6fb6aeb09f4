"""
Item store: canonical knowledge items keyed by (source_id, source_reference).

Every write that changes an item's content invalidates and then rebuilds its
search index in the same transaction, so an item is never searchable in a
half-updated state.
"""

from __future__ import annotations

import enum
import hashlib
import json
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from knowledge_ingestion.connectors.base import RawRecord
from knowledge_ingestion.logging_setup import get_logger
from knowledge_ingestion.models import ItemStatus, KnowledgeItem, utcnow
from knowledge_ingestion.search.indexer import SearchIndexer

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 500
AUTHOR_MAX_LENGTH = 255


class UpsertOutcome(str, enum.Enum):
    created = "created"
    updated = "updated"
    unchanged = "unchanged"


@dataclass
class UpsertResult:
    item: KnowledgeItem
    outcome: UpsertOutcome


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


def record_fields(record: RawRecord) -> dict:
    """Column values an ingested record maps onto."""
    title = (record.title or "").strip() or record.reference
    return {
        "title": _clip(title, TITLE_MAX_LENGTH),
        "content": record.content,
        "summary": record.summary,
        "author": _clip(record.author, AUTHOR_MAX_LENGTH),
        "item_type": record.kind,
        "source_url": record.url,
        "item_metadata": record.metadata or None,
    }


def fingerprint(fields: dict) -> str:
    payload = json.dumps(fields, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ItemStore:
    def __init__(self, indexer: Optional[SearchIndexer] = None) -> None:
        self.indexer = indexer or SearchIndexer()

    def get(self, session: Session, item_id: uuid.UUID) -> Optional[KnowledgeItem]:
        return session.get(KnowledgeItem, item_id)

    def get_by_reference(
        self, session: Session, source_id: uuid.UUID, reference: str
    ) -> Optional[KnowledgeItem]:
        return session.execute(
            select(KnowledgeItem).where(
                KnowledgeItem.source_id == source_id,
                KnowledgeItem.source_reference == reference,
            )
        ).scalar_one_or_none()

    def upsert(
        self, session: Session, source_id: uuid.UUID, record: RawRecord
    ) -> UpsertResult:
        fields = record_fields(record)
        content_hash = fingerprint(fields)

        existing = self.get_by_reference(session, source_id, record.reference)
        if existing is not None:
            return self._apply(session, existing, fields, content_hash)

        item = KnowledgeItem(
            source_id=source_id,
            source_reference=record.reference,
            content_hash=content_hash,
            **fields,
        )
        try:
            with session.begin_nested():
                session.add(item)
                session.flush()
        except IntegrityError:
            # Lost a create race on (source_id, source_reference): update the winner.
            winner = self.get_by_reference(session, source_id, record.reference)
            if winner is None:
                raise
            logger.info(
                "item_create_race_resolved",
                source_id=str(source_id),
                reference=record.reference,
            )
            return self._apply(session, winner, fields, content_hash)

        self.indexer.reindex(session, item)
        return UpsertResult(item=item, outcome=UpsertOutcome.created)

    def _apply(
        self,
        session: Session,
        item: KnowledgeItem,
        fields: dict,
        content_hash: str,
    ) -> UpsertResult:
        if item.content_hash == content_hash:
            if item.indexed_at is None:
                self.indexer.reindex(session, item)
            return UpsertResult(item=item, outcome=UpsertOutcome.unchanged)

        for key, value in fields.items():
            setattr(item, key, value)
        item.content_hash = content_hash
        item.updated_at = utcnow()
        item.indexed_at = None
        self.indexer.reindex(session, item)
        return UpsertResult(item=item, outcome=UpsertOutcome.updated)

    def archive(self, session: Session, item_id: uuid.UUID) -> KnowledgeItem:
        item = self.get(session, item_id)
        if item is None:
            raise KeyError(f"Knowledge item not found: {item_id}")
        if item.status != ItemStatus.archived.value:
            item.status = ItemStatus.archived.value
            item.updated_at = utcnow()
        return item
