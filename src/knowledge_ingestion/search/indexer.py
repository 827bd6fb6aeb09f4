"""
Weighted full-text index over knowledge items.

Each item contributes postings for four zones, strongest first:

    title (1.0) > summary (0.4) > content (0.2) > author (0.1)

A posting's score is `weight * (2 - 1/tf)`: repeats raise it, but it stays
below `2 * weight`. Each weight is at most half the next stronger one, so no
amount of repetition in a weaker zone outranks a single hit in a stronger
zone. A query accumulates the scores of every matching (term, zone) posting
per item, so a term found in several zones ranks above the same term found
in only one of them.

The index is rebuilt synchronously, in the same transaction as the item write
that invalidated it. Items whose index is stale (`indexed_at IS NULL`) are not
visible to search.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.orm import Session

from knowledge_ingestion.logging_setup import get_logger
from knowledge_ingestion.models import (
    ItemStatus,
    KnowledgeItem,
    SearchPosting,
    utcnow,
)
from knowledge_ingestion.search.tokenizer import Tokenizer

logger = get_logger(__name__)

ZONE_WEIGHTS: dict[str, float] = {
    "title": 1.0,
    "summary": 0.4,
    "content": 0.2,
    "author": 0.1,
}


@dataclass(frozen=True)
class SearchHit:
    item_id: uuid.UUID
    source_id: uuid.UUID
    title: str
    score: float
    updated_at: datetime


def posting_score(zone: str, term_frequency: int) -> float:
    return ZONE_WEIGHTS[zone] * (2.0 - 1.0 / term_frequency)


class SearchIndexer:
    def __init__(self, tokenizer: Optional[Tokenizer] = None) -> None:
        self.tokenizer = tokenizer or Tokenizer()

    def build(self, item: KnowledgeItem) -> dict[str, dict[str, list[int]]]:
        """Derive token -> zone -> positions for one item."""
        index: dict[str, dict[str, list[int]]] = {}
        for zone in ZONE_WEIGHTS:
            for token, positions in self.tokenizer.positions(
                getattr(item, zone)
            ).items():
                index.setdefault(token, {})[zone] = positions
        return index

    def reindex(self, session: Session, item: KnowledgeItem) -> int:
        """Replace the item's postings; runs inside the caller's transaction."""
        if item.id is None:
            session.flush()
        session.execute(delete(SearchPosting).where(SearchPosting.item_id == item.id))

        count = 0
        for token, zones in self.build(item).items():
            for zone, positions in zones.items():
                session.add(
                    SearchPosting(
                        item_id=item.id,
                        token=token,
                        zone=zone,
                        positions=positions,
                        score=posting_score(zone, len(positions)),
                    )
                )
                count += 1
        item.indexed_at = utcnow()
        session.flush()
        return count

    def reindex_stale(self, session: Session, limit: int = 500) -> int:
        """Rebuild items left with a stale index (e.g., after a tokenizer change)."""
        items = (
            session.execute(
                select(KnowledgeItem)
                .where(KnowledgeItem.indexed_at.is_(None))
                .order_by(KnowledgeItem.updated_at)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        for item in items:
            self.reindex(session, item)
        if items:
            logger.info("search_index_stale_rebuilt", count=len(items))
        return len(items)

    def search(
        self,
        session: Session,
        query: str,
        *,
        limit: int = 20,
        match_all: bool = False,
        source_id: Optional[uuid.UUID] = None,
    ) -> list[SearchHit]:
        """Ranked lookup: score desc, then most recently updated first."""
        terms = sorted(set(self.tokenizer.tokenize(query)))
        if not terms:
            return []

        score = func.sum(SearchPosting.score).label("score")
        stmt = (
            select(
                KnowledgeItem.id,
                KnowledgeItem.source_id,
                KnowledgeItem.title,
                KnowledgeItem.updated_at,
                score,
            )
            .join(SearchPosting, SearchPosting.item_id == KnowledgeItem.id)
            .where(
                SearchPosting.token.in_(terms),
                KnowledgeItem.status == ItemStatus.active.value,
                KnowledgeItem.indexed_at.is_not(None),
            )
            .group_by(
                KnowledgeItem.id,
                KnowledgeItem.source_id,
                KnowledgeItem.title,
                KnowledgeItem.updated_at,
            )
            .order_by(score.desc(), KnowledgeItem.updated_at.desc())
            .limit(limit)
        )
        if source_id is not None:
            stmt = stmt.where(KnowledgeItem.source_id == source_id)
        if match_all:
            stmt = stmt.having(func.count(distinct(SearchPosting.token)) == len(terms))

        return [
            SearchHit(
                item_id=row.id,
                source_id=row.source_id,
                title=row.title,
                score=float(row.score),
                updated_at=row.updated_at,
            )
            for row in session.execute(stmt)
        ]
