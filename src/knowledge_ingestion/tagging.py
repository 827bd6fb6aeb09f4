"""
Tag associator.

Associations only ever strengthen: re-assigning a tag keeps
max(existing, candidate) confidence, so a later inferred pass never undoes an
earlier higher-confidence human or model assertion.
"""

from __future__ import annotations

import uuid
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from knowledge_ingestion.logging_setup import get_logger
from knowledge_ingestion.models import KnowledgeItemTag, Tag, utcnow

logger = get_logger(__name__)

HUMAN_CONFIDENCE = 1.0

DEFAULT_TAGS: list[tuple[str, str, str]] = [
    ("bug", "#dc3545", "Bug reports and fixes"),
    ("feature", "#28a745", "New features and enhancements"),
    ("documentation", "#17a2b8", "Documentation updates"),
    ("urgent", "#ffc107", "High priority items"),
    ("backend", "#6f42c1", "Backend development"),
    ("frontend", "#e83e8c", "Frontend development"),
    ("api", "#fd7e14", "API related changes"),
    ("security", "#6c757d", "Security related items"),
]


def clamp_confidence(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def normalize_tag_name(name: str) -> str:
    return " ".join(name.split()).lower()


class TagAssociator:
    def get_or_create_tag(
        self,
        session: Session,
        name: str,
        color: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tag:
        tag_name = normalize_tag_name(name)
        if not tag_name:
            raise ValueError("Tag name must not be empty")

        tag = session.execute(select(Tag).where(Tag.name == tag_name)).scalar_one_or_none()
        if tag is not None:
            return tag

        tag = Tag(name=tag_name, description=description)
        if color:
            tag.color = color
        try:
            with session.begin_nested():
                session.add(tag)
                session.flush()
        except IntegrityError:
            # Created concurrently by another job.
            return session.execute(select(Tag).where(Tag.name == tag_name)).scalar_one()
        return tag

    def associate(
        self,
        session: Session,
        item_id: uuid.UUID,
        candidates: Iterable[tuple[str, float]],
    ) -> list[KnowledgeItemTag]:
        """Merge (tag name, confidence) candidates into the item's tags."""
        merged: dict[str, float] = {}
        for name, confidence in candidates:
            tag_name = normalize_tag_name(name)
            if not tag_name:
                continue
            score = clamp_confidence(confidence)
            merged[tag_name] = max(score, merged.get(tag_name, 0.0))

        links = []
        for tag_name, score in merged.items():
            tag = self.get_or_create_tag(session, tag_name)
            link = session.get(KnowledgeItemTag, (item_id, tag.id))
            if link is None:
                link = KnowledgeItemTag(
                    knowledge_item_id=item_id,
                    tag_id=tag.id,
                    confidence_score=score,
                    assigned_at=utcnow(),
                )
                session.add(link)
            elif score > link.confidence_score:
                link.confidence_score = score
                link.assigned_at = utcnow()
            links.append(link)
        session.flush()
        return links

    def tags_for_item(self, session: Session, item_id: uuid.UUID) -> dict[str, float]:
        rows = session.execute(
            select(Tag.name, KnowledgeItemTag.confidence_score)
            .join(KnowledgeItemTag, KnowledgeItemTag.tag_id == Tag.id)
            .where(KnowledgeItemTag.knowledge_item_id == item_id)
            .order_by(Tag.name)
        )
        return {name: confidence for name, confidence in rows}


def seed_default_tags(session: Session) -> int:
    """Insert the stock tags if missing; returns how many were created."""
    existing = set(session.execute(select(Tag.name)).scalars().all())
    created = 0
    for name, color, description in DEFAULT_TAGS:
        if name in existing:
            continue
        session.add(Tag(name=name, color=color, description=description))
        created += 1
    session.flush()
    if created:
        logger.info("default_tags_seeded", count=created)
    return created
