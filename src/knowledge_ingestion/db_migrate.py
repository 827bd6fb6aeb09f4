"""
Schema bootstrap for the ingestion service.

We intentionally avoid auto-creating tables on service startup in production.
Instead, run this as a Helm Job / init step:

    python -m knowledge_ingestion.db_migrate

Safe to run repeatedly: existing tables and tags are left alone.
"""

from __future__ import annotations

from knowledge_ingestion.config import load_settings
from knowledge_ingestion.db import db_session, get_engine, init_engine
from knowledge_ingestion.logging_setup import configure_logging, get_logger
from knowledge_ingestion.models import Base
from knowledge_ingestion.tagging import seed_default_tags

logger = get_logger(__name__)


def migrate() -> int:
    """Create missing tables and seed the stock tags; engine must be initialized."""
    Base.metadata.create_all(bind=get_engine())
    with db_session() as sess:
        return seed_default_tags(sess)


def main() -> None:
    configure_logging()
    s = load_settings()
    init_engine(s.db_url)
    seeded = migrate()
    logger.info("db_migrate_complete", tags_seeded=seeded)


if __name__ == "__main__":
    main()
