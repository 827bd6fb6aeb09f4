from knowledge_ingestion.search.indexer import (
    ZONE_WEIGHTS,
    SearchHit,
    SearchIndexer,
    posting_score,
)
from knowledge_ingestion.search.tokenizer import Tokenizer

__all__ = [
    "SearchHit",
    "SearchIndexer",
    "Tokenizer",
    "ZONE_WEIGHTS",
    "posting_score",
]
