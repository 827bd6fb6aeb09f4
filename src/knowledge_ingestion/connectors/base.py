"""
Connector contract.

A connector pulls a bounded batch of raw records from one external system
(GitHub, an issue tracker, a chat workspace, ...) starting after a
checkpoint. Connectors signal failures with the ConnectorError subclasses in
`knowledge_ingestion.errors`:

- AuthError: fatal, the job fails and the source is parked until reconfigured
- RateLimited: retryable with backoff, honours `retry_after` when given
- TransientIOError: retryable
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import BaseModel


@dataclass
class RawRecord:
    """One record as yielded by a connector, before reconciliation."""

    reference: str
    title: str
    content: str | None = None
    author: str | None = None
    kind: str = "document"
    url: str | None = None
    summary: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Candidate (tag name, confidence) pairs for the tag associator.
    tags: list[tuple[str, float]] = field(default_factory=list)
    # Restart point: pulling from this cursor resumes after this record.
    cursor: str | None = None


class Connector(ABC):
    """Base class for connectors."""

    def __init__(self, config: BaseModel) -> None:
        self.config = config

    @property
    @abstractmethod
    def kind(self) -> str:
        """The connector kind this class implements (e.g., 'github')."""

    @abstractmethod
    def pull(self, checkpoint: str | None) -> Iterable[RawRecord]:
        """Lazily yield records newer than `checkpoint`, finite per call."""
