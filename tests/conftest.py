import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Ensure `src/` is importable in tests without installing the package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from knowledge_ingestion.connectors import Connector, RawRecord, default_registry
from knowledge_ingestion.db import get_engine, init_engine
from knowledge_ingestion.job_runner import JobRunner
from knowledge_ingestion.models import Base
from knowledge_ingestion.source_registry import SourceRegistry

GITHUB_CONFIG = {"repo_owner": "acme", "repo_name": "platform"}


def record(reference: str, title: str | None = None, **fields) -> RawRecord:
    fields.setdefault("content", f"content for {reference}")
    fields.setdefault("kind", "commit")
    fields.setdefault("cursor", reference)
    return RawRecord(reference=reference, title=title or f"Commit {reference}", **fields)


class ScriptedFeed:
    """What a scripted connector yields.

    `script` entries are records (yielded), exceptions (raised once, then
    dropped so a restarted pull gets past them) or callables (invoked between
    records, for side effects such as cancelling the job).
    """

    def __init__(self) -> None:
        self.script: list = []
        self.pulls: list = []

    def connector(self, config) -> "ScriptedConnector":
        return ScriptedConnector(config, self)


class ScriptedConnector(Connector):
    kind = "github"

    def __init__(self, config, feed: ScriptedFeed) -> None:
        super().__init__(config)
        self.feed = feed

    def pull(self, checkpoint):
        self.feed.pulls.append(checkpoint)
        start = 0
        for pos, entry in enumerate(self.feed.script):
            if isinstance(entry, RawRecord) and entry.cursor == checkpoint:
                start = pos + 1
        index = start
        while index < len(self.feed.script):
            entry = self.feed.script[index]
            if isinstance(entry, BaseException):
                del self.feed.script[index]
                raise entry
            if callable(entry) and not isinstance(entry, RawRecord):
                entry()
            else:
                yield entry
            index += 1


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def db(tmp_path: Path):
    init_engine(f"sqlite+pysqlite:///{tmp_path / 'ingestion-test.sqlite'}")
    Base.metadata.create_all(bind=get_engine())
    yield
    get_engine().dispose()


@pytest.fixture()
def feed() -> ScriptedFeed:
    return ScriptedFeed()


@pytest.fixture()
def connectors(feed: ScriptedFeed):
    registry = default_registry()
    registry.register_factory("github", feed.connector)
    return registry


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeps() -> list:
    return []


@pytest.fixture()
def runner(db, connectors, clock, sleeps) -> JobRunner:
    return JobRunner(
        connectors=connectors,
        max_duration_seconds=3600,
        retry_attempts=3,
        retry_base_seconds=1.0,
        retry_max_seconds=30.0,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture()
def source_registry(connectors) -> SourceRegistry:
    return SourceRegistry(connectors)
