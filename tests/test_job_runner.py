import threading
import uuid
from datetime import timedelta

import pytest
from conftest import GITHUB_CONFIG, record
from sqlalchemy import func, select

from knowledge_ingestion.connectors import default_registry
from knowledge_ingestion.db import db_session
from knowledge_ingestion.errors import (
    AuthError,
    JobNotFound,
    RateLimited,
    SourceNotFound,
    TransientIOError,
)
from knowledge_ingestion.job_runner import JobRunner
from knowledge_ingestion.models import (
    KnowledgeItem,
    KnowledgeSource,
    SearchPosting,
    SyncJob,
    Tag,
)


@pytest.fixture()
def source_id(runner):
    with db_session() as s:
        return runner.sources.register(
            s, name="platform", kind="github", configuration=GITHUB_CONFIG
        )


def _sync(runner, source_id, trigger="manual"):
    job_id = runner.start_job(source_id, trigger=trigger)
    assert job_id is not None
    return runner.run_job(job_id)


def _source(source_id) -> KnowledgeSource:
    with db_session() as s:
        return s.get(KnowledgeSource, source_id)


def _item_count() -> int:
    with db_session() as s:
        return s.execute(select(func.count()).select_from(KnowledgeItem)).scalar_one()


def test_sync_creates_items_and_advances_checkpoint(runner, feed, source_id, clock):
    feed.script = [record("c1", "Fix login crash"), record("c2"), record("c3")]
    summary = _sync(runner, source_id)

    assert summary.status == "completed"
    assert summary.trigger == "manual"
    assert (summary.items_processed, summary.items_created, summary.items_updated) == (3, 3, 0)
    assert summary.started_at == clock.now
    assert summary.completed_at == clock.now
    assert _item_count() == 3

    src = _source(source_id)
    assert src.checkpoint == "c3"
    assert src.last_sync_at == clock.now
    assert src.active_job_id is None
    with db_session() as s:
        assert [h.title for h in runner.items.indexer.search(s, "login")] == [
            "Fix login crash"
        ]


def test_second_sync_is_idempotent(runner, feed, source_id):
    records = [record("c1"), record("c2"), record("c3")]
    feed.script = list(records)
    _sync(runner, source_id)
    with db_session() as s:
        s.get(KnowledgeSource, source_id).checkpoint = None

    feed.script = list(records)
    summary = _sync(runner, source_id)
    assert summary.status == "completed"
    assert (summary.items_processed, summary.items_created, summary.items_updated) == (3, 0, 0)
    assert _item_count() == 3


def test_changed_record_counts_as_update(runner, feed, source_id):
    feed.script = [record("c1", "Old title")]
    _sync(runner, source_id)
    with db_session() as s:
        s.get(KnowledgeSource, source_id).checkpoint = None

    feed.script = [record("c1", "New title")]
    summary = _sync(runner, source_id)
    assert (summary.items_created, summary.items_updated) == (0, 1)


def test_pull_starts_from_stored_checkpoint(runner, feed, source_id):
    with db_session() as s:
        runner.sources.mark_synced(s, source_id, runner.clock(), checkpoint="c1")
    feed.script = [record("c1"), record("c2")]
    summary = _sync(runner, source_id)
    assert feed.pulls == ["c1"]
    assert summary.items_processed == 1


def test_auth_error_mid_stream_keeps_committed_items(runner, feed, source_id):
    feed.script = [
        record("c1"),
        record("c2"),
        AuthError("token revoked"),
        record("c3"),
        record("c4"),
        record("c5"),
    ]
    summary = _sync(runner, source_id)

    assert summary.status == "failed"
    assert summary.error_kind == "auth"
    assert summary.error_message == "token revoked"
    assert summary.items_processed == 2
    assert _item_count() == 2

    src = _source(source_id)
    assert src.checkpoint is None
    assert src.last_sync_at is None
    assert src.needs_reconfiguration is True
    assert src.active_job_id is None
    with db_session() as s:
        assert runner.sources.list_due(s) == []


def test_rate_limit_restarts_pull_from_last_cursor(runner, feed, source_id, sleeps):
    feed.script = [record("c1"), record("c2"), RateLimited(retry_after=10), record("c3")]
    summary = _sync(runner, source_id)

    assert summary.status == "completed"
    assert summary.items_processed == 3
    assert feed.pulls == [None, "c2"]
    assert sleeps == [10]
    assert _source(source_id).checkpoint == "c3"


def test_retry_after_is_capped_by_max_backoff(runner, feed, source_id, sleeps):
    feed.script = [RateLimited(retry_after=600), record("c1")]
    assert _sync(runner, source_id).status == "completed"
    assert sleeps == [30]


def test_transient_errors_back_off_exponentially(runner, feed, source_id, sleeps):
    feed.script = [TransientIOError("reset"), TransientIOError("reset"), record("c1")]
    summary = _sync(runner, source_id)
    assert summary.status == "completed"
    assert sleeps == [1, 2]


def test_exhausted_retries_fail_job_and_leave_source_due(runner, feed, source_id, sleeps):
    feed.script = [
        record("c1"),
        TransientIOError("reset"),
        TransientIOError("reset"),
        TransientIOError("reset"),
        record("c2"),
    ]
    summary = _sync(runner, source_id)

    assert summary.status == "failed"
    assert summary.error_kind == "transient"
    assert summary.items_processed == 1
    assert len(sleeps) == 2

    src = _source(source_id)
    assert src.checkpoint is None
    assert src.consecutive_failures == 1
    assert src.needs_reconfiguration is False
    with db_session() as s:
        assert runner.sources.list_due(s, runner.clock()) == [source_id]


def test_unexpected_exception_fails_job(runner, feed, source_id):
    feed.script = [record("c1"), RuntimeError("boom")]
    summary = _sync(runner, source_id)
    assert summary.status == "failed"
    assert summary.error_kind == "internal"
    assert summary.error_message == "boom"
    assert _source(source_id).active_job_id is None


def test_missing_connector_factory_fails_with_configuration_error(db, clock, sleeps):
    runner = JobRunner(connectors=default_registry(), clock=clock, sleep=sleeps.append)
    with db_session() as s:
        sid = runner.sources.register(
            s, name="wiki", kind="github", configuration=GITHUB_CONFIG
        )
    summary = _sync(runner, sid)
    assert summary.status == "failed"
    assert summary.error_kind == "configuration"


def test_record_tags_are_merged(runner, feed, source_id):
    feed.script = [record("c1", "SQL injection", tags=[("Security", 0.7), ("bug", 0.4)])]
    _sync(runner, source_id)
    with db_session() as s:
        item = s.execute(select(KnowledgeItem)).scalar_one()
        assert runner.tagger.tags_for_item(s, item.id) == {"bug": 0.4, "security": 0.7}


def test_only_one_job_per_source(runner, feed, source_id):
    first = runner.start_job(source_id)
    assert first is not None
    assert runner.start_job(source_id) is None

    feed.script = [record("c1")]
    runner.run_job(first)
    assert runner.start_job(source_id) is not None


def test_concurrent_starts_claim_slot_once(runner, source_id):
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def start():
        barrier.wait()
        job_id = runner.start_job(source_id)
        with lock:
            results.append(job_id)

    threads = [threading.Thread(target=start) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    claimed = [job_id for job_id in results if job_id is not None]
    assert len(claimed) == 1
    with db_session() as s:
        assert s.execute(select(func.count()).select_from(SyncJob)).scalar_one() == 1
        assert s.get(KnowledgeSource, source_id).active_job_id == claimed[0]


def test_start_job_for_unknown_source_raises(runner):
    with pytest.raises(SourceNotFound):
        runner.start_job(uuid.uuid4())


def test_run_job_is_not_repeatable(runner, feed, source_id):
    feed.script = [record("c1")]
    summary = _sync(runner, source_id)
    again = runner.run_job(summary.id)
    assert again.status == "completed"
    assert again.items_processed == 1
    assert len(feed.pulls) == 1


def test_cancel_pending_job(runner, feed, source_id):
    job_id = runner.start_job(source_id)
    summary = runner.cancel_job(job_id)
    assert summary.status == "failed"
    assert summary.error_kind == "cancelled"

    src = _source(source_id)
    assert src.active_job_id is None
    assert src.consecutive_failures == 0

    assert runner.run_job(job_id).status == "failed"
    assert feed.pulls == []


def test_cancel_running_job_stops_between_records(runner, feed, source_id):
    job_id = runner.start_job(source_id)
    feed.script = [
        record("c1"),
        lambda: runner.cancel_job(job_id),
        record("c2"),
        record("c3"),
    ]
    summary = runner.run_job(job_id)

    assert summary.status == "failed"
    assert summary.error_kind == "cancelled"
    assert summary.items_processed == 1
    assert _item_count() == 1
    src = _source(source_id)
    assert src.checkpoint is None
    assert src.active_job_id is None


def test_cancel_finished_job_is_a_noop(runner, feed, source_id):
    feed.script = [record("c1")]
    summary = _sync(runner, source_id)
    assert runner.cancel_job(summary.id).status == "completed"


def test_job_exceeding_max_duration_times_out(runner, feed, source_id, clock):
    feed.script = [record("c1"), lambda: clock.advance(hours=2), record("c2")]
    summary = _sync(runner, source_id)

    assert summary.status == "failed"
    assert summary.error_kind == "timeout"
    assert summary.items_processed == 1
    assert _source(source_id).active_job_id is None


def test_reaper_fails_stale_pending_job(runner, source_id, clock):
    job_id = runner.start_job(source_id)
    assert runner.reap_stuck_jobs(clock.now + timedelta(minutes=30)) == []

    assert runner.reap_stuck_jobs(clock.now + timedelta(hours=2)) == [job_id]
    summary = runner.get_job(job_id)
    assert summary.status == "failed"
    assert summary.error_kind == "timeout"
    assert _source(source_id).active_job_id is None


def test_reaper_fails_stuck_running_job(runner, source_id, clock):
    job_id = runner.start_job(source_id)
    with db_session() as s:
        job = s.get(SyncJob, job_id)
        job.status = "running"
        job.started_at = clock.now
    assert runner.reap_stuck_jobs(clock.now + timedelta(hours=2)) == [job_id]
    assert runner.get_job(job_id).status == "failed"
    assert runner.start_job(source_id) is not None


def test_reaper_releases_orphaned_slot(runner, source_id, clock):
    with db_session() as s:
        runner.sources.claim_job_slot(s, source_id, uuid.uuid4(), clock.now)
    assert runner.start_job(source_id) is None

    runner.reap_stuck_jobs(clock.now + timedelta(hours=2))
    assert _source(source_id).active_job_id is None
    assert runner.start_job(source_id) is not None


def test_list_jobs_newest_first(runner, feed, source_id, clock):
    feed.script = [record("c1")]
    first = _sync(runner, source_id)
    clock.advance(minutes=5)
    second = _sync(runner, source_id)

    jobs = runner.list_jobs(source_id)
    assert [j.id for j in jobs] == [second.id, first.id]
    assert runner.list_jobs(source_id, limit=1)[0].id == second.id


def test_get_unknown_job_raises(runner):
    with pytest.raises(JobNotFound):
        runner.get_job(uuid.uuid4())


def test_deleting_source_removes_items_jobs_and_postings(runner, feed, source_id):
    feed.script = [record("c1", "Fix login crash", tags=[("bug", 0.9)])]
    _sync(runner, source_id)
    with db_session() as s:
        runner.sources.delete(s, source_id)
    with db_session() as s:
        for model in (KnowledgeItem, SyncJob, SearchPosting):
            assert s.execute(select(func.count()).select_from(model)).scalar_one() == 0
        # Tags themselves are shared and survive.
        assert s.execute(select(Tag).where(Tag.name == "bug")).scalar_one()


def test_source_deleted_mid_run_ends_quietly(runner, feed, source_id):
    def delete_source():
        with db_session() as s:
            runner.sources.delete(s, source_id)

    job_id = runner.start_job(source_id)
    feed.script = [record("c1"), delete_source, record("c2")]

    assert runner.run_job(job_id) is None
    assert _item_count() == 0
    with pytest.raises(JobNotFound):
        runner.get_job(job_id)
