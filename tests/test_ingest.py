"""Functional tests for the ingestion pipeline - chunking, rollup, idempotency, failures."""

import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from codepulse.errors import InvalidCredential, PersistentStorageError, StorageError, TransientStorageError, ValidationError
from codepulse.model import CodepulseBase
from codepulse.sessions import CodingSession

from conftest import BASE_TIME, make_heartbeats

DAY = datetime.fromtimestamp(BASE_TIME, timezone.utc).date()


def _durations(store, user_id="alice"):
    return [row.duration for row in store.list_sessions(user_id)]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestScenarios:
    def test_single_session(self, service, store):
        """t=0,30,100,820 -> one 820s session."""
        accepted = service.ingest("token-alice", make_heartbeats([0, 30, 100, 820]))

        assert accepted == 4
        assert _durations(store) == [820]
        assert store.get_daily_total("alice", DAY) == 820

    def test_isolated_heartbeats_persist_nothing(self, service, store):
        """t=0,1000 -> both windows below 60s, no sessions, no summary."""
        service.ingest("token-alice", make_heartbeats([0, 1000]))

        assert _durations(store) == []
        assert store.get_daily_total("alice", DAY) == 0
        assert store.count_heartbeats("alice") == 2
        assert store.count_heartbeats("alice", consumed=False) == 0

    def test_two_sessions_summed(self, service, store):
        """t=0,50,70,2000,2010,2100 -> 70s + 100s, summary +170."""
        service.ingest("token-alice", make_heartbeats([0, 50, 70, 2000, 2010, 2100]))

        assert _durations(store) == [70, 100]
        assert store.get_daily_total("alice", DAY) == 170


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

class TestIdempotency:
    def test_reingest_adds_no_rows_and_no_time(self, service, store):
        batch = make_heartbeats([0, 50, 70, 2000, 2010, 2100])
        service.ingest("token-alice", batch)
        service.ingest("token-alice", batch)

        assert store.count_heartbeats("alice") == 6
        assert _durations(store) == [70, 100]
        assert store.get_daily_total("alice", DAY) == 170

    def test_summary_equals_sum_of_sessions_across_calls(self, service, store):
        service.ingest("token-alice", make_heartbeats([0, 120]))
        service.ingest("token-alice", make_heartbeats([3000, 3300]))
        service.ingest("token-alice", make_heartbeats([5000, 5090], entity="other.py"))

        durations = _durations(store)
        assert durations == [120, 300, 90]
        assert store.get_daily_total("alice", DAY) == sum(durations)

    def test_users_summarized_separately(self, service, store):
        service.ingest("token-alice", make_heartbeats([0, 100]))
        service.ingest("token-bob", make_heartbeats([0, 200]))

        assert store.get_daily_total("alice", DAY) == 100
        assert store.get_daily_total("bob", DAY) == 200


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

class TestChunking:
    def test_chunks_split_by_size(self, make_service):
        service = make_service(chunk_size=3)
        assert [len(c) for c in service.ingestor.chunks(list(range(7)))] == [3, 3, 1]

    def test_session_spanning_chunks_kept_whole(self, make_service, store):
        service = make_service(chunk_size=2)
        accepted = service.ingest("token-alice", make_heartbeats([0, 30, 100, 820]))

        assert accepted == 4
        assert _durations(store) == [820]
        assert store.count_heartbeats("alice", consumed=False) == 0

    def test_small_chunks_match_single_chunk(self, make_service, store):
        service = make_service(chunk_size=1)
        service.ingest("token-alice", make_heartbeats([0, 50, 70, 2000, 2010, 2100]))

        assert _durations(store) == [70, 100]
        assert store.get_daily_total("alice", DAY) == 170

    def test_projects_windowed_independently(self, service, store):
        batch = make_heartbeats([0, 200], project="api") + make_heartbeats([100, 160], project="web", entity="web.ts")
        service.ingest("token-alice", batch)

        assert sorted(_durations(store)) == [60, 200]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    def test_empty_batch_rejected(self, service, verifier):
        with pytest.raises(ValidationError):
            service.ingest("token-alice", [])
        assert verifier.calls == 0

    def test_invalid_credential_writes_nothing(self, service, store):
        with pytest.raises(InvalidCredential):
            service.ingest("token-mallory", make_heartbeats([0, 100]))
        assert store.count_heartbeats() == 0

    def test_credential_cached_across_batches(self, make_service, verifier):
        service = make_service(chunk_size=2)
        service.ingest("token-alice", make_heartbeats([0, 10, 20, 30, 40]))
        service.ingest("token-alice", make_heartbeats([50, 60]))
        assert verifier.calls == 1

    def test_chunk_write_failure_keeps_earlier_chunks(self, make_service, store):
        service = make_service(chunk_size=2)
        original = store.insert_heartbeats
        calls = []

        def flaky_insert(chunk):
            calls.append(len(chunk))
            if len(calls) == 2:
                raise TransientStorageError("database is locked")
            return original(chunk)

        with patch.object(store, "insert_heartbeats", side_effect=flaky_insert):
            with pytest.raises(TransientStorageError):
                service.ingest("token-alice", make_heartbeats([0, 10, 20, 30, 40, 50]))

        assert calls == [2, 2]
        assert store.count_heartbeats("alice") == 2

    def test_rollup_failure_surfaces_and_keeps_raw_rows(self, service, store):
        with patch.object(service.aggregator, "commit_all",
                          side_effect=PersistentStorageError("disk full")):
            with pytest.raises(StorageError):
                service.ingest("token-alice", make_heartbeats([0, 100]))

        assert store.count_heartbeats("alice") == 2
        assert store.count_heartbeats("alice", consumed=False) == 2
        assert _durations(store) == []


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def _totals_by_day(store, user_id):
    totals = defaultdict(int)
    for row in store.list_sessions(user_id):
        totals[row.start_time.date()] += row.duration
    return totals


class TestConcurrentIngest:
    def test_parallel_batches_on_fresh_store(self, service, store):
        """Parallel batches for two users, spanning midnight, keep summaries equal to session sums."""
        batches = [
            (token, make_heartbeats([i * 700 + k * 40 for k in range(5)], entity=f"file{i}.py"))
            for i in range(12)
            for token in ("token-alice", "token-bob")
        ]

        with ThreadPoolExecutor(max_workers=8) as pool:
            accepted = list(pool.map(lambda item: service.ingest(*item), batches))
        assert accepted == [5] * len(batches)

        service.reprocess_pending()

        for user_id in ("alice", "bob"):
            assert store.count_heartbeats(user_id) == 60
            assert store.count_heartbeats(user_id, consumed=False) == 0
            by_day = _totals_by_day(store, user_id)
            for day, seconds in by_day.items():
                assert store.get_daily_total(user_id, day) == seconds
            touched = [DAY, DAY + timedelta(days=1)]
            assert sum(store.get_daily_total(user_id, day) for day in touched) == sum(by_day.values())
            assert sum(by_day.values()) > 0

    def test_schema_created_once_under_parallel_first_use(self, store):
        metadata = CodepulseBase.metadata
        original = metadata.create_all
        calls = []

        def slow_create_all(*args, **kwargs):
            calls.append(threading.current_thread().name)
            time.sleep(0.05)
            return original(*args, **kwargs)

        start = threading.Barrier(6)

        def first_use():
            start.wait()
            return store.count_heartbeats()

        with patch.object(metadata, "create_all", side_effect=slow_create_all):
            with ThreadPoolExecutor(max_workers=6) as pool:
                counts = list(pool.map(lambda _: first_use(), range(6)))

        assert counts == [0] * 6
        assert len(calls) == 1


# ---------------------------------------------------------------------------
# Open sessions across requests
# ---------------------------------------------------------------------------

class TestIdleClose:
    def test_single_heartbeat_requests_form_one_session(self, service, store):
        now = float(int(time.time()))
        service.ingestor.clock = lambda: now
        for offset in range(-600, 1, 120):
            service.ingest("token-alice", make_heartbeats([offset], base=now))

        assert _durations(store) == []
        assert store.count_heartbeats("alice", consumed=False) == 6

        service.ingestor.clock = lambda: now + 901
        assert service.reprocess_pending() == 1

        day = datetime.fromtimestamp(now - 600, timezone.utc).date()
        assert _durations(store) == [600]
        assert store.get_daily_total("alice", day) == 600
        assert store.count_heartbeats("alice", consumed=False) == 0

    def test_recent_window_closes_on_next_idle_batch(self, service, store):
        now = float(int(time.time()))
        service.ingestor.clock = lambda: now
        service.ingest("token-alice", make_heartbeats([-300, 0], base=now))
        assert _durations(store) == []

        # a later batch past the timeout closes the earlier window and holds its own
        service.ingestor.clock = lambda: now + 2500
        service.ingest("token-alice", make_heartbeats([2000], base=now))

        assert _durations(store) == [300]
        assert store.count_heartbeats("alice", consumed=False) == 1


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

class TestReprocess:
    def test_reprocess_recovers_interrupted_rollup(self, service, store):
        with patch.object(service.aggregator, "commit_all",
                          side_effect=PersistentStorageError("disk full")):
            with pytest.raises(StorageError):
                service.ingest("token-alice", make_heartbeats([0, 100, 400]))

        assert service.reprocess_pending() == 1
        assert _durations(store) == [400]
        assert store.get_daily_total("alice", DAY) == 400

    def test_reprocess_is_idempotent(self, service, store):
        service.ingest("token-alice", make_heartbeats([0, 100]))
        assert service.reprocess_pending() == 0
        assert store.get_daily_total("alice", DAY) == 100

    def test_grace_period_leaves_fresh_rows(self, service, store):
        store.insert_heartbeats([hb.stamped("alice") for hb in make_heartbeats([0, 100])])

        assert service.reprocess_pending(grace_seconds=3600) == 0
        assert store.count_heartbeats("alice", consumed=False) == 2

    def test_concurrent_claim_skips_commit(self, service, store):
        store.insert_heartbeats([hb.stamped("alice") for hb in make_heartbeats([0, 100])])
        pending = store.pending_heartbeats("alice")
        ids = [row_id for row_id, _ in pending]
        sessions = service.reconstructor.reconstruct([hb for _, hb in pending])

        assert service.aggregator.commit_all(sessions, ids) is True
        assert service.aggregator.commit_all(sessions, ids) is False
        assert store.get_daily_total("alice", DAY) == 100


# ---------------------------------------------------------------------------
# Summary day boundaries
# ---------------------------------------------------------------------------

class TestSummaryDay:
    def test_commit_single_session(self, service, store):
        session = CodingSession(
            user_id="alice", project_id=None, start_time=BASE_TIME, end_time=BASE_TIME + 90,
            duration_seconds=90,
        )
        service.aggregator.commit(session)
        service.aggregator.commit(session)

        assert len(store.list_sessions("alice")) == 2
        assert store.get_daily_total("alice", DAY) == 180

    def test_session_counted_on_start_day(self, service, store):
        midnight = datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp()
        service.ingest("token-alice", make_heartbeats([-120, 0, 300], base=midnight))

        assert store.get_daily_total("alice", datetime(2024, 2, 29).date()) == 420
        assert store.get_daily_total("alice", datetime(2024, 3, 1).date()) == 0

    def test_reference_timezone(self, make_service, store):
        from zoneinfo import ZoneInfo

        service = make_service(summary_tz=ZoneInfo("Asia/Tokyo"))
        midnight_utc = datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp()
        service.ingest("token-alice", make_heartbeats([-120, 0], base=midnight_utc))

        # 23:58 UTC is 08:58 next day in Tokyo
        assert store.get_daily_total("alice", datetime(2024, 3, 1).date()) == 120
