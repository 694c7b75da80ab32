"""Chunked heartbeat ingestion and the service object that owns the pipeline."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone

from .config import IngestConfig
from .credential_cache import CredentialCache
from .credentials import CredentialResolver, JwtVerifier
from .errors import StorageError, ValidationError
from .sessions import SessionReconstructor
from .store import HeartbeatStore
from .summary import SummaryAggregator

log = logging.getLogger('codepulse')


class BatchIngestor:
    """Persist heartbeats chunk by chunk and roll each chunk into sessions.

    Chunks are written in order on the calling thread. Once a chunk is
    durable its rollup is handed to a bounded pool, so it can overlap the
    write of the next chunk. Rollups of one batch run in chunk order and read
    heartbeats back from storage, never working on rows not yet committed.
    Every chunk but the last leaves each project's trailing window
    unconsumed so the next chunk can extend it. The last chunk closes a
    trailing window only once its final heartbeat is older than the session
    timeout; until then a later request may still extend it, and the sweeper
    closes it after it goes idle.
    """

    DEFAULT_CHUNK_SIZE = 1000

    def __init__(self, store, reconstructor, aggregator, chunk_size=DEFAULT_CHUNK_SIZE, max_workers=4,
                 clock=time.time):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.store = store
        self.reconstructor = reconstructor
        self.aggregator = aggregator
        self.chunk_size = chunk_size
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="session-rollup")

    def chunks(self, heartbeats):
        for i in range(0, len(heartbeats), self.chunk_size):
            yield heartbeats[i:i + self.chunk_size]

    def ingest(self, heartbeats):
        """Ingest user-stamped heartbeats. Returns the number accepted.

        A failed chunk write stops the remaining chunks; chunks already
        written stay written.
        """
        if not heartbeats:
            raise ValidationError("heartbeat batch is empty")

        chunks = list(self.chunks(heartbeats))
        accepted = 0
        futures = []
        try:
            for number, chunk in enumerate(chunks, 1):
                if any(f.done() and f.exception() is not None for f in futures):
                    log.warning(f"[BatchIngestor] Stopping before chunk {number}: earlier rollup failed")
                    break
                stored = self.store.insert_heartbeats(chunk)
                accepted += len(chunk)
                previous = futures[-1] if futures else None
                final = number == len(chunks)
                futures.append(self._executor.submit(self.reconstruct_chunk, stored, final, previous))
        except StorageError as e:
            log.error(f"[BatchIngestor] Chunk write failed after {accepted} heartbeat(s): {e}")
            self._settle(futures)
            raise

        failure = self._settle(futures)
        if failure is not None:
            raise failure

        log.info(f"[BatchIngestor] Accepted {accepted} heartbeat(s) in {len(futures)} chunk(s)")
        return accepted

    def _settle(self, futures):
        """Wait for all rollups. Returns the first failure, logging each."""
        if not futures:
            return None
        wait(futures)
        first = None
        for future in futures:
            error = future.exception()
            if error is not None:
                log.error(f"[BatchIngestor] Session rollup failed: {error}")
                if first is None:
                    first = error
        return first

    def reconstruct_chunk(self, chunk, final=True, previous=None):
        """Rebuild sessions from durable, unconsumed rows up to the chunk's last heartbeat.

        ``previous`` is the rollup of the preceding chunk of the same batch;
        it must finish first because it may hand over an open window.
        """
        if previous is not None:
            wait([previous])

        created = 0
        for user_id in sorted({hb.user_id for hb in chunk}):
            if final:
                pending = self.store.pending_heartbeats(user_id)
                created += self._rollup(pending, idle_before=self._idle_cutoff())
            else:
                end = max(hb.time for hb in chunk if hb.user_id == user_id)
                pending = self.store.pending_heartbeats(user_id, end=end)
                created += self._rollup(pending, hold_open=True)
        return created

    def reprocess_pending(self, grace_seconds=0):
        """Fold every unconsumed heartbeat into sessions.

        Recovers rows whose rollup was interrupted or skipped. Rows received in
        the last ``grace_seconds`` are left for the in-flight ingest.
        """
        received_before = None
        if grace_seconds > 0:
            received_before = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=grace_seconds)

        created = 0
        for user_id in self.store.pending_user_ids():
            pending = self.store.pending_heartbeats(user_id, received_before=received_before)
            created += self._rollup(pending, idle_before=self._idle_cutoff(grace_seconds))
        if created:
            log.info(f"[BatchIngestor] Reprocessed pending heartbeats into {created} session(s)")
        return created

    def _idle_cutoff(self, grace_seconds=0):
        """Epoch seconds before which a trailing heartbeat can no longer be extended.

        Rows received within the grace period are not read, so the cutoff
        moves back by the same amount.
        """
        return self.clock() - grace_seconds - self.reconstructor.timeout

    def _rollup(self, pending, hold_open=False, idle_before=None):
        if not pending:
            return 0
        # rows are unique on (user, entity, time) so records key their row ids
        row_ids = {hb: row_id for row_id, hb in pending}
        sessions, closed = self.reconstructor.close_windows(
            list(row_ids), hold_open=hold_open, idle_before=idle_before)
        if not closed:
            return 0
        if not self.aggregator.commit_all(sessions, [row_ids[hb] for hb in closed]):
            return 0
        return len(sessions)

    def close(self):
        self._executor.shutdown(wait=True)


class IngestService:
    """Owns the credential cache, store and ingestor for one process.

    Usage:
        service = IngestService(IngestConfig())
        accepted = service.ingest(credential, heartbeats)
        service.close()
    """

    def __init__(self, config=None, store=None, verifier=None, cache=None):
        self.config = config or IngestConfig()
        self.store = store or HeartbeatStore(self.config.db_url)
        if verifier is None:
            verifier = JwtVerifier(self.config.session_secret)
        self.cache = cache or CredentialCache(self.config.cache_ttl)
        self.resolver = CredentialResolver(verifier, self.cache, self.config.verifier_timeout)
        self.reconstructor = SessionReconstructor(self.config.session_timeout, self.config.min_session)
        self.aggregator = SummaryAggregator(self.store, self.config.summary_tz)
        self.ingestor = BatchIngestor(
            self.store,
            self.reconstructor,
            self.aggregator,
            chunk_size=self.config.chunk_size,
            max_workers=self.config.max_workers,
        )
        log.info(f"[IngestService] Config: {self.config.describe()}")

    def ingest(self, credential, heartbeats):
        """Resolve the credential once, stamp the batch and ingest it."""
        if not heartbeats:
            raise ValidationError("heartbeat batch is empty")
        user_id = self.resolver.resolve(credential)
        stamped = [hb.stamped(user_id) for hb in heartbeats]
        return self.ingestor.ingest(stamped)

    def reprocess_pending(self, grace_seconds=0):
        return self.ingestor.reprocess_pending(grace_seconds)

    def prune(self):
        return self.store.prune_consumed(self.config.retention_days)

    def status(self):
        return self.store.get_status()

    def close(self):
        self.ingestor.close()
        self.resolver.close()
        self.store.dispose()
