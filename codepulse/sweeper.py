"""Background sweeper using Tornado PeriodicCallback."""

import asyncio
import logging

log = logging.getLogger('codepulse')


class PendingSweeper:
    """Periodically folds leftover unconsumed heartbeats into sessions and prunes old ones."""

    def __init__(self, service, interval_seconds=300, executor=None):
        self.service = service
        self.interval_seconds = interval_seconds
        self.executor = executor
        self.periodic_callback = None
        log.info(f"[PendingSweeper] Initialized with interval={self.interval_seconds}s")

    def start(self):
        """Start the periodic sweeper."""
        from tornado.ioloop import PeriodicCallback

        if self.periodic_callback is not None:
            log.info("[PendingSweeper] Already running")
            return

        interval_ms = self.interval_seconds * 1000
        self.periodic_callback = PeriodicCallback(self._sweep_tick, interval_ms)
        self.periodic_callback.start()
        log.info(f"[PendingSweeper] Started - sweeping every {self.interval_seconds}s")

    def stop(self):
        """Stop the periodic sweeper."""
        if self.periodic_callback is not None:
            self.periodic_callback.stop()
            self.periodic_callback = None
            log.info("[PendingSweeper] Stopped")

    def _sweep_tick(self):
        asyncio.ensure_future(self.sweep())

    def sweep_once(self):
        """Run one sweep (blocking). Returns (sessions_created, heartbeats_pruned)."""
        # rows younger than one interval may still belong to an in-flight ingest
        created = self.service.reprocess_pending(grace_seconds=self.interval_seconds)
        pruned = self.service.prune()
        return created, pruned

    async def sweep(self):
        try:
            loop = asyncio.get_event_loop()
            created, pruned = await loop.run_in_executor(self.executor, self.sweep_once)
            log.info(f"[PendingSweeper] Tick complete: {created} session(s) recovered, {pruned} heartbeat(s) pruned")
        except Exception as e:
            log.error(f"[PendingSweeper] Error during sweep: {e}")
