"""Persist coding sessions and roll them up into daily summaries."""

import logging
from collections import defaultdict
from datetime import datetime, timezone

from .errors import AlreadyConsumed, StorageError

log = logging.getLogger('codepulse')


class SummaryAggregator:
    """Write sessions and increment the owning day's total.

    The day is the session start truncated in ``summary_tz``, a fixed
    reference zone rather than the user's local one.
    """

    def __init__(self, store, summary_tz=timezone.utc):
        self.store = store
        self.summary_tz = summary_tz

    def summary_date(self, session):
        return datetime.fromtimestamp(session.start_time, self.summary_tz).date()

    def commit(self, session):
        """Persist one session and increment its daily summary atomically."""
        with self.store.transaction() as db:
            self.store.add_session(db, session)
            self.store.increment_daily_summary(
                db, session.user_id, self.summary_date(session), session.duration_seconds)

    def commit_all(self, sessions, heartbeat_ids=()):
        """Claim the source heartbeats and persist their sessions in one transaction.

        Returns False without writing anything if another run consumed any of
        the heartbeats first.
        """
        heartbeat_ids = list(heartbeat_ids)
        totals = defaultdict(int)
        for session in sessions:
            totals[(session.user_id, self.summary_date(session))] += session.duration_seconds

        try:
            with self.store.transaction() as db:
                if heartbeat_ids:
                    claimed = self.store.claim_heartbeats(db, heartbeat_ids)
                    if claimed != len(heartbeat_ids):
                        raise AlreadyConsumed(
                            f"{len(heartbeat_ids) - claimed} of {len(heartbeat_ids)} heartbeats already consumed")
                for session in sessions:
                    self.store.add_session(db, session)
                # one increment per user/day keeps row contention short
                for (user_id, day), seconds in sorted(totals.items()):
                    self.store.increment_daily_summary(db, user_id, day, seconds)
        except AlreadyConsumed as e:
            log.warning(f"[SummaryAggregator] Skipped {len(sessions)} session(s): {e}")
            return False
        except StorageError as e:
            log.error(f"[SummaryAggregator] Failed to commit {len(sessions)} session(s): {e}")
            raise

        if sessions:
            log.info(
                f"[SummaryAggregator] Committed {len(sessions)} session(s), "
                f"{sum(totals.values())}s across {len(totals)} user-day(s)"
            )
        return True
