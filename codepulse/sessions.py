"""Gap-based windowing of heartbeats into coding sessions."""

import math
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

UNKNOWN_PROJECT = 'unknown'


@dataclass(frozen=True)
class CodingSession:
    """A contiguous block of activity for one user and project.

    Times are epoch seconds; ``duration_seconds`` is the ceiling of
    ``end_time - start_time``.
    """

    user_id: str
    project_id: Optional[int]
    start_time: float
    end_time: float
    duration_seconds: int
    branch: Optional[str] = None
    languages: FrozenSet[str] = field(default_factory=frozenset)
    heartbeat_count: int = 0


class SessionReconstructor:
    """Split heartbeats into sessions wherever the gap exceeds the timeout.

    A gap equal to the timeout keeps both heartbeats in one session. Sessions
    shorter than ``min_duration`` are dropped as noise.
    """

    DEFAULT_TIMEOUT = 900
    DEFAULT_MIN_DURATION = 60

    def __init__(self, timeout=DEFAULT_TIMEOUT, min_duration=DEFAULT_MIN_DURATION):
        self.timeout = timeout
        self.min_duration = min_duration

    def reconstruct(self, heartbeats) -> List[CodingSession]:
        sessions, _ = self.close_windows(heartbeats)
        return sessions

    def close_windows(self, heartbeats, hold_open=False, idle_before=None):
        """Window heartbeats into sessions. Returns (sessions, closed_heartbeats).

        ``closed_heartbeats`` are those whose window was decided, including
        windows dropped as too short. With ``hold_open`` the last window of
        each partition is left out of both lists because more heartbeats may
        still extend it. With ``idle_before`` (epoch seconds) the last window
        is left out only while its final heartbeat is not older than that.
        """
        sessions = []
        closed = []
        for group in self.partition(heartbeats).values():
            windows = list(self.split(group))
            if hold_open:
                windows = windows[:-1]
            elif idle_before is not None and windows[-1][-1].time >= idle_before:
                windows = windows[:-1]
            for window in windows:
                closed.extend(window)
                session = self._build(window)
                if session.duration_seconds >= self.min_duration:
                    sessions.append(session)
        return sessions, closed

    @staticmethod
    def partition(heartbeats):
        """Group by (user_id, project), keeping first-seen order.

        The project is the stored project_id, or the project name for records
        not yet stored, or 'unknown'.
        """
        groups = {}
        for hb in heartbeats:
            if hb.project_id is not None:
                project_key = hb.project_id
            else:
                project_key = hb.project or UNKNOWN_PROJECT
            groups.setdefault((hb.user_id, project_key), []).append(hb)
        return groups

    def split(self, heartbeats):
        """Yield time-sorted windows of one partition."""
        ordered = sorted(heartbeats, key=lambda hb: hb.time)
        if not ordered:
            return

        window = [ordered[0]]
        for previous, current in zip(ordered, ordered[1:]):
            if current.time - previous.time > self.timeout:
                yield window
                window = []
            window.append(current)
        yield window

    @staticmethod
    def _build(window):
        start = min(hb.time for hb in window)
        end = max(hb.time for hb in window)
        languages = frozenset(hb.language for hb in window if hb.language)
        last = window[-1]
        return CodingSession(
            user_id=last.user_id,
            project_id=last.project_id,
            start_time=start,
            end_time=end,
            duration_seconds=int(math.ceil(end - start)),
            branch=last.branch,
            languages=languages,
            heartbeat_count=len(window),
        )
