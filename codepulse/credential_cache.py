"""TTL cache mapping credentials to resolved user ids."""

import threading
import time


class CredentialCache:
    """In-process credential -> user id cache with per-entry expiry.

    Owned by one ingestion service; nothing here is durable, a miss simply
    falls back to the verifier.
    """

    DEFAULT_TTL_SECONDS = 3600

    def __init__(self, ttl_seconds=DEFAULT_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def put(self, credential, user_id):
        """Store a user id for the credential with the current timestamp."""
        with self._lock:
            self._entries[credential] = (user_id, self._clock())

    def get(self, credential):
        """Get the cached user id if not expired."""
        with self._lock:
            entry = self._entries.get(credential)
            if entry is None:
                return None
            user_id, stored_at = entry
            if self._clock() - stored_at < self.ttl_seconds:
                return user_id
            del self._entries[credential]
            return None

    def invalidate(self, credential):
        """Remove a credential from the cache."""
        with self._lock:
            self._entries.pop(credential, None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)
