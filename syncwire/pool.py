"""Connection Pool - idle transport streams kept for keep-alive reuse.

One pool per agent. A single lock guards the table and is only held while the
table changes; sockets are closed after the lock is released.
"""

from __future__ import annotations

import logging
import threading

from syncwire.models import PoolKey
from syncwire.stream import TransportStream

logger = logging.getLogger(__name__)


class ConnectionPool:
    """Thread-safe cache of idle streams keyed by (scheme, host, port).

    Usage:
        pool = ConnectionPool(max_idle=100, max_idle_per_host=4)
        stream = pool.checkout(key)      # None on a miss
        ...
        pool.checkin(key, stream)        # only after a cleanly framed exchange
    """

    def __init__(self, max_idle: int = 100, max_idle_per_host: int = 4) -> None:
        self.max_idle = max_idle
        self.max_idle_per_host = max_idle_per_host
        # Insertion order doubles as eviction order (oldest first).
        self._idle: list[tuple[PoolKey, TransportStream]] = []
        self._lock = threading.Lock()

    def checkout(self, key: PoolKey) -> TransportStream | None:
        """Remove and return the most recently returned idle stream for ``key``."""
        with self._lock:
            for index in range(len(self._idle) - 1, -1, -1):
                if self._idle[index][0] == key:
                    _, stream = self._idle.pop(index)
                    break
            else:
                return None
        logger.debug("Reusing pooled connection %r", stream)
        return stream

    def checkin(self, key: PoolKey, stream: TransportStream) -> None:
        """Return an idle stream. Broken or non-reusable streams are closed instead."""
        if stream.closed:
            return
        if stream.broken or not stream.reusable:
            stream.close()
            return
        if stream.has_buffered_data:
            # The next response would be parsed from these leftover bytes.
            logger.debug("Discarding %r: unread bytes after the response", stream)
            stream.close()
            return

        evicted: list[TransportStream] = []
        with self._lock:
            self._idle.append((key, stream))
            same_key = [entry for entry in self._idle if entry[0] == key]
            for entry in same_key[: max(0, len(same_key) - self.max_idle_per_host)]:
                self._idle.remove(entry)
                evicted.append(entry[1])
            overflow = len(self._idle) - self.max_idle
            if overflow > 0:
                evicted.extend(s for _, s in self._idle[:overflow])
                del self._idle[:overflow]

        for old in evicted:
            logger.debug("Evicting idle connection %r", old)
            old.close()

    def idle_count(self, key: PoolKey | None = None) -> int:
        with self._lock:
            if key is None:
                return len(self._idle)
            return sum(1 for k, _ in self._idle if k == key)

    def close_all(self) -> None:
        """Close every idle stream."""
        with self._lock:
            streams = [s for _, s in self._idle]
            self._idle.clear()
        for stream in streams:
            stream.close()
