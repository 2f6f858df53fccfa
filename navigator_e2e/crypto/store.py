"""
Session Key Store — in-memory mapping of session id to symmetric key.

Keys are only ever looked up by session id. Expiry is enforced lazily on
``get()`` and, optionally, by a periodic sweep task running on the event loop.

Keys live only in the memory of the process that performed the handshake.
A horizontally scaled deployment needs sticky routing, or a subclass that
backs ``put`` / ``get`` / ``delete`` with a shared store.

Security Note:
    Never log key material. Only log session ids and counts.
"""
import time
import asyncio
import logging
import threading
from typing import Callable, NamedTuple, Optional

logger = logging.getLogger("navigator.e2e")


class _Entry(NamedTuple):
    key: bytes
    expires_at: float


class SessionKeyStore:
    """Concurrency-safe session key map with TTL.

    Writes are serialized with a lock; reads are a single dict lookup and
    never wait on writers. Concurrent ``put`` for the same session id: last
    write wins.
    """

    def __init__(
        self,
        ttl: int = 86400,
        sweep_interval: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._keys: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def ttl(self) -> int:
        return self._ttl

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, session_id: object) -> bool:
        return self.get(str(session_id)) is not None

    def put(self, session_id: str, key: bytes, ttl: Optional[int] = None) -> None:
        """Install (or overwrite) the key for a session."""
        ttl = self._ttl if ttl is None else ttl
        entry = _Entry(key, self._clock() + ttl)
        with self._lock:
            self._keys[session_id] = entry

    def get(self, session_id: str) -> Optional[bytes]:
        """Return the key for a session, or None if absent or expired."""
        entry = self._keys.get(session_id)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._evict(session_id, entry)
            return None
        return entry.key

    def delete(self, session_id: str) -> bool:
        """Remove a session key (logout). Returns True if one was present."""
        with self._lock:
            return self._keys.pop(session_id, None) is not None

    def _evict(self, session_id: str, entry: _Entry) -> None:
        with self._lock:
            # a rotation may have replaced the entry since it was read
            if self._keys.get(session_id) is entry:
                del self._keys[session_id]
                logger.debug("E2E session key expired: session=%s", session_id)

    def sweep(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of evicted entries.
        """
        now = self._clock()
        with self._lock:
            stale = [
                sid for sid, entry in self._keys.items()
                if now >= entry.expires_at
            ]
            for sid in stale:
                del self._keys[sid]
        if stale:
            logger.debug("E2E key sweep evicted %d session key(s)", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep task (no-op if interval is 0)."""
        if self._sweep_interval <= 0 or self._sweeper is not None:
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_loop()
        )

    async def stop(self) -> None:
        """Cancel the sweep task."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
