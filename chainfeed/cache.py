import logging
import time
from typing import Callable, Dict, Hashable, Iterable, Optional

from .models import CacheEntry, RawEvent

logger = logging.getLogger(__name__)


class ResponseCache:
    """TTL memo of adapter results keyed by (contract address, filter parameters).

    Entries are replaced wholesale on ``put``; an entry older than ``ttl`` is a
    miss. Force-refresh callers skip ``get`` and go straight to ``put``.
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("cache ttl must be > 0")
        self.ttl = float(ttl)
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}

    def get(self, key: Hashable) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.ttl:
            self._entries.pop(key, None)
            return None
        return entry

    def put(self, key: Hashable, events: Iterable[RawEvent]) -> CacheEntry:
        entry = CacheEntry(events=tuple(events), fetched_at=self._clock())
        self._entries[key] = entry
        logger.debug("cached %d events for %s", len(entry.events), key)
        return entry

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
