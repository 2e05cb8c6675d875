from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Dict, Iterator, Optional, Tuple

DEFAULT_MEMORY_CAPACITY = 200


class UserMemoryCache:
    """
    Bounded username -> last message map with FIFO eviction.

    - Keys are stored lowercased
    - Re-recording an existing user refreshes the text AND its position,
      so eviction always removes the user whose latest entry is oldest
    - A lock guards every operation for callers outside the event loop
    """

    def __init__(self, capacity: int = DEFAULT_MEMORY_CAPACITY):
        if capacity <= 0:
            raise ValueError("memory capacity must be positive")

        self.capacity = capacity
        self._entries: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()
        self._evictions = 0

    # --------------------------------------------------

    @staticmethod
    def _key(username: str) -> str:
        return (username or "").strip().lower()

    def put(self, username: str, text: str) -> Optional[Tuple[str, str]]:
        """
        Record the latest message for a user.

        Returns the evicted (username, text) pair, if any.
        """
        key = self._key(username)
        if not key:
            return None

        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = text
            return self._evict_oldest_if_over_capacity()

    def get(self, username: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._entries.get(self._key(username), default)

    def pop(self, username: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._entries.pop(self._key(username), default)

    def evict_oldest_if_over_capacity(self) -> Optional[Tuple[str, str]]:
        with self._lock:
            return self._evict_oldest_if_over_capacity()

    def _evict_oldest_if_over_capacity(self) -> Optional[Tuple[str, str]]:
        if len(self._entries) <= self.capacity:
            return None
        evicted = self._entries.popitem(last=False)
        self._evictions += 1
        return evicted

    # --------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, username: object) -> bool:
        if not isinstance(username, str):
            return False
        return self._key(username) in self._entries

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._entries.keys()))

    def snapshot(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "evictions": self._evictions,
        }
