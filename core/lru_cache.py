import threading
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional


def is_cache_valid(cache_timestamp: Optional[float], current_timestamp: Optional[float]) -> bool:
    """A cached value is valid iff it is at least as new as its source.

    Equal timestamps count as valid.  A missing cache timestamp is never valid;
    a missing source timestamp cannot invalidate anything.
    """
    if cache_timestamp is None:
        return False
    if current_timestamp is None:
        return True
    return cache_timestamp >= current_timestamp


class LRUCache:
    """Bounded mapping that evicts the least-recently-touched key.

    ``get`` and ``put`` both count as a touch.  Exposes ``clear()`` so it can be
    registered with the CleanupManager.
    """

    def __init__(self, max_size: int = 128):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._data: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                self.misses += 1
                return default
            self._data.move_to_end(key)
            self.hits += 1
            return self._data[key]

    def put(self, key: Hashable, value: Any) -> Optional[Hashable]:
        """Insert or refresh *key*.  Returns the evicted key, if any."""
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
                self._data[key] = value
                return None
            self._data[key] = value
            if len(self._data) > self.max_size:
                evicted, _ = self._data.popitem(last=False)
                return evicted
            return None

    def pop(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._data.pop(key, default)

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._data if predicate(k)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def keys(self):
        with self._lock:
            return list(self._data.keys())

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
