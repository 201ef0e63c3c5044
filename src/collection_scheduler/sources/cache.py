import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:
    """
    In-process response cache whose entries expire by age, not by count.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def _is_valid(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self.ttl

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if not self._is_valid(stored_at):
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def clear_expired(self) -> int:
        expired = [key for key, (stored_at, _) in self._entries.items() if not self._is_valid(stored_at)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
