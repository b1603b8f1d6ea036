# classes/idempotency_cache.py

import threading
from typing import Optional, Set, Tuple

EventKey = Tuple[str, str, str]


def event_key(event_id, resource_type, action) -> Optional[EventKey]:
    """
    Build the (event id, resource type, action) key for a provider event.
    Events without an id cannot be deduplicated and get no key.
    """
    if not event_id:
        return None
    return (str(event_id), str(resource_type or ""), str(action or ""))


class IdempotencyCache:
    """
    Process-local cache of webhook events already applied.

    - No TTL, no persistence: a restart forgets every key.
    - Only guards against retried deliveries within one process lifetime;
      the document writes themselves are upserts by provider id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: Set[EventKey] = set()

    def seen(self, key: Optional[EventKey]) -> bool:
        if key is None:
            return False
        with self._lock:
            return key in self._keys

    def add(self, key: Optional[EventKey]) -> None:
        if key is None:
            return
        with self._lock:
            self._keys.add(key)


# Global, process-local singleton
IDEMPOTENCY_CACHE = IdempotencyCache()
