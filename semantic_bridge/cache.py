"""In-process response cache keyed by request identifier."""

import logging
from typing import Optional

from .generation import GenerationResponse

logger = logging.getLogger(__name__)


class ResponseCache:
    """
    Maps request identifier to its completed GenerationResponse.

    Last write wins for a repeated identifier, and the entry keeps its
    original position in enumeration order. With capacity 0 the cache is
    unbounded; otherwise inserting a new identifier into a full cache
    evicts the oldest entry.

    Only touched from the event loop, so there is no locking.
    """

    def __init__(self, capacity: int = 0):
        if capacity < 0:
            raise ValueError("Cache capacity must be >= 0")
        self.capacity = capacity
        self._entries: dict[str, GenerationResponse] = {}

    def put(self, request_id: str, response: GenerationResponse) -> None:
        if self.capacity and request_id not in self._entries:
            while len(self._entries) >= self.capacity:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                logger.debug(f"Evicted cached response {oldest}")
        self._entries[request_id] = response

    def get(self, request_id: str) -> Optional[GenerationResponse]:
        return self._entries.get(request_id)

    def size(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries
