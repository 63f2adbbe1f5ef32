from __future__ import annotations

import abc
import time
from collections import OrderedDict
from threading import Lock
from typing import Callable, Optional, Tuple

from ..types import Ticket


class TicketCache(abc.ABC):
    """Read-through cache for ticket lookups by id. Never authoritative."""

    @abc.abstractmethod
    def get(self, ticket_id: str) -> Optional[Ticket]:
        ...

    @abc.abstractmethod
    def set(self, ticket: Ticket) -> None:
        """Store ``ticket`` unless a newer version is already cached."""

    @abc.abstractmethod
    def delete(self, ticket_id: str) -> None:
        ...


class MemoryTicketCache(TicketCache):
    """Bounded in-process cache with a per-entry TTL and LRU eviction."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max(int(max_entries), 1)
        self._clock = clock
        self._lock = Lock()
        self._entries: "OrderedDict[str, Tuple[Ticket, float]]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, ticket_id: str) -> Optional[Ticket]:
        with self._lock:
            entry = self._entries.get(ticket_id)
            if entry is None:
                return None
            ticket, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[ticket_id]
                return None
            self._entries.move_to_end(ticket_id)
            return ticket

    def set(self, ticket: Ticket) -> None:
        with self._lock:
            current = self._entries.get(ticket.ticket_id)
            if current is not None and current[0].version > ticket.version:
                return
            self._entries[ticket.ticket_id] = (ticket, self._clock() + self._ttl)
            self._entries.move_to_end(ticket.ticket_id)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def delete(self, ticket_id: str) -> None:
        with self._lock:
            self._entries.pop(ticket_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
