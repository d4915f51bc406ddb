"""
Bounded outbound queue for messages waiting on a receiver that is still
initializing.

- Bounded by message count
- Explicit drop behavior: drop OLDEST when full so the receiver sees the
  freshest state once it becomes ready
- Drop reasons distinguishable
- Deterministic, synchronous behavior
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Generic, Iterator, Optional, TypeVar

T = TypeVar("T")


class DropReason(str, Enum):
    """
    Reason a queued message was dropped.
    """
    OVERFLOW = "overflow"
    CLEARED = "cleared"


@dataclass
class DropCounters:
    """
    Drop counters for observability.
    """
    overflow: int = 0
    cleared: int = 0


class OutboundQueue(Generic[T]):
    """
    Bounded FIFO holding messages until the receiver is ready.

    Drop rules:
    - enqueue on a full queue drops the OLDEST item, then appends
    - clear() counts every discarded item as CLEARED
    """

    def __init__(self, *, max_items: int) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be > 0")

        self._max_items = max_items
        self._items: Deque[T] = deque()
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Core queue operations
    # -------------------------

    def enqueue(self, item: T) -> Optional[T]:
        """
        Append an item.

        Returns:
            The dropped oldest item if the queue was full, else None.
        """
        dropped: Optional[T] = None
        if len(self._items) >= self._max_items:
            dropped = self._items.popleft()
            self.drops.overflow += 1
        self._items.append(item)
        return dropped

    def dequeue(self) -> Optional[T]:
        if not self._items:
            return None
        return self._items.popleft()

    def peek(self) -> Optional[T]:
        return self._items[0] if self._items else None

    def drain(self) -> Iterator[T]:
        """Yield and remove every queued item in FIFO order."""
        while self._items:
            yield self._items.popleft()

    def clear(self) -> None:
        self.drops.cleared += len(self._items)
        self._items.clear()

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._items)

    def is_empty(self) -> bool:
        return not self._items

    def total_drops(self) -> int:
        return self.drops.overflow + self.drops.cleared

    def snapshot(self) -> dict[str, int]:
        """
        Lightweight snapshot for logging / metrics.
        """
        return {
            "queued": len(self._items),
            "dropped_overflow": self.drops.overflow,
            "dropped_cleared": self.drops.cleared,
            "dropped_total": self.total_drops(),
        }
