"""
Shared data models and the fixed-capacity ring buffer.

This module defines immutable data contracts used across
the tracker, ingestion, storage and presentation layers.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar


T = TypeVar("T")


class InvalidCapacity(ValueError):
    """Raised when a ring buffer is built with a non-positive capacity."""


class Signal(str, Enum):
    BUY = "buy"
    SELL = "sell"


class SignalState(Enum):
    NO_SIGNAL_YET = "none"
    LAST_WAS_BUY = "buy"
    LAST_WAS_SELL = "sell"


@dataclass(frozen=True)
class PricePoint:
    timestamp: float     # local timestamp (s)
    price: float
    short_sma: float
    long_sma: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Trade:
    side: Signal
    price: float
    timestamp: float
    quantity: int = 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data


class RingBuffer(Generic[T]):
    """
    Fixed-capacity circular buffer with overwrite-oldest semantics.

    Once full, every push drops the oldest item silently, so the buffer
    always holds the `capacity` most recent pushes, oldest first.
    Not thread-safe: callers serialize access.
    """

    def __init__(self, capacity: int):
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise InvalidCapacity(f"Capacity must be a positive integer, got {capacity!r}")

        self._capacity = capacity
        self._slots: List[Optional[T]] = [None] * capacity
        self._size = 0
        self._head = 0
        self._tail = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Current element count."""
        return self._size

    def push(self, item: T):
        """Write at head; once full the oldest slot is the one overwritten."""
        self._slots[self._head] = item
        self._head = (self._head + 1) % self._capacity

        if self._size < self._capacity:
            self._size += 1
        else:
            self._tail = (self._tail + 1) % self._capacity

    def items(self) -> List[T]:
        """Held items, oldest to newest."""
        result = []
        index = self._tail
        for _ in range(self._size):
            result.append(self._slots[index])
            index = (index + 1) % self._capacity
        return result

    def is_full(self) -> bool:
        return self._size == self._capacity

    def clear(self):
        """Discard logical contents. Backing slots are not zeroed."""
        self._size = 0
        self._head = 0
        self._tail = 0

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self._capacity}, size={self._size})"


def format_currency(value: float) -> str:
    return f"${value:.2f}"
