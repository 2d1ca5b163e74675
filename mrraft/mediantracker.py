"""Tracks the lower median of a fixed set of indexed values."""

from __future__ import annotations

import heapq


class MedianTracker:
    """Keeps values split over a max-heap (lower half) and a min-heap.

    ``median()`` returns the top of the lower half, so with one value per
    peer it is the largest value held by a majority.
    """

    def __init__(self, values) -> None:
        values = list(values)
        self._low = [-v for v in values]  # negated: a max-heap
        heapq.heapify(self._low)
        self._high: list[int] = []
        self._values: dict[int, int] = {}
        for index, value in enumerate(values):
            self._values[index] = value
            self.add(index, value)

    def median(self) -> int:
        if not self._low:
            raise IndexError("median of an empty tracker")
        return -self._low[0]

    def add(self, index: int, value: int) -> None:
        """Replace the value stored for ``index`` and rebalance."""
        old = self._values.get(index, 0)
        if not self._contains(old):
            raise ValueError(f"value {old} for index {index} is not tracked")
        self._values[index] = value
        self._remove(old)
        self._insert(value)
        self._balance()

    def _belongs_low(self, value: int) -> bool:
        return value <= -self._low[0]

    def _contains(self, value: int) -> bool:
        if not self._low:
            return False
        if self._belongs_low(value):
            return -value in self._low
        return value in self._high

    def _remove(self, value: int) -> None:
        popped: list[int] = []
        if self._belongs_low(value):
            while -self._low[0] != value:
                popped.append(-heapq.heappop(self._low))
            heapq.heappop(self._low)
        else:
            while self._high[0] != value:
                popped.append(heapq.heappop(self._high))
            heapq.heappop(self._high)
        for item in popped:
            self._insert(item)

    def _insert(self, value: int) -> None:
        if not self._low or self._belongs_low(value):
            heapq.heappush(self._low, -value)
        else:
            heapq.heappush(self._high, value)

    def _balance(self) -> None:
        if len(self._low) > len(self._high) + 1:
            heapq.heappush(self._high, -heapq.heappop(self._low))
        elif len(self._high) > len(self._low):
            heapq.heappush(self._low, -heapq.heappop(self._high))