"""In-process ordered key -> value index with bounded range count/sum."""
from __future__ import annotations

from bisect import bisect_left, insort
from typing import Any, Dict, Iterator, List, Tuple


class SortedIndex:
    """Sorted map from tuple keys to numeric values.

    Supports point insert/delete/replace and inclusive range scans bounded by
    key prefixes, e.g. ``scan(("completed", start), ("completed", end))``
    returns every key whose first two components fall in that range.
    """

    def __init__(self) -> None:
        self._keys: List[Tuple[Any, ...]] = []
        self._values: Dict[Tuple[Any, ...], float] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: Tuple[Any, ...]) -> bool:
        return key in self._values

    def get(self, key: Tuple[Any, ...]) -> float:
        return self._values[key]

    def insert(self, key: Tuple[Any, ...], value: float) -> None:
        if key in self._values:
            raise KeyError(f"duplicate key {key!r}")
        insort(self._keys, key)
        self._values[key] = value

    def delete(self, key: Tuple[Any, ...]) -> float:
        if key not in self._values:
            raise KeyError(key)
        pos = bisect_left(self._keys, key)
        del self._keys[pos]
        return self._values.pop(key)

    def replace(self, key: Tuple[Any, ...], value: float) -> float:
        old = self._values[key]
        self._values[key] = value
        return old

    def upsert(self, key: Tuple[Any, ...], value: float) -> None:
        if key in self._values:
            self._values[key] = value
        else:
            self.insert(key, value)

    def scan(self, lower: Tuple[Any, ...], upper: Tuple[Any, ...]) -> Iterator[Tuple[Tuple[Any, ...], float]]:
        """Yield (key, value) in key order for lower <= key prefix <= upper."""
        # A prefix tuple sorts before every longer key that starts with it
        pos = bisect_left(self._keys, lower)
        width = len(upper)
        while pos < len(self._keys):
            key = self._keys[pos]
            if key[:width] > upper:
                break
            yield key, self._values[key]
            pos += 1

    def count_and_sum(self, lower: Tuple[Any, ...], upper: Tuple[Any, ...]) -> Tuple[int, float]:
        count = 0
        total = 0.0
        for _, value in self.scan(lower, upper):
            count += 1
            total += value
        return count, total

    def items(self) -> Iterator[Tuple[Tuple[Any, ...], float]]:
        for key in self._keys:
            yield key, self._values[key]
