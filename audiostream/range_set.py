"""Sorted sets of disjoint, non-touching half-open integer ranges."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator


@dataclass(frozen=True)
class Range:
    """A half-open interval ``[start, start + length)`` of byte offsets."""

    start: int
    length: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.length < 0:
            raise ValueError(
                f"range start and length must be non-negative, got {self.start}, {self.length}"
            )

    def end(self) -> int:
        """Return the first offset past the range."""
        return self.start + self.length

    def __str__(self) -> str:
        return f"[{self.start}, {self.start + self.length - 1}]"


class RangeSet:
    """An ordered collection of disjoint ranges; touching ranges are merged."""

    __slots__ = ("_ranges",)

    def __init__(self, ranges: Iterable[Range] = ()) -> None:
        self._ranges: list[Range] = []
        for range_ in ranges:
            self.add_range(range_)

    def is_empty(self) -> bool:
        return not self._ranges

    def __len__(self) -> int:
        """Total number of offsets covered by the set."""
        return sum(range_.length for range_ in self._ranges)

    def __iter__(self) -> Iterator[Range]:
        return iter(self._ranges)

    def __getitem__(self, index: int) -> Range:
        return self._ranges[index]

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, int):
            return False
        for range_ in self._ranges:
            if value < range_.start:
                return False
            if value < range_.end():
                return True
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"RangeSet({self._ranges!r})"

    def __str__(self) -> str:
        return "(" + "".join(str(range_) for range_ in self._ranges) + ")"

    def copy(self) -> RangeSet:
        result = RangeSet()
        result._ranges = list(self._ranges)
        return result

    def contained_length_from_value(self, value: int) -> int:
        """Return how many consecutive offsets from ``value`` on are in the set."""
        for range_ in self._ranges:
            if value < range_.start:
                return 0
            if value < range_.end():
                return range_.end() - value
        return 0

    def contains_range_set(self, other: RangeSet) -> bool:
        return all(
            self.contained_length_from_value(range_.start) >= range_.length
            for range_ in other
        )

    def add_range(self, range_: Range) -> None:
        if range_.length == 0:
            return

        for index, existing in enumerate(self._ranges):
            if range_.end() < existing.start:
                # Entirely before this range and not touching it.
                self._ranges.insert(index, range_)
                return
            if range_.start <= existing.end() and existing.start <= range_.end():
                # Overlaps or touches: merge this and any following ranges it reaches.
                new_start, new_end = range_.start, range_.end()
                while index < len(self._ranges) and self._ranges[index].start <= new_end:
                    current = self._ranges.pop(index)
                    new_end = max(new_end, current.end())
                    new_start = min(new_start, current.start)
                self._ranges.insert(index, Range(new_start, new_end - new_start))
                return

        self._ranges.append(range_)

    def add_range_set(self, other: RangeSet) -> None:
        for range_ in list(other):
            self.add_range(range_)

    def union(self, other: RangeSet) -> RangeSet:
        result = self.copy()
        result.add_range_set(other)
        return result

    def subtract_range(self, range_: Range) -> None:
        if range_.length == 0:
            return

        remove_end = range_.end()
        index = 0
        while index < len(self._ranges):
            current = self._ranges[index]
            if remove_end <= current.start:
                # Every remaining range lies past the one being removed.
                return
            if range_.start <= current.start:
                # Removal starts before this range and reaches into it.
                while index < len(self._ranges) and self._ranges[index].end() <= remove_end:
                    del self._ranges[index]
                if index < len(self._ranges) and self._ranges[index].start < remove_end:
                    rest = self._ranges[index]
                    self._ranges[index] = Range(remove_end, rest.end() - remove_end)
                return
            if remove_end < current.end():
                # Removal punches a hole into this range.
                self._ranges[index] = Range(remove_end, current.end() - remove_end)
                self._ranges.insert(index, Range(current.start, range_.start - current.start))
                return
            if range_.start < current.end():
                # Removal cuts off the tail of this range.
                self._ranges[index] = Range(current.start, range_.start - current.start)
            index += 1

    def subtract_range_set(self, other: RangeSet) -> None:
        for range_ in list(other):
            self.subtract_range(range_)

    def minus(self, other: RangeSet) -> RangeSet:
        result = self.copy()
        result.subtract_range_set(other)
        return result

    def intersection(self, other: RangeSet) -> RangeSet:
        result = RangeSet()
        mine, theirs = self._ranges, other._ranges
        self_index = other_index = 0

        while self_index < len(mine) and other_index < len(theirs):
            a, b = mine[self_index], theirs[other_index]
            if a.end() <= b.start:
                self_index += 1
            elif b.end() <= a.start:
                other_index += 1
            else:
                new_start = max(a.start, b.start)
                new_end = min(a.end(), b.end())
                result.add_range(Range(new_start, new_end - new_start))
                if a.end() <= b.end():
                    self_index += 1
                else:
                    other_index += 1

        return result