"""
Inclusive integer ranges and range-keyed balances.

A Balance means: for every id in badge_ids and every time in
ownership_times, the owner holds `amount`. Lookups against a list of
balances split the requested id x time rectangle into elementary cells,
sum every stored balance covering a cell, and zero-fill the gaps.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Tuple

MAX_UINT64 = 18446744073709551615


@dataclass(frozen=True, order=True)
class UintRange:
    start: int
    end: int

    def is_valid(self) -> bool:
        return (isinstance(self.start, int) and isinstance(self.end, int)
                and 0 <= self.start <= self.end)

    def size(self) -> int:
        return self.end - self.start + 1

    def contains(self, value: int) -> bool:
        return self.start <= value <= self.end

    def covers(self, other: "UintRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_value(cls, value: Any) -> "UintRange":
        if isinstance(value, UintRange):
            return value
        if isinstance(value, dict):
            return cls(int(value["start"]), int(value["end"]))
        raise TypeError(f"Cannot build a range from {value!r}")


def ranges_from(values: Iterable[Any]) -> List[UintRange]:
    return [UintRange.from_value(v) for v in values]


def sort_and_merge(ranges: Iterable[UintRange]) -> List[UintRange]:
    """Sort ranges and merge overlapping or adjacent ones."""
    merged: List[UintRange] = []
    for r in sorted(ranges):
        if merged and r.start <= merged[-1].end + 1:
            last = merged[-1]
            merged[-1] = UintRange(last.start, max(last.end, r.end))
        else:
            merged.append(r)
    return merged


def total_size(ranges: Iterable[UintRange]) -> int:
    return sum(r.size() for r in sort_and_merge(ranges))


def search(ranges: Iterable[UintRange], value: int) -> bool:
    return any(r.contains(value) for r in ranges)


def intersect(a: Sequence[UintRange], b: Sequence[UintRange]) -> List[UintRange]:
    out = []
    for x in sort_and_merge(a):
        for y in sort_and_merge(b):
            lo, hi = max(x.start, y.start), min(x.end, y.end)
            if lo <= hi:
                out.append(UintRange(lo, hi))
    return sort_and_merge(out)


def remove_ranges(to_remove: Sequence[UintRange],
                  ranges: Sequence[UintRange]) -> List[UintRange]:
    remaining = sort_and_merge(ranges)
    for cut in sort_and_merge(to_remove):
        nxt = []
        for r in remaining:
            if cut.end < r.start or cut.start > r.end:
                nxt.append(r)
                continue
            if r.start < cut.start:
                nxt.append(UintRange(r.start, cut.start - 1))
            if cut.end < r.end:
                nxt.append(UintRange(cut.end + 1, r.end))
        remaining = nxt
    return remaining


def _segments(requested: Sequence[UintRange],
              boundaries: Iterable[UintRange]) -> List[UintRange]:
    """Elementary segments of `requested` split at every boundary."""
    requested = sort_and_merge(requested)
    points = set()
    for r in list(requested) + list(boundaries):
        points.add(r.start)
        points.add(r.end + 1)
    pts = sorted(points)
    segments = []
    for a, b in zip(pts, pts[1:]):
        seg = UintRange(a, b - 1)
        if any(r.covers(seg) for r in requested):
            segments.append(seg)
    return segments


# =============================================================================
# BALANCES
# =============================================================================

@dataclass
class Balance:
    amount: int
    badge_ids: List[UintRange] = field(default_factory=list)
    ownership_times: List[UintRange] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "badgeIds": [r.to_dict() for r in self.badge_ids],
            "ownershipTimes": [r.to_dict() for r in self.ownership_times],
        }

    @classmethod
    def from_value(cls, value: Any) -> "Balance":
        if isinstance(value, Balance):
            return value
        ids = value.get("badgeIds", value.get("badge_ids", []))
        times = value.get("ownershipTimes", value.get("ownership_times", []))
        return cls(int(value["amount"]), ranges_from(ids), ranges_from(times))


def balances_from(values: Iterable[Any]) -> List[Balance]:
    return [Balance.from_value(v) for v in values]


def _covered(ranges: Sequence[UintRange], seg: UintRange) -> bool:
    return any(r.covers(seg) for r in ranges)


def _merge_cells(cells: List[Tuple[UintRange, UintRange, int]]) -> List[Balance]:
    by_time: Dict[Tuple[int, UintRange], List[UintRange]] = {}
    for id_seg, time_seg, amount in cells:
        by_time.setdefault((amount, time_seg), []).append(id_seg)

    by_ids: Dict[Tuple[int, Tuple[UintRange, ...]], List[UintRange]] = {}
    for (amount, time_seg), ids in by_time.items():
        key = (amount, tuple(sort_and_merge(ids)))
        by_ids.setdefault(key, []).append(time_seg)

    out = [Balance(amount, list(ids), sort_and_merge(times))
           for (amount, ids), times in by_ids.items()]
    out.sort(key=lambda b: (b.badge_ids[0].start, b.ownership_times[0].start))
    return out


def get_balances_for_ids(badge_ids: Sequence[UintRange],
                         ownership_times: Sequence[UintRange],
                         balances: Sequence[Balance]) -> List[Balance]:
    """Amounts held over badge_ids x ownership_times, including zeros."""
    id_segs = _segments(badge_ids, (r for b in balances for r in b.badge_ids))
    time_segs = _segments(ownership_times,
                          (r for b in balances for r in b.ownership_times))
    cells = []
    for id_seg in id_segs:
        holders = [b for b in balances if _covered(b.badge_ids, id_seg)]
        for time_seg in time_segs:
            amount = sum(b.amount for b in holders
                         if _covered(b.ownership_times, time_seg))
            cells.append((id_seg, time_seg, amount))
    return _merge_cells(cells)


def add_balances(current: Sequence[Balance],
                 to_add: Sequence[Balance]) -> List[Balance]:
    """Sum two balance lists, dropping zero cells."""
    combined = list(current) + list(to_add)
    if not combined:
        return []
    all_ids = [r for b in combined for r in b.badge_ids]
    all_times = [r for b in combined for r in b.ownership_times]
    summed = get_balances_for_ids(all_ids, all_times, combined)
    return [b for b in summed if b.amount > 0]


def apply_increments(balances: Sequence[Balance], increment_ids_by: int,
                     increment_times_by: int, num_increments: int) -> List[Balance]:
    """Shift a balance template by claim number, as an incremented grant."""
    shift_ids = increment_ids_by * num_increments
    shift_times = increment_times_by * num_increments
    return [
        Balance(
            b.amount,
            [UintRange(r.start + shift_ids, r.end + shift_ids) for r in b.badge_ids],
            [UintRange(r.start + shift_times, r.end + shift_times)
             for r in b.ownership_times],
        )
        for b in balances
    ]
