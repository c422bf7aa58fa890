from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable


RANGE_EPSILON_SECONDS = 0.001


@dataclass(frozen=True)
class WatchedRange:
    start: float
    end: float

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}


def _clamp(watched: WatchedRange, duration_seconds: float) -> WatchedRange | None:
    if not math.isfinite(watched.start) or not math.isfinite(watched.end):
        return None
    start = max(0.0, min(float(watched.start), duration_seconds))
    end = max(0.0, min(float(watched.end), duration_seconds))
    if end - start <= RANGE_EPSILON_SECONDS:
        return None
    return WatchedRange(start, end)


def normalize_watched_ranges(
    ranges: Iterable[WatchedRange] | None,
    duration_seconds: float,
) -> list[WatchedRange]:
    """Clamp, sort and merge ranges into a disjoint, non-adjacent set.

    Ranges shorter than the epsilon after clamping to ``[0, duration]`` are
    dropped; a range starting within epsilon of the previous end is merged
    into it.
    """
    if not ranges or duration_seconds <= 0:
        return []

    clamped = [item for item in (_clamp(r, duration_seconds) for r in ranges) if item]
    clamped.sort(key=lambda r: r.start)
    if not clamped:
        return []

    merged_start, merged_end = clamped[0].start, clamped[0].end
    merged: list[WatchedRange] = []
    for current in clamped[1:]:
        if current.start <= merged_end + RANGE_EPSILON_SECONDS:
            merged_end = max(merged_end, current.end)
            continue
        merged.append(WatchedRange(merged_start, merged_end))
        merged_start, merged_end = current.start, current.end
    merged.append(WatchedRange(merged_start, merged_end))
    return merged


def add_watched_range(
    existing: Iterable[WatchedRange],
    next_range: WatchedRange,
    duration_seconds: float,
) -> list[WatchedRange]:
    return normalize_watched_ranges([*existing, next_range], duration_seconds)


def watched_range_seconds(ranges: Iterable[WatchedRange]) -> float:
    return sum(r.end - r.start for r in ranges)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def coerce_watched_ranges(value: Any) -> list[WatchedRange]:
    """Read stored JSON into ranges, skipping entries that are not {start, end} numbers."""
    if not isinstance(value, list):
        return []
    result = []
    for entry in value:
        if isinstance(entry, WatchedRange):
            result.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        start, end = entry.get("start"), entry.get("end")
        if _is_number(start) and _is_number(end):
            result.append(WatchedRange(float(start), float(end)))
    return result


def stored_ranges(raw_ranges: Any, watched_seconds: int | None, duration_seconds: float) -> list[WatchedRange]:
    normalized = normalize_watched_ranges(coerce_watched_ranges(raw_ranges), duration_seconds)
    if normalized:
        return normalized
    if not watched_seconds or watched_seconds <= 0:
        return []
    # Rows written before ranges were tracked only carry a total.
    return normalize_watched_ranges([WatchedRange(0, watched_seconds)], duration_seconds)


def serialize_ranges(ranges: Iterable[WatchedRange]) -> list[dict]:
    return [r.to_dict() for r in ranges]
