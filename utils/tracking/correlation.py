"""
Movement correlation between a device chain and the user's own path.

Four signals, weighted:
    sync         user place changes with a device sighting close in time
    route        longest common subsequence of visited places
    dwell        similar time spent at shared places
    time pattern device sightings concentrated at a time of day
"""

from __future__ import annotations

from typing import Sequence, TypeVar

import numpy as np

from .constants import (
    CORRELATION_MIN_RECORDS,
    CORRELATION_WEIGHT_DWELL,
    CORRELATION_WEIGHT_ROUTE,
    CORRELATION_WEIGHT_SYNC,
    CORRELATION_WEIGHT_TIME_PATTERN,
    DWELL_TOLERANCE_MS,
    DWELL_TOLERANCE_RATIO,
    ONE_DAY_MS,
    ONE_HOUR_MS,
    SYNC_WINDOW_MS,
    TIME_PATTERN_PEAK_RATIO,
    TIME_PATTERN_WINDOW_HOURS,
)
from .models import CorrelationBreakdown, SightingSnapshot, UserPathPoint

T = TypeVar('T')


def has_sufficient_data(sightings: Sequence[SightingSnapshot], user_path: Sequence[UserPathPoint]) -> bool:
    return len(sightings) >= CORRELATION_MIN_RECORDS and len(user_path) >= CORRELATION_MIN_RECORDS


def compute_correlation(
    sightings: Sequence[SightingSnapshot],
    user_path: Sequence[UserPathPoint],
) -> CorrelationBreakdown:
    """
    Correlate device sightings with the user's path.

    Returns an all-zero breakdown with ``sufficient_data=False`` when either
    side has fewer than three records.
    """
    if not has_sufficient_data(sightings, user_path):
        return CorrelationBreakdown()

    records = sorted(sightings, key=lambda s: s.timestamp)
    path = sorted(user_path, key=lambda p: p.timestamp)

    sync = movement_sync_score(records, path)
    route = route_overlap_score(records, path)
    dwell = dwell_match_score(records, path)
    pattern = time_pattern_score(records)

    total = (
        sync * CORRELATION_WEIGHT_SYNC
        + route * CORRELATION_WEIGHT_ROUTE
        + dwell * CORRELATION_WEIGHT_DWELL
        + pattern * CORRELATION_WEIGHT_TIME_PATTERN
    )

    return CorrelationBreakdown(
        sync_score=sync,
        route_score=route,
        dwell_score=dwell,
        time_pattern_score=pattern,
        total=min(total, 1.0),
        sufficient_data=True,
    )


def movement_sync_score(records: Sequence[SightingSnapshot], path: Sequence[UserPathPoint]) -> float:
    """Share of the user's place changes that had the device nearby in time."""
    if len(path) < 2:
        return 0.0

    moves = []
    current = path[0].location_id
    for point in path[1:]:
        if point.location_id != current:
            moves.append(point.timestamp)
            current = point.location_id

    if not moves:
        return 0.0

    seen = np.asarray([r.timestamp for r in records], dtype=np.int64)
    matched = sum(1 for t in moves if np.any(np.abs(seen - t) < SYNC_WINDOW_MS))
    return matched / len(moves)


def route_overlap_score(records: Sequence[SightingSnapshot], path: Sequence[UserPathPoint]) -> float:
    """LCS of the collapsed place sequences over the device route length."""
    user_route = collapse_repeats([p.location_id for p in path])
    device_route = collapse_repeats([r.location_id for r in records])
    if not user_route or not device_route:
        return 0.0
    return longest_common_subsequence(user_route, device_route) / len(device_route)


def dwell_match_score(records: Sequence[SightingSnapshot], path: Sequence[UserPathPoint]) -> float:
    """Share of shared places where device and user stayed a similar time."""
    device_times: dict[int, list[int]] = {}
    for r in records:
        device_times.setdefault(r.location_id, []).append(r.timestamp)
    user_times: dict[int, list[int]] = {}
    for p in path:
        user_times.setdefault(p.location_id, []).append(p.timestamp)

    shared = matched = 0
    for location_id, stamps in device_times.items():
        if location_id not in user_times:
            continue
        shared += 1
        device_dwell = max(stamps) - min(stamps)
        user_dwell = max(user_times[location_id]) - min(user_times[location_id])
        diff = abs(device_dwell - user_dwell)
        if diff < user_dwell * DWELL_TOLERANCE_RATIO or diff < DWELL_TOLERANCE_MS:
            matched += 1

    return matched / shared if shared else 0.0


def time_pattern_score(records: Sequence[SightingSnapshot]) -> float:
    """Concentration of sightings in a narrow band of hours (UTC)."""
    if len(records) < CORRELATION_MIN_RECORDS:
        return 0.0

    hours = (np.asarray([r.timestamp for r in records], dtype=np.int64) % ONE_DAY_MS) // ONE_HOUR_MS
    counts = np.bincount(hours, minlength=24)
    peak = int(counts.max())
    peak_hours = int(np.count_nonzero(counts >= peak * TIME_PATTERN_PEAK_RATIO))

    concentration = peak / len(records)
    if peak_hours > TIME_PATTERN_WINDOW_HOURS:
        concentration *= 0.5
    return min(concentration, 1.0)


def collapse_repeats(items: Sequence[T]) -> list[T]:
    """Drop consecutive duplicates: [1, 1, 2, 2, 1] -> [1, 2, 1]."""
    out: list[T] = []
    for item in items:
        if not out or out[-1] != item:
            out.append(item)
    return out


def longest_common_subsequence(a: Sequence[T], b: Sequence[T]) -> int:
    prev = [0] * (len(b) + 1)
    for x in a:
        curr = [0] * (len(b) + 1)
        for j, y in enumerate(b, start=1):
            curr[j] = prev[j - 1] + 1 if x == y else max(prev[j], curr[j - 1])
        prev = curr
    return prev[-1]
