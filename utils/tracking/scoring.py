"""
Multi-factor threat scoring for one device chain.

``score()`` is a pure function of its inputs: it performs no I/O and
returns identical breakdowns for identical arguments. Each sub-score is
normalized to [0, 1]; the total is their weighted sum.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from .config import DetectionConfig
from .constants import (
    DEVICE_TYPE_PRIORS,
    ONE_DAY_MS,
    ONE_HOUR_MS,
    SEPARATED_BONUS_OTHER,
    SEPARATED_BONUS_TRACKER,
    SPAN_SCORE_LONGER,
    SPAN_SCORE_UNDER_DAY,
    SPAN_SCORE_UNDER_HOUR,
    SYNC_WINDOW_MS,
)
from .correlation import compute_correlation, has_sufficient_data
from .locations import distance_stats
from .models import (
    DeviceChain,
    DeviceType,
    LinkStrength,
    ScoreBreakdown,
    SightingSnapshot,
    ThreatLevel,
    UserPathPoint,
)

OUTING_COUNT_SATURATION = 3
OUTING_WEIGHT = 0.7
REGULARITY_WEIGHT = 0.3
REGULARITY_UNKNOWN = 0.5


# =============================================================================
# INPUT SUMMARIES
# =============================================================================

def distinct_locations(sightings: Sequence[SightingSnapshot]) -> dict[int, tuple[float, float]]:
    """Place id -> coordinates, union across every chain member."""
    places: dict[int, tuple[float, float]] = {}
    for s in sightings:
        places.setdefault(s.location_id, (s.latitude, s.longitude))
    return places


def effective_location_count(sightings: Sequence[SightingSnapshot], damping: float) -> float:
    """
    Distinct places, each counted once.

    A place reached by the canonical row or a STRONG alias counts 1; a place
    seen only through WEAK aliases counts ``damping``.
    """
    reliable: dict[int, bool] = {}
    for s in sightings:
        trusted = s.link_strength is None or s.link_strength == LinkStrength.STRONG
        reliable[s.location_id] = reliable.get(s.location_id, False) or trusted
    return sum(1.0 if trusted else damping for trusted in reliable.values())


def split_outings(timestamps: Sequence[int], outing_gap_ms: int) -> list[list[int]]:
    """Group sorted timestamps into outings separated by gaps longer than the limit."""
    outings: list[list[int]] = []
    for ts in sorted(timestamps):
        if outings and ts - outings[-1][-1] <= outing_gap_ms:
            outings[-1].append(ts)
        else:
            outings.append([ts])
    return outings


# =============================================================================
# SUB-SCORES
# =============================================================================

def location_score(effective_count: float, saturation: int) -> float:
    """Diminishing returns in the number of places; monotone non-decreasing."""
    if effective_count <= 0:
        return 0.0
    return min(1.0, math.log1p(effective_count) / math.log1p(saturation))


def distance_score(max_distance_m: float, notable_distance_m: float) -> float:
    return min(1.0, max(0.0, max_distance_m) / notable_distance_m)


def span_time_score(time_span_ms: int) -> float:
    """Fallback time score when there is no usable user path."""
    if time_span_ms < ONE_HOUR_MS:
        return SPAN_SCORE_UNDER_HOUR
    if time_span_ms < ONE_DAY_MS:
        return SPAN_SCORE_UNDER_DAY
    return SPAN_SCORE_LONGER


def consistency_score(timestamps: Sequence[int], outing_gap_ms: int) -> tuple[float, int]:
    """
    Reward devices that show up across several separate outings at regular
    intervals over a single long co-occurrence.

    Returns:
        (score, outing_count)
    """
    if not timestamps:
        return 0.0, 0

    outings = split_outings(timestamps, outing_gap_ms)
    count = len(outings)
    outing_component = min(1.0, (count - 1) / (OUTING_COUNT_SATURATION - 1))

    starts = np.asarray([o[0] for o in outings], dtype=float)
    gaps = np.diff(starts)
    if len(gaps) < 2 or gaps.mean() <= 0:
        regularity = REGULARITY_UNKNOWN
    else:
        cv = float(gaps.std() / gaps.mean())
        regularity = min(1.0, max(0.0, 1.0 - cv))

    return OUTING_WEIGHT * outing_component + REGULARITY_WEIGHT * regularity, count


def device_type_score(chain: DeviceChain) -> float:
    """Prior by classification plus a bonus for Find My items away from their owner."""
    if chain.is_tracker:
        prior = DEVICE_TYPE_PRIORS[DeviceType.TRACKER.value]
    else:
        prior = max(DEVICE_TYPE_PRIORS.get(d.device_type.value, DEVICE_TYPE_PRIORS['unknown'])
                    for d in chain.members)

    if chain.find_my_separated:
        prior += SEPARATED_BONUS_TRACKER if chain.is_tracker else SEPARATED_BONUS_OTHER
    return min(1.0, prior)


def _path_window(
    user_path: Sequence[UserPathPoint],
    start: int,
    end: int,
) -> list[UserPathPoint]:
    return [p for p in user_path if start - SYNC_WINDOW_MS <= p.timestamp <= end + SYNC_WINDOW_MS]


# =============================================================================
# SCORE
# =============================================================================

def score(
    chain: DeviceChain,
    sightings: Sequence[SightingSnapshot],
    user_path: Sequence[UserPathPoint],
    config: DetectionConfig,
) -> ScoreBreakdown:
    """
    Score a device chain.

    Args:
        chain: The canonical device and its aliases.
        sightings: Every sighting of every chain member.
        user_path: The user's breadcrumbs; only those around the chain's
            sighting window are considered.
        config: Weights and normalization constants.

    Returns:
        ScoreBreakdown with every sub-score, the total and the threat level.
    """
    weights = config.weights
    places = distinct_locations(sightings)
    effective = effective_location_count(sightings, config.weak_link_damping_factor)
    max_distance, avg_distance = distance_stats(list(places.values()))

    timestamps = [s.timestamp for s in sightings]
    time_span = (max(timestamps) - min(timestamps)) if timestamps else 0

    loc = location_score(effective, config.location_saturation_count)
    dist = distance_score(max_distance, config.notable_distance_m)

    correlation = None
    source = 'none'
    time_value = 0.0
    if timestamps:
        window = _path_window(user_path, min(timestamps), max(timestamps))
        if has_sufficient_data(sightings, window):
            correlation = compute_correlation(sightings, window)
            time_value = correlation.total
            source = 'correlation'
        else:
            time_value = span_time_score(time_span)
            source = 'span'

    consistency, outing_count = consistency_score(timestamps, config.outing_gap_ms)
    dtype = device_type_score(chain)

    total = (
        weights['location'] * loc
        + weights['distance'] * dist
        + weights['time'] * time_value
        + weights['consistency'] * consistency
        + weights['device_type'] * dtype
    )
    total = min(1.0, max(0.0, total))

    return ScoreBreakdown(
        location_score=loc,
        distance_score=dist,
        time_score=time_value,
        consistency_score=consistency,
        device_type_score=dtype,
        total=total,
        threat_level=ThreatLevel.from_score(total),
        distinct_location_count=len(places),
        effective_location_count=effective,
        max_distance_m=max_distance,
        avg_distance_m=avg_distance,
        time_span_ms=time_span,
        outing_count=outing_count,
        time_score_source=source,
        correlation=correlation,
    )
