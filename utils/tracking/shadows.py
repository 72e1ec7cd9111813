"""
Shadow analysis: detection of rotating devices without explicit MAC links.

A shadow key is a coarse profile of a device built from the stable parts
of its advertisements (make, type, tracker flags, TX power, service UUIDs,
name pattern). Every MAC a rotating device uses carries the same shadow,
even when identity resolution never linked them.

A shadow is suspicious when it shows up as the same number of devices at
each of the user's places (persistence), and when its MACs hand off to one
another at a steady rhythm: one MAC goes quiet and the next one appears
within a few minutes, again and again.

    persistence = 1 / (1 + variance of per-place counts) * specificity * coverage
    combined    = 0.7 * persistence + 0.3 * rotation rhythm
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import AbstractSet, Optional, Sequence

import numpy as np

from utils import database as db
from utils.bluetooth.fingerprint import name_pattern, normalize_service_uuid

from .constants import (
    SHADOW_MAX_COMPONENTS,
    SHADOW_MAX_HANDOFF_GAP_MS,
    SHADOW_MIN_COMBINED_SCORE,
    SHADOW_MIN_COMPONENTS,
    SHADOW_MIN_HANDOFFS,
    SHADOW_PERSISTENCE_WEIGHT,
    SHADOW_ROTATION_WEIGHT,
)
from .models import Device, DeviceChain, LinkStrength, SightingSnapshot

logger = logging.getLogger('tailguard.shadows')

SHADOW_SEPARATOR = '|'


# =============================================================================
# SHADOW KEYS
# =============================================================================

def shadow_key(
    manufacturer_id: Optional[int] = None,
    device_type: Optional[str] = None,
    continuity: Optional[int] = None,
    is_tracker: bool = False,
    beacon_type: Optional[str] = None,
    tx_power: Optional[int] = None,
    service_uuids: Optional[Sequence[str]] = None,
    name: Optional[str] = None,
) -> Optional[str]:
    """
    Build the shadow key for an advertisement.

    Components are sorted so the key does not depend on the order fields
    are filled in, e.g. ``B:AIRTAG|C:12|M:004C|T:TRACKER|TR:1|U:FD6F``.

    Returns:
        The key, or None when fewer than two components are known.
    """
    components = []
    if manufacturer_id:
        components.append(f'M:{manufacturer_id:04X}')
    if device_type and device_type != 'unknown':
        components.append(f'T:{device_type.upper()}')
    if continuity is not None:
        components.append(f'C:{continuity:02X}')
    if is_tracker:
        components.append('TR:1')
    if beacon_type:
        components.append(f'B:{beacon_type.upper()}')
    if tx_power is not None:
        components.append(f'P:{tx_power}')
    if service_uuids:
        uuids = sorted({normalize_service_uuid(u).upper() for u in service_uuids})
        components.append('U:' + ','.join(uuids))
    pattern = name_pattern(name).replace(SHADOW_SEPARATOR, ' ')
    if pattern:
        components.append(f'N:{pattern}')

    if len(components) < SHADOW_MIN_COMPONENTS:
        return None
    return SHADOW_SEPARATOR.join(sorted(components))


def specificity(key: Optional[str]) -> float:
    """Share of the possible components a key carries, in [0, 1]."""
    if not key:
        return 0.0
    return min(1.0, len(key.split(SHADOW_SEPARATOR)) / SHADOW_MAX_COMPONENTS)


def more_specific(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """
    The candidate key if it should replace the current one, else None.

    A stored key is only replaced by one with more components, so a
    sparse advertisement never erases a detailed profile.
    """
    if candidate is None or candidate == current:
        return None
    if current is None or specificity(candidate) > specificity(current):
        return candidate
    return None


# =============================================================================
# SCORES
# =============================================================================

def persistence_score(device_counts: Sequence[int], key_specificity: float, coverage: float) -> float:
    """
    How steadily a shadow shows up across places.

    Args:
        device_counts: Distinct devices carrying the shadow, per place.
        key_specificity: specificity() of the shadow key.
        coverage: Share of all known places where the shadow was seen.
    """
    if not device_counts:
        return 0.0
    variance = float(np.var(np.asarray(device_counts, dtype=float)))
    return (1.0 / (1.0 + variance)) * key_specificity * coverage


@dataclass
class RotationRhythm:
    """MAC hand-off evidence for the devices of one shadow."""
    score: float
    handoff_count: int
    average_interval_ms: int
    is_regular: bool

    def to_dict(self) -> dict:
        return {
            'score': round(self.score, 4),
            'handoff_count': self.handoff_count,
            'average_interval_ms': self.average_interval_ms,
            'is_regular': self.is_regular,
        }


def rotation_rhythm(devices: Sequence[Device]) -> RotationRhythm:
    """
    Score the birth/death pattern of a group of devices.

    A hand-off is a device whose first sighting falls within five minutes
    of the previous device's last sighting. Intervals between consecutive
    births at hand-offs are scored by their coefficient of variation, and
    the result is scaled by the share of consecutive pairs that hand off.
    At least two hand-offs are needed for a non-zero score.
    """
    if len(devices) < 2:
        return RotationRhythm(0.0, 0, 0, False)

    ordered = sorted(devices, key=lambda d: (d.first_seen, d.id))
    handoffs = [
        i for i in range(len(ordered) - 1)
        if abs(ordered[i + 1].first_seen - ordered[i].last_seen) <= SHADOW_MAX_HANDOFF_GAP_MS
    ]
    if len(handoffs) < SHADOW_MIN_HANDOFFS:
        return RotationRhythm(0.0, len(handoffs), 0, False)

    intervals = np.asarray(
        [ordered[i + 1].first_seen - ordered[i].first_seen for i in handoffs],
        dtype=float,
    )
    mean = float(intervals.mean())
    cv = float(intervals.std() / mean) if mean > 0 else 1.0
    regularity = max(0.0, 1.0 - min(cv, 1.0))
    coverage = len(handoffs) / (len(ordered) - 1)

    return RotationRhythm(
        score=min(1.0, max(0.0, coverage * regularity)),
        handoff_count=len(handoffs),
        average_interval_ms=int(mean),
        is_regular=cv < 0.5,
    )


# =============================================================================
# ANALYSIS
# =============================================================================

@dataclass
class ShadowResult:
    """A suspicious shadow and the device chains that carry it."""

    shadow_key: str
    representative: Device
    chains: list[DeviceChain]
    persistence_score: float
    rotation: RotationRhythm
    location_count: int
    combined_score: float

    @property
    def rotation_score(self) -> float:
        return self.rotation.score

    @property
    def root_ids(self) -> list[int]:
        return [chain.canonical.id for chain in self.chains]

    @property
    def primary_chain(self) -> DeviceChain:
        """The chain the representative device belongs to."""
        for chain in self.chains:
            if self.representative.id in chain.member_ids:
                return chain
        return self.chains[0]

    def group_chain(self) -> DeviceChain:
        """Every member of every chain, rooted at the primary chain."""
        primary = self.primary_chain
        others = [d for chain in self.chains if chain is not primary for d in chain.members]
        return DeviceChain(canonical=primary.canonical, aliases=primary.aliases + others)

    def group_sightings(self, sightings: Sequence[SightingSnapshot]) -> list[SightingSnapshot]:
        """Sightings outside the primary chain count as WEAK evidence."""
        primary_ids = set(self.primary_chain.member_ids)
        return [
            s if s.device_id in primary_ids else replace(s, link_strength=LinkStrength.WEAK)
            for s in sightings
        ]

    def to_dict(self) -> dict:
        return {
            'shadow_key': self.shadow_key,
            'representative_id': self.representative.id,
            'root_ids': self.root_ids,
            'persistence_score': round(self.persistence_score, 4),
            'rotation': self.rotation.to_dict(),
            'location_count': self.location_count,
            'combined_score': round(self.combined_score, 4),
        }


def analyze_shadow(
    key: str,
    total_locations: int,
    excluded_ids: AbstractSet[int] = frozenset(),
) -> Optional[ShadowResult]:
    """
    Score one shadow key.

    Chains with any member in ``excluded_ids`` are left out of the rotation
    analysis and of the result.

    Returns:
        ShadowResult, or None if the shadow has no sightings or no
        remaining chains.
    """
    counts = db.get_shadow_location_counts(key)
    if not counts or total_locations <= 0:
        return None

    persistence = persistence_score(
        [c.device_count for c in counts],
        specificity(key),
        min(1.0, len(counts) / total_locations),
    )

    devices = db.get_devices_by_shadow_key(key)
    roots = list(dict.fromkeys(d.canonical_id or d.id for d in devices))
    chains = [c for c in db.get_chains(roots) if not excluded_ids.intersection(c.member_ids)]
    if not chains:
        return None

    kept = {d.id for chain in chains for d in chain.members}
    devices = [d for d in devices if d.id in kept]
    rhythm = rotation_rhythm(devices)
    combined = SHADOW_PERSISTENCE_WEIGHT * persistence + SHADOW_ROTATION_WEIGHT * rhythm.score

    representative = max(
        devices,
        key=lambda d: (d.last_seen, d.highest_rssi if d.highest_rssi is not None else -100),
    )

    logger.debug(
        f"Shadow {key}: persistence={persistence:.2f}, rotation={rhythm.score:.2f}, "
        f"combined={combined:.2f}, locations={len(counts)}, devices={len(devices)}"
    )
    return ShadowResult(
        shadow_key=key,
        representative=representative,
        chains=chains,
        persistence_score=persistence,
        rotation=rhythm,
        location_count=len(counts),
        combined_score=combined,
    )


def find_suspicious_shadows(
    min_location_count: int,
    excluded_ids: AbstractSet[int] = frozenset(),
) -> list[ShadowResult]:
    """
    Shadows seen at ``min_location_count`` or more places whose combined
    score reaches the reporting floor, highest score first.
    """
    keys = db.get_shadow_keys(min_location_count)
    if not keys:
        logger.debug(f"No shadow keys at {min_location_count}+ locations")
        return []

    total_locations = db.count_locations()
    results = []
    for key in keys:
        result = analyze_shadow(key, total_locations, excluded_ids)
        if result is not None and result.combined_score >= SHADOW_MIN_COMBINED_SCORE:
            results.append(result)

    results.sort(key=lambda r: (-r.combined_score, r.shadow_key))
    return results
