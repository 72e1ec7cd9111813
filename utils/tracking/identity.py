"""
Identity resolution across MAC address rotation.

Every sighting is attributed to exactly one device row. A MAC seen for the
first time either starts a new canonical device or, when it can be tied to
a known device, gets its own row linked to that device's canonical root:

1. Exact MAC match: reuse the row.
2. Payload or service UUID fingerprint match: STRONG link (WEAK when the
   match is stale).
3. Temporal heuristics (same make and type, similar RSSI, prior MAC went
   quiet just before): WEAK link, STRONG when the advertised names agree.
   Candidates are scored and must reach a minimum to link at all.
4. Composite fingerprint match: always WEAK, since devices of the same
   model can share one.
5. Otherwise: a new canonical device.

Every row also records its shadow key, the coarse profile used by shadow
analysis to spot rotations that were never linked.

Aliases always point at a canonical row, never at another alias, so a chain
is one level deep and cannot contain a cycle.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from utils import database as db
from utils.bluetooth.constants import APPLE_COMPANY_ID
from utils.bluetooth.fingerprint import (
    FindMyStatus,
    continuity_type,
    extract_fingerprint,
    is_composite_fingerprint,
    parse_findmy_payload,
)
from utils.bluetooth.tracker_signatures import (
    DeviceClassification,
    TrackerSignatureEngine,
    get_tracker_engine,
)

from .config import DetectionConfig
from .constants import (
    TEMPORAL_APPEARANCE_POINTS,
    TEMPORAL_MIN_SCORE,
    TEMPORAL_NAME_POINTS,
    TEMPORAL_RECENCY_POINTS,
    TEMPORAL_RSSI_POINTS,
    TEMPORAL_TX_POWER_POINTS,
    TEMPORAL_TX_POWER_TOLERANCE_DB,
)
from .exceptions import MalformedInputError
from .models import Device, Identity, LinkStrength, RawSighting
from .shadows import more_specific, shadow_key

logger = logging.getLogger('tailguard.identity')


class KeyedLocks:
    """
    A lock per string key, created on demand and dropped when unused.

    Several keys are always taken in sorted order, so two callers that
    share any key cannot deadlock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def acquire(self, keys: Iterable[str]) -> Iterator[None]:
        ordered = sorted(set(keys))
        with self._guard:
            entries = []
            for key in ordered:
                entry = self._locks.setdefault(key, [threading.Lock(), 0])
                entry[1] += 1
                entries.append((key, entry))

        held = []
        try:
            for _, entry in entries:
                entry[0].acquire()
                held.append(entry)
            yield
        finally:
            for entry in reversed(held):
                entry[0].release()
            with self._guard:
                for key, entry in entries:
                    entry[1] -= 1
                    if entry[1] == 0:
                        del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class _Link:
    target: Device
    strength: LinkStrength
    reason: str

    @property
    def canonical_id(self) -> int:
        return self.target.canonical_id or self.target.id


class IdentityResolver:
    """Find-or-link-or-create for raw sightings."""

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        engine: Optional[TrackerSignatureEngine] = None,
    ):
        self.config = config or DetectionConfig()
        self.engine = engine or get_tracker_engine()
        self._locks = KeyedLocks()

    def resolve(self, sighting: RawSighting, config: Optional[DetectionConfig] = None) -> int:
        """
        Attribute a sighting to a device.

        Args:
            sighting: The raw advertisement.
            config: Overrides the resolver's configuration for this call.

        Returns:
            The id of the device row for the sighting's MAC.

        Raises:
            TransientStorageError: If the store is locked beyond its timeout.
        """
        config = config or self.config
        mac = sighting.mac_address
        classification = self.engine.classify(
            address=mac,
            name=sighting.name,
            manufacturer_id=sighting.manufacturer_id,
            manufacturer_data=sighting.advertisement_bytes,
            service_uuids=sighting.service_uuids,
        )
        fingerprint, findmy = self._extract(sighting, classification)
        composite = is_composite_fingerprint(fingerprint)
        shadow = shadow_key(
            manufacturer_id=sighting.manufacturer_id,
            device_type=classification.device_type.value,
            continuity=continuity_type(sighting.manufacturer_id, sighting.advertisement_bytes),
            is_tracker=classification.is_tracker,
            beacon_type=classification.beacon_type,
            tx_power=sighting.tx_power,
            service_uuids=sighting.service_uuids,
            name=sighting.name,
        )

        keys = [f'mac:{mac}']
        if fingerprint:
            keys.append(f'fp:{fingerprint}')

        with self._locks.acquire(keys):
            with db.get_db(immediate=True):
                existing = db.get_device_by_address(mac)
                if existing is not None:
                    db.update_device_sighting(
                        existing.id,
                        timestamp=sighting.timestamp,
                        rssi=sighting.rssi,
                        name=sighting.name,
                        payload_fingerprint=fingerprint,
                        device_type=classification.device_type,
                        is_tracker=classification.is_tracker,
                        beacon_type=classification.beacon_type,
                        find_my_separated=bool(findmy and findmy.separated_from_owner),
                        tx_power=sighting.tx_power,
                        appearance=sighting.appearance,
                        shadow_key=more_specific(existing.shadow_key, shadow),
                    )
                    return existing.id

                link = None
                if fingerprint and not composite:
                    link = self._match_fingerprint(fingerprint, mac, sighting.timestamp, config)
                if link is None:
                    link = self._match_temporal(sighting, classification, config)
                if link is None and composite:
                    link = self._match_fingerprint(fingerprint, mac, sighting.timestamp, config)

                device = self._create(sighting, classification, fingerprint, findmy, shadow, link)

        if link is not None:
            logger.info(
                f"MAC rotation: {mac} linked to device {link.canonical_id} "
                f"via {link.target.address} ({link.strength.value}, {link.reason})"
            )
        else:
            logger.debug(f"New device {device.id} for {mac}")
        return device.id

    def identify(self, device_id: int) -> Optional[Identity]:
        """Canonical or Alias view of a stored device."""
        device = db.get_device(device_id)
        return device.identity if device else None

    def _extract(
        self,
        sighting: RawSighting,
        classification: DeviceClassification,
    ) -> tuple[Optional[str], Optional[FindMyStatus]]:
        """Fingerprint and Find My status, degrading to neither on bad payloads."""
        try:
            fingerprint = extract_fingerprint(
                sighting.manufacturer_id,
                sighting.advertisement_bytes,
                sighting.service_uuids,
                device_type=classification.device_type.value,
                appearance=sighting.appearance,
                tx_power=sighting.tx_power,
                name=sighting.name,
            )
            findmy = None
            if sighting.manufacturer_id == APPLE_COMPANY_ID:
                findmy = parse_findmy_payload(sighting.advertisement_bytes)
            return fingerprint, findmy
        except MalformedInputError as e:
            logger.warning(f"Malformed advertisement from {sighting.mac_address}, using heuristics only: {e}")
            return None, None

    def _match_fingerprint(
        self,
        fingerprint: str,
        mac: str,
        timestamp: int,
        config: DetectionConfig,
    ) -> Optional[_Link]:
        matches = [d for d in db.find_devices_by_fingerprint(fingerprint) if d.address != mac]
        if not matches:
            return None

        match = matches[0]
        reason = f'fingerprint_match:{fingerprint}'
        if timestamp - match.last_seen > config.fingerprint_stale_ms:
            return _Link(match, LinkStrength.WEAK, reason + ':stale')
        if is_composite_fingerprint(fingerprint):
            return _Link(match, LinkStrength.WEAK, reason)
        return _Link(match, LinkStrength.STRONG, reason)

    def _match_temporal(
        self,
        sighting: RawSighting,
        classification: DeviceClassification,
        config: DetectionConfig,
    ) -> Optional[_Link]:
        """
        Best recently-quiet device of the same make and type.

        Candidates earn points for RSSI similarity, recency, an identical
        name, an identical appearance and a TX power within 3 dB. The best
        one links only if it reaches TEMPORAL_MIN_SCORE.
        """
        if sighting.manufacturer_id is None:
            return None

        window = config.mac_rotation_max_gap_ms
        candidates = db.find_rotation_candidates(
            sighting.manufacturer_id,
            classification.device_type,
            seen_after=sighting.timestamp - window,
            seen_before=sighting.timestamp,
        )

        best: Optional[tuple[float, Device, bool]] = None
        for candidate in candidates:
            if candidate.address == sighting.mac_address:
                continue
            reference_rssi = _reference_rssi(candidate)
            if reference_rssi is None:
                continue
            rssi_delta = abs(reference_rssi - sighting.rssi)
            if rssi_delta > config.rssi_match_tolerance_db:
                continue

            tolerance = max(config.rssi_match_tolerance_db, 1)
            score = (1.0 - rssi_delta / tolerance) * TEMPORAL_RSSI_POINTS
            gap = sighting.timestamp - candidate.last_seen
            score += max(0.0, (window - gap) / window) * TEMPORAL_RECENCY_POINTS

            name_match = _names_match(sighting.name, candidate.name)
            if name_match:
                score += TEMPORAL_NAME_POINTS
            if sighting.appearance is not None and sighting.appearance == candidate.appearance:
                score += TEMPORAL_APPEARANCE_POINTS
            if (sighting.tx_power is not None and candidate.tx_power is not None
                    and abs(sighting.tx_power - candidate.tx_power) <= TEMPORAL_TX_POWER_TOLERANCE_DB):
                score += TEMPORAL_TX_POWER_POINTS

            if best is None or score > best[0]:
                best = (score, candidate, name_match)

        if best is None:
            return None

        score, candidate, name_match = best
        if score < TEMPORAL_MIN_SCORE:
            logger.debug(
                f"Temporal candidate {candidate.address} for {sighting.mac_address} "
                f"scored {score:.1f}, below {TEMPORAL_MIN_SCORE:.0f}"
            )
            return None
        if name_match:
            return _Link(candidate, LinkStrength.STRONG, f'name_match:{candidate.name}')

        gap_s = (sighting.timestamp - candidate.last_seen) // 1000
        reason = f'temporal:rssi_delta={abs(_reference_rssi(candidate) - sighting.rssi)},gap={gap_s}s'
        return _Link(candidate, LinkStrength.WEAK, reason)

    def _create(
        self,
        sighting: RawSighting,
        classification: DeviceClassification,
        fingerprint: Optional[str],
        findmy: Optional[FindMyStatus],
        shadow: Optional[str],
        link: Optional[_Link],
    ) -> Device:
        device = db.insert_device(
            address=sighting.mac_address,
            timestamp=sighting.timestamp,
            rssi=sighting.rssi,
            name=sighting.name,
            manufacturer_id=sighting.manufacturer_id,
            manufacturer_name=classification.manufacturer_name,
            device_type=classification.device_type,
            is_tracker=classification.is_tracker,
            beacon_type=classification.beacon_type,
            payload_fingerprint=fingerprint,
            find_my_separated=bool(findmy and findmy.separated_from_owner),
            canonical_id=link.canonical_id if link else None,
            link_strength=link.strength if link else None,
            link_reason=link.reason if link else None,
            tx_power=sighting.tx_power,
            appearance=sighting.appearance,
            shadow_key=shadow,
        )
        if link is not None:
            db.mark_mac_rotation(link.canonical_id, sighting.timestamp)
        return device


def _reference_rssi(device: Device) -> Optional[int]:
    return device.last_rssi if device.last_rssi is not None else device.highest_rssi


def _names_match(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


# =============================================================================
# SINGLETON RESOLVER INSTANCE
# =============================================================================

_resolver: Optional[IdentityResolver] = None
_resolver_lock = threading.Lock()


def get_identity_resolver() -> IdentityResolver:
    """Get the shared resolver. Its per-key locks only work if it is shared."""
    global _resolver
    with _resolver_lock:
        if _resolver is None:
            _resolver = IdentityResolver()
        return _resolver


def reset_identity_resolver() -> None:
    global _resolver
    with _resolver_lock:
        _resolver = None
