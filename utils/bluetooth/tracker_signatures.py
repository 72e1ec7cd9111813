"""
Tracker signature matching and device classification.

Recognises AirTags, Find My accessories, Tile, Samsung SmartTag and other
BLE trackers from manufacturer data, service UUIDs, MAC prefixes and names,
and assigns every advertisement a coarse device type.

A signature match means the device RESEMBLES a known tracker. It is an
indicator, not proof.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from utils.tracking.models import DeviceType

from .constants import (
    APPLE_COMPANY_ID,
    APPLE_CONTINUITY_DEVICE_TYPES,
    APPLE_FIND_MY,
    CHIPOLO_COMPANY_ID,
    EUFY_COMPANY_ID,
    MANUFACTURER_NAMES,
    NAME_DEVICE_TYPE_HINTS,
    SAMSUNG_COMPANY_ID,
    TILE_ALT_COMPANY_ID,
    TILE_COMPANY_ID,
)
from .fingerprint import continuity_type, normalize_service_uuid

logger = logging.getLogger('tailguard.bluetooth.tracker_signatures')


# =============================================================================
# TRACKER TYPES
# =============================================================================

class TrackerType(str, Enum):
    """Known tracker families."""
    AIRTAG = 'airtag'
    FINDMY_ACCESSORY = 'findmy_accessory'
    TILE = 'tile'
    SAMSUNG_SMARTTAG = 'samsung_smarttag'
    CHIPOLO = 'chipolo'
    PEBBLEBEE = 'pebblebee'
    EUFY = 'eufy'
    UNKNOWN_TRACKER = 'unknown_tracker'
    NOT_A_TRACKER = 'not_a_tracker'


class TrackerConfidence(str, Enum):
    """Confidence level for tracker detection."""
    HIGH = 'high'        # Multiple strong indicators match
    MEDIUM = 'medium'    # Some indicators match
    LOW = 'low'          # Weak indicators, needs investigation
    NONE = 'none'        # Not detected as tracker


# Indicator weights
WEIGHT_COMPANY_ID = 0.35
WEIGHT_PAYLOAD_PREFIX = 0.30
WEIGHT_PAYLOAD_LENGTH = 0.10
WEIGHT_SERVICE_UUID = 0.25
WEIGHT_MAC_PREFIX = 0.20
WEIGHT_NAME = 0.15

TRACKER_MIN_SCORE = 0.3
CONFIDENCE_HIGH_SCORE = 0.7
CONFIDENCE_MEDIUM_SCORE = 0.5

APPLE_FINDMY_SERVICE_UUID = 'fd6f'
BEACON_SERVICE_UUIDS = ['feaa', 'feab', 'feb1', 'febe']


@dataclass
class TrackerSignature:
    """Defines a tracker signature pattern."""
    tracker_type: TrackerType
    name: str
    company_ids: list[int] = field(default_factory=list)
    payload_prefixes: list[bytes] = field(default_factory=list)
    service_uuids: list[str] = field(default_factory=list)
    mac_prefixes: list[str] = field(default_factory=list)
    name_patterns: list[str] = field(default_factory=list)
    min_payload_len: int = 0
    confidence_boost: float = 0.0


TRACKER_SIGNATURES: list[TrackerSignature] = [
    TrackerSignature(
        tracker_type=TrackerType.AIRTAG,
        name='Apple AirTag',
        company_ids=[APPLE_COMPANY_ID],
        payload_prefixes=[bytes([0x12, 0x19]), bytes([APPLE_FIND_MY])],
        service_uuids=[APPLE_FINDMY_SERVICE_UUID],
        name_patterns=['airtag'],
        min_payload_len=22,
        confidence_boost=0.2,
    ),
    TrackerSignature(
        tracker_type=TrackerType.FINDMY_ACCESSORY,
        name='Find My Accessory',
        company_ids=[APPLE_COMPANY_ID],
        payload_prefixes=[bytes([APPLE_FIND_MY])],
        service_uuids=[APPLE_FINDMY_SERVICE_UUID],
        name_patterns=['findmy', 'find my', 'chipolo one spot', 'belkin'],
    ),
    TrackerSignature(
        tracker_type=TrackerType.TILE,
        name='Tile Tracker',
        company_ids=[TILE_COMPANY_ID, TILE_ALT_COMPANY_ID],
        service_uuids=['feed'],
        mac_prefixes=['C4:E7', 'DC:54', 'E4:B0', 'F8:8A', 'E6:43', '90:32', 'D0:72'],
        name_patterns=['tile'],
    ),
    TrackerSignature(
        tracker_type=TrackerType.SAMSUNG_SMARTTAG,
        name='Samsung SmartTag',
        company_ids=[SAMSUNG_COMPANY_ID],
        service_uuids=['fd5a'],
        mac_prefixes=['58:4D', 'A0:75', 'B8:D7', '50:32'],
        name_patterns=['smarttag', 'smart tag', 'galaxy tag'],
    ),
    TrackerSignature(
        tracker_type=TrackerType.CHIPOLO,
        name='Chipolo',
        company_ids=[CHIPOLO_COMPANY_ID],
        service_uuids=['fe8c', 'feb1'],
        name_patterns=['chipolo'],
    ),
    TrackerSignature(
        tracker_type=TrackerType.PEBBLEBEE,
        name='PebbleBee',
        service_uuids=['feab', 'fe8d'],
        mac_prefixes=['D4:3D', 'E0:E5'],
        name_patterns=['pebblebee', 'pebble bee', 'honey'],
    ),
    TrackerSignature(
        tracker_type=TrackerType.EUFY,
        name='Eufy SmartTrack',
        company_ids=[EUFY_COMPANY_ID],
        service_uuids=['fe9f'],
        name_patterns=['eufy', 'smarttrack'],
    ),
]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class TrackerDetectionResult:
    """Result of tracker signature analysis."""

    is_tracker: bool = False
    tracker_type: TrackerType = TrackerType.NOT_A_TRACKER
    tracker_name: str = ''
    confidence: TrackerConfidence = TrackerConfidence.NONE
    confidence_score: float = 0.0
    evidence: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'is_tracker': self.is_tracker,
            'tracker_type': self.tracker_type.value,
            'tracker_name': self.tracker_name,
            'confidence': self.confidence.value,
            'confidence_score': round(self.confidence_score, 2),
            'evidence': self.evidence,
        }


@dataclass
class DeviceClassification:
    """What the identity layer records about an advertiser."""

    device_type: DeviceType
    is_tracker: bool
    beacon_type: Optional[str]
    manufacturer_name: Optional[str]
    tracker: TrackerDetectionResult


# =============================================================================
# ENGINE
# =============================================================================

class TrackerSignatureEngine:
    """
    Scores an advertisement against every known tracker signature.

    Indicators are cumulative: the more that match, the higher the
    confidence. An Apple company id alone counts for nothing, since phones,
    watches and earbuds share it.
    """

    def __init__(self, signatures: Optional[list[TrackerSignature]] = None):
        self.signatures = signatures if signatures is not None else TRACKER_SIGNATURES

    def detect_tracker(
        self,
        address: str,
        name: Optional[str] = None,
        manufacturer_id: Optional[int] = None,
        manufacturer_data: Optional[bytes] = None,
        service_uuids: Optional[list[str]] = None,
    ) -> TrackerDetectionResult:
        """
        Analyze an advertisement for tracker indicators.

        Args:
            address: MAC address as advertised.
            name: Advertised local name, if any.
            manufacturer_id: Bluetooth SIG company id.
            manufacturer_data: Manufacturer payload after the company id.
            service_uuids: Advertised service UUIDs.

        Returns:
            TrackerDetectionResult with the best matching signature and the
            evidence that matched.
        """
        uuids = [normalize_service_uuid(u) for u in (service_uuids or [])]

        best_sig: Optional[TrackerSignature] = None
        best_score = 0.0
        best_evidence: list[str] = []

        for signature in self.signatures:
            score, evidence = self._score_signature(
                signature, address, name, manufacturer_id, manufacturer_data, uuids
            )
            if score > best_score:
                best_sig, best_score, best_evidence = signature, score, evidence

        if best_score < TRACKER_MIN_SCORE:
            generic_score, generic_evidence = self._score_generic(manufacturer_id, manufacturer_data, uuids)
            if generic_score > best_score:
                best_sig, best_score, best_evidence = None, generic_score, generic_evidence

        result = TrackerDetectionResult()
        if best_score < TRACKER_MIN_SCORE:
            return result

        result.is_tracker = True
        result.confidence_score = min(1.0, best_score)
        result.evidence = best_evidence
        if best_sig:
            result.tracker_type = best_sig.tracker_type
            result.tracker_name = best_sig.name
        else:
            result.tracker_type = TrackerType.UNKNOWN_TRACKER
            result.tracker_name = 'Unknown Tracker'

        if best_score >= CONFIDENCE_HIGH_SCORE:
            result.confidence = TrackerConfidence.HIGH
        elif best_score >= CONFIDENCE_MEDIUM_SCORE:
            result.confidence = TrackerConfidence.MEDIUM
        else:
            result.confidence = TrackerConfidence.LOW

        return result

    def _score_signature(
        self,
        signature: TrackerSignature,
        address: str,
        name: Optional[str],
        manufacturer_id: Optional[int],
        payload: Optional[bytes],
        uuids: list[str],
    ) -> tuple[float, list[str]]:
        """Score how well an advertisement matches one signature."""
        score = 0.0
        evidence = []

        if manufacturer_id is not None and manufacturer_id in signature.company_ids:
            findmy_hint = (
                (payload and payload[0] == APPLE_FIND_MY)
                or APPLE_FINDMY_SERVICE_UUID in uuids
            )
            if manufacturer_id != APPLE_COMPANY_ID or findmy_hint:
                score += WEIGHT_COMPANY_ID
                evidence.append(f'Manufacturer ID 0x{manufacturer_id:04X} matches {signature.name}')

        if payload and any(payload.startswith(p) for p in signature.payload_prefixes):
            score += WEIGHT_PAYLOAD_PREFIX
            evidence.append(f'Manufacturer data pattern matches {signature.name}')

        if payload and signature.min_payload_len and len(payload) >= signature.min_payload_len:
            score += WEIGHT_PAYLOAD_LENGTH
            evidence.append(f'Payload length ({len(payload)} bytes) consistent with {signature.name}')

        matched_uuid = next((u for u in signature.service_uuids if u in uuids), None)
        if matched_uuid:
            score += WEIGHT_SERVICE_UUID
            evidence.append(f'Service UUID {matched_uuid} matches {signature.name}')

        mac_upper = address.upper()
        matched_prefix = next((p for p in signature.mac_prefixes if mac_upper.startswith(p)), None)
        if matched_prefix:
            score += WEIGHT_MAC_PREFIX
            evidence.append(f'MAC prefix {matched_prefix} matches known {signature.name} range')

        if name:
            name_lower = name.lower()
            pattern = next((p for p in signature.name_patterns if p in name_lower), None)
            if pattern:
                score += WEIGHT_NAME
                evidence.append(f'Device name "{name}" contains pattern "{pattern}"')

        if score > 0:
            score += signature.confidence_boost

        return score, evidence

    def _score_generic(
        self,
        manufacturer_id: Optional[int],
        payload: Optional[bytes],
        uuids: list[str],
    ) -> tuple[float, list[str]]:
        """Indicators of an unknown tracker that matches no signature."""
        score = 0.0
        evidence = []

        if APPLE_FINDMY_SERVICE_UUID in uuids:
            score += 0.4
            evidence.append('Uses Apple Find My network service (fd6f)')

        if manufacturer_id == APPLE_COMPANY_ID and payload and len(payload) >= 2 and payload[0] == APPLE_FIND_MY:
            score += 0.35
            evidence.append('Apple Find My network advertisement detected')

        beacon_uuid = next((u for u in BEACON_SERVICE_UUIDS if u in uuids), None)
        if beacon_uuid and score > 0:
            score += 0.15
            evidence.append(f'Uses beacon service UUID ({beacon_uuid})')

        return score, evidence

    def classify(
        self,
        address: str,
        name: Optional[str] = None,
        manufacturer_id: Optional[int] = None,
        manufacturer_data: Optional[bytes] = None,
        service_uuids: Optional[list[str]] = None,
    ) -> DeviceClassification:
        """
        Classify an advertisement for storage on the device row.

        Trackers win over every other hint; otherwise the Apple continuity
        type, then the advertised name decide the device type.
        """
        tracker = self.detect_tracker(address, name, manufacturer_id, manufacturer_data, service_uuids)
        manufacturer_name = MANUFACTURER_NAMES.get(manufacturer_id) if manufacturer_id is not None else None

        if tracker.is_tracker:
            return DeviceClassification(
                device_type=DeviceType.TRACKER,
                is_tracker=True,
                beacon_type=tracker.tracker_type.value,
                manufacturer_name=manufacturer_name,
                tracker=tracker,
            )

        device_type = DeviceType.UNKNOWN
        msg_type = continuity_type(manufacturer_id, manufacturer_data)
        if msg_type in APPLE_CONTINUITY_DEVICE_TYPES:
            device_type = DeviceType(APPLE_CONTINUITY_DEVICE_TYPES[msg_type])
        elif name:
            name_lower = name.lower()
            for fragment, type_name in NAME_DEVICE_TYPE_HINTS:
                if fragment in name_lower:
                    device_type = DeviceType(type_name)
                    break

        return DeviceClassification(
            device_type=device_type,
            is_tracker=False,
            beacon_type=None,
            manufacturer_name=manufacturer_name,
            tracker=tracker,
        )


# =============================================================================
# SINGLETON ENGINE INSTANCE
# =============================================================================

_engine_instance: Optional[TrackerSignatureEngine] = None


def get_tracker_engine() -> TrackerSignatureEngine:
    """Get the singleton tracker signature engine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = TrackerSignatureEngine()
    return _engine_instance


def detect_tracker(
    address: str,
    name: Optional[str] = None,
    manufacturer_id: Optional[int] = None,
    manufacturer_data: Optional[bytes] = None,
    service_uuids: Optional[list[str]] = None,
) -> TrackerDetectionResult:
    """Convenience wrapper around the singleton engine."""
    return get_tracker_engine().detect_tracker(
        address=address,
        name=name,
        manufacturer_id=manufacturer_id,
        manufacturer_data=manufacturer_data,
        service_uuids=service_uuids,
    )
