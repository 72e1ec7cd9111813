"""
Data models for the tracker detection core.

Timestamps are epoch milliseconds throughout.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .constants import (
    THREAT_THRESHOLD_CRITICAL,
    THREAT_THRESHOLD_HIGH,
    THREAT_THRESHOLD_LOW,
    THREAT_THRESHOLD_MEDIUM,
)
from .exceptions import MalformedInputError


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# ENUMS
# =============================================================================

class LinkStrength(str, Enum):
    """Confidence that two device rows are the same physical device."""
    STRONG = 'STRONG'  # fingerprint or name match
    WEAK = 'WEAK'      # temporal / RSSI / type heuristics only


class ThreatLevel(str, Enum):
    """Alert severity derived from the total threat score."""
    NONE = 'NONE'
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'
    CRITICAL = 'CRITICAL'

    @property
    def rank(self) -> int:
        return _THREAT_RANK[self]

    @classmethod
    def from_score(cls, score: float) -> 'ThreatLevel':
        """Step function from total score to level."""
        if score >= THREAT_THRESHOLD_CRITICAL:
            return cls.CRITICAL
        if score >= THREAT_THRESHOLD_HIGH:
            return cls.HIGH
        if score >= THREAT_THRESHOLD_MEDIUM:
            return cls.MEDIUM
        if score >= THREAT_THRESHOLD_LOW:
            return cls.LOW
        return cls.NONE


_THREAT_RANK = {
    ThreatLevel.NONE: 0,
    ThreatLevel.LOW: 1,
    ThreatLevel.MEDIUM: 2,
    ThreatLevel.HIGH: 3,
    ThreatLevel.CRITICAL: 4,
}


class DeviceType(str, Enum):
    """Coarse device classification."""
    PHONE = 'phone'
    TABLET = 'tablet'
    WATCH = 'watch'
    FITNESS = 'fitness'
    HEADPHONES = 'headphones'
    SPEAKER = 'speaker'
    BEACON = 'beacon'
    TRACKER = 'tracker'
    UNKNOWN = 'unknown'


class ScanTriggerType(str, Enum):
    """What caused the scan that produced a sighting."""
    MANUAL = 'MANUAL'
    CONTINUOUS = 'CONTINUOUS'
    PERIODIC = 'PERIODIC'
    LOCATION_BASED = 'LOCATION_BASED'


class WhitelistCategory(str, Enum):
    OWN = 'OWN'
    PARTNER = 'PARTNER'
    TRUSTED = 'TRUSTED'


# =============================================================================
# INBOUND RECORDS
# =============================================================================

@dataclass
class RawSighting:
    """One BLE advertisement as delivered by the scanning collaborator."""

    mac_address: str
    rssi: int
    timestamp: int
    advertisement_bytes: Optional[bytes] = None  # manufacturer data after company id
    manufacturer_id: Optional[int] = None
    service_uuids: list[str] = field(default_factory=list)
    scan_trigger_type: ScanTriggerType = ScanTriggerType.CONTINUOUS
    name: Optional[str] = None
    tx_power: Optional[int] = None
    appearance: Optional[int] = None  # GAP appearance value

    def __post_init__(self):
        self.mac_address = self.mac_address.upper()
        if not isinstance(self.scan_trigger_type, ScanTriggerType):
            self.scan_trigger_type = ScanTriggerType(self.scan_trigger_type)


@dataclass
class LocationFix:
    """A GPS fix from the location collaborator."""

    latitude: float
    longitude: float
    accuracy: float
    timestamp: int

    def validate(self) -> None:
        """Raise MalformedInputError for coordinates off the globe."""
        if not -90.0 <= self.latitude <= 90.0:
            raise MalformedInputError(f'Latitude out of range: {self.latitude}')
        if not -180.0 <= self.longitude <= 180.0:
            raise MalformedInputError(f'Longitude out of range: {self.longitude}')
        if self.accuracy < 0:
            raise MalformedInputError(f'Negative accuracy: {self.accuracy}')


# =============================================================================
# IDENTITY
# =============================================================================

@dataclass(frozen=True)
class Canonical:
    """A device row that is its own identity root."""
    device_id: int

    @property
    def canonical_id(self) -> int:
        return self.device_id


@dataclass(frozen=True)
class Alias:
    """A device row created for a rotated MAC, pointing at its root."""
    device_id: int
    canonical_id: int
    strength: LinkStrength
    reason: str


Identity = Union[Canonical, Alias]


# =============================================================================
# STORED ENTITIES
# =============================================================================

@dataclass
class Device:
    """A logical BLE device row."""

    id: int
    address: str
    first_seen: int
    last_seen: int
    name: Optional[str] = None
    manufacturer_id: Optional[int] = None
    manufacturer_name: Optional[str] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    is_tracker: bool = False
    beacon_type: Optional[str] = None
    payload_fingerprint: Optional[str] = None
    find_my_separated: bool = False
    canonical_id: Optional[int] = None
    link_strength: Optional[LinkStrength] = None
    link_reason: Optional[str] = None
    last_mac_rotation: Optional[int] = None
    detection_count: int = 1
    highest_rssi: Optional[int] = None
    last_rssi: Optional[int] = None
    tx_power: Optional[int] = None
    appearance: Optional[int] = None
    shadow_key: Optional[str] = None

    @property
    def identity(self) -> Identity:
        if self.canonical_id is None:
            return Canonical(self.id)
        return Alias(
            device_id=self.id,
            canonical_id=self.canonical_id,
            strength=self.link_strength or LinkStrength.WEAK,
            reason=self.link_reason or '',
        )

    @classmethod
    def from_row(cls, row: Any) -> 'Device':
        return cls(
            id=row['id'],
            address=row['address'],
            first_seen=row['first_seen'],
            last_seen=row['last_seen'],
            name=row['name'],
            manufacturer_id=row['manufacturer_id'],
            manufacturer_name=row['manufacturer_name'],
            device_type=DeviceType(row['device_type'] or DeviceType.UNKNOWN.value),
            is_tracker=bool(row['is_tracker']),
            beacon_type=row['beacon_type'],
            payload_fingerprint=row['payload_fingerprint'],
            find_my_separated=bool(row['find_my_separated']),
            canonical_id=row['canonical_id'],
            link_strength=LinkStrength(row['link_strength']) if row['link_strength'] else None,
            link_reason=row['link_reason'],
            last_mac_rotation=row['last_mac_rotation'],
            detection_count=row['detection_count'],
            highest_rssi=row['highest_rssi'],
            last_rssi=row['last_rssi'],
            tx_power=row['tx_power'],
            appearance=row['appearance'],
            shadow_key=row['shadow_key'],
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'address': self.address,
            'name': self.name,
            'manufacturer_id': self.manufacturer_id,
            'manufacturer_name': self.manufacturer_name,
            'device_type': self.device_type.value,
            'is_tracker': self.is_tracker,
            'beacon_type': self.beacon_type,
            'payload_fingerprint': self.payload_fingerprint,
            'find_my_separated': self.find_my_separated,
            'canonical_id': self.canonical_id,
            'link_strength': self.link_strength.value if self.link_strength else None,
            'link_reason': self.link_reason,
            'last_mac_rotation': self.last_mac_rotation,
            'first_seen': self.first_seen,
            'last_seen': self.last_seen,
            'detection_count': self.detection_count,
            'highest_rssi': self.highest_rssi,
            'tx_power': self.tx_power,
            'shadow_key': self.shadow_key,
        }


@dataclass
class DeviceChain:
    """A canonical device together with every alias linked to it."""

    canonical: Device
    aliases: list[Device] = field(default_factory=list)

    @property
    def members(self) -> list[Device]:
        return [self.canonical] + self.aliases

    @property
    def member_ids(self) -> list[int]:
        return [d.id for d in self.members]

    @property
    def addresses(self) -> list[str]:
        return [d.address for d in self.members]

    @property
    def is_tracker(self) -> bool:
        return any(d.is_tracker for d in self.members)

    @property
    def find_my_separated(self) -> bool:
        return any(d.find_my_separated for d in self.members)

    @property
    def display_name(self) -> str:
        for device in self.members:
            if device.name:
                return device.name
        return 'Unknown Device'


@dataclass
class Location:
    """A clustered place."""

    id: int
    latitude: float
    longitude: float
    accuracy: float
    first_seen: int
    last_seen: int

    @classmethod
    def from_row(cls, row: Any) -> 'Location':
        return cls(
            id=row['id'],
            latitude=row['latitude'],
            longitude=row['longitude'],
            accuracy=row['accuracy'],
            first_seen=row['first_seen'],
            last_seen=row['last_seen'],
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': round(self.accuracy, 1),
            'first_seen': self.first_seen,
            'last_seen': self.last_seen,
        }


@dataclass(frozen=True)
class ShadowLocationCount:
    """How many distinct devices of one shadow were seen at one place."""
    location_id: int
    device_count: int
    max_rssi: Optional[int] = None


@dataclass(frozen=True)
class UserPathPoint:
    """One breadcrumb of the user's own movement."""
    location_id: int
    timestamp: int
    accuracy: float = 0.0


@dataclass
class SightingRecord:
    """Device-to-location fact row."""

    id: int
    device_id: int
    location_id: int
    rssi: int
    timestamp: int
    scan_trigger_type: ScanTriggerType
    location_changed: bool
    distance_from_last_m: Optional[float]

    @classmethod
    def from_row(cls, row: Any) -> 'SightingRecord':
        return cls(
            id=row['id'],
            device_id=row['device_id'],
            location_id=row['location_id'],
            rssi=row['rssi'],
            timestamp=row['timestamp'],
            scan_trigger_type=ScanTriggerType(row['scan_trigger_type']),
            location_changed=bool(row['location_changed']),
            distance_from_last_m=row['distance_from_last_m'],
        )


@dataclass(frozen=True)
class SightingSnapshot:
    """Read-only view of a sighting joined with its place, used for scoring."""
    device_id: int
    location_id: int
    latitude: float
    longitude: float
    timestamp: int
    rssi: int
    link_strength: Optional[LinkStrength] = None  # None when seen by the canonical row


@dataclass
class WhitelistEntry:
    id: int
    device_id: int
    category: WhitelistCategory
    label: Optional[str] = None
    added_via_learn_mode: bool = False
    notes: Optional[str] = None
    created_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Any) -> 'WhitelistEntry':
        return cls(
            id=row['id'],
            device_id=row['device_id'],
            category=WhitelistCategory(row['category']),
            label=row['label'],
            added_via_learn_mode=bool(row['added_via_learn_mode']),
            notes=row['notes'],
            created_at=row['created_at'],
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'device_id': self.device_id,
            'category': self.category.value,
            'label': self.label,
            'added_via_learn_mode': self.added_via_learn_mode,
            'notes': self.notes,
            'created_at': self.created_at,
        }


# =============================================================================
# SCORING OUTPUT
# =============================================================================

@dataclass(frozen=True)
class CorrelationBreakdown:
    """Movement correlation between a device and the user's path."""
    sync_score: float = 0.0
    route_score: float = 0.0
    dwell_score: float = 0.0
    time_pattern_score: float = 0.0
    total: float = 0.0
    sufficient_data: bool = False

    def to_dict(self) -> dict:
        return {
            'sync_score': round(self.sync_score, 3),
            'route_score': round(self.route_score, 3),
            'dwell_score': round(self.dwell_score, 3),
            'time_pattern_score': round(self.time_pattern_score, 3),
            'total': round(self.total, 3),
            'sufficient_data': self.sufficient_data,
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    """Explainable multi-factor threat score for one device chain."""

    location_score: float
    distance_score: float
    time_score: float
    consistency_score: float
    device_type_score: float
    total: float
    threat_level: ThreatLevel

    # Inputs behind the sub-scores
    distinct_location_count: int = 0
    effective_location_count: float = 0.0
    max_distance_m: float = 0.0
    avg_distance_m: float = 0.0
    time_span_ms: int = 0
    outing_count: int = 0
    time_score_source: str = 'span'
    correlation: Optional[CorrelationBreakdown] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'location_score': round(self.location_score, 4),
            'distance_score': round(self.distance_score, 4),
            'time_score': round(self.time_score, 4),
            'consistency_score': round(self.consistency_score, 4),
            'device_type_score': round(self.device_type_score, 4),
            'total': round(self.total, 4),
            'threat_level': self.threat_level.value,
            'distinct_location_count': self.distinct_location_count,
            'effective_location_count': round(self.effective_location_count, 2),
            'max_distance_m': round(self.max_distance_m, 1),
            'avg_distance_m': round(self.avg_distance_m, 1),
            'time_span_ms': self.time_span_ms,
            'outing_count': self.outing_count,
            'time_score_source': self.time_score_source,
            'correlation': self.correlation.to_dict() if self.correlation else None,
        }


@dataclass
class Detection:
    """A scored chain that cleared the threat thresholds."""
    chain: DeviceChain
    breakdown: ScoreBreakdown
    location_ids: list[int]
    reason: str
    shadow: Optional[dict] = None

    @property
    def device_id(self) -> int:
        return self.chain.canonical.id


@dataclass
class AlertRecord:
    """Persisted output of a detection pass."""

    id: int
    device_id: int
    created_at: int
    level: ThreatLevel
    title: str
    message: str
    device_addresses: list[str]
    location_ids: list[int]
    threat_score: float
    breakdown: dict
    details: dict
    dismissed: bool = False
    dismissed_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'device_id': self.device_id,
            'created_at': self.created_at,
            'level': self.level.value,
            'title': self.title,
            'message': self.message,
            'device_addresses': self.device_addresses,
            'location_ids': self.location_ids,
            'threat_score': round(self.threat_score, 4),
            'breakdown': self.breakdown,
            'details': self.details,
            'dismissed': self.dismissed,
            'dismissed_at': self.dismissed_at,
        }


@dataclass
class DetectionPassResult:
    """Summary of one detection pass."""

    detections_found: int = 0
    alerts_generated: list[int] = field(default_factory=list)
    elapsed_ms: int = 0
    skipped: bool = False
    cancelled: bool = False
    failed_devices: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'detections_found': self.detections_found,
            'alerts_generated': self.alerts_generated,
            'elapsed_ms': self.elapsed_ms,
            'skipped': self.skipped,
            'cancelled': self.cancelled,
            'failed_devices': self.failed_devices,
        }
