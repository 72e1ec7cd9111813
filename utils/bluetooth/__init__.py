"""
Bluetooth advertisement analysis for TailGuard.

Tracker signature matching, device classification and payload
fingerprinting for devices that rotate their MAC address.
"""

from .constants import (
    APPLE_COMPANY_ID,
    MANUFACTURER_NAMES,
)
from .fingerprint import (
    FindMyStatus,
    extract_composite_fingerprint,
    extract_fingerprint,
    extract_payload_fingerprint,
    extract_service_uuid_fingerprint,
    name_pattern,
    normalize_service_uuid,
    parse_findmy_payload,
)
from .tracker_signatures import (
    DeviceClassification,
    TrackerConfidence,
    TrackerDetectionResult,
    TrackerSignatureEngine,
    TrackerType,
    detect_tracker,
    get_tracker_engine,
)

__all__ = [
    # Constants
    'APPLE_COMPANY_ID',
    'MANUFACTURER_NAMES',

    # Fingerprinting
    'FindMyStatus',
    'extract_composite_fingerprint',
    'extract_fingerprint',
    'extract_payload_fingerprint',
    'extract_service_uuid_fingerprint',
    'name_pattern',
    'normalize_service_uuid',
    'parse_findmy_payload',

    # Tracker detection
    'TrackerSignatureEngine',
    'TrackerDetectionResult',
    'TrackerType',
    'TrackerConfidence',
    'DeviceClassification',
    'detect_tracker',
    'get_tracker_engine',
]
