"""
Payload fingerprinting for BLE devices that rotate their MAC address.

A fingerprint is derived from the semi-static part of an advertisement so
that a new MAC can be linked back to the device that advertised it before.

Fingerprint formats:
    FM:<hex>              Apple Find My (status byte + public key prefix)
    PP:<model><st><col>   Apple proximity pairing (AirPods / Beats)
    <XX>:<UUID>:<hex>     Non-Apple tracker service UUID + payload prefix
    COMP:<hex>            Hash of make, type, appearance, TX power, UUIDs, name
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Optional

from utils.tracking.exceptions import MalformedInputError

from .constants import (
    APPLE_COMPANY_ID,
    APPLE_FIND_MY,
    APPLE_PROXIMITY_PAIRING,
    BLUETOOTH_BASE_UUID_SUFFIX,
    COMPOSITE_HASH_LEN,
    COMPOSITE_MIN_SIGNALS,
    COMPOSITE_PREFIX,
    FINDMY_BATTERY_LEVELS,
    FINDMY_BATTERY_MASK,
    FINDMY_FINGERPRINT_LEN,
    FINDMY_FINGERPRINT_START,
    FINDMY_MIN_PAYLOAD_LEN,
    FINDMY_SEPARATED_MASK,
    FINDMY_STATUS_INDEX,
    NAME_PATTERN_MAX_LEN,
    TRACKER_SERVICE_FINGERPRINT_PREFIXES,
)

logger = logging.getLogger('tailguard.bluetooth.fingerprint')

_PARENTHESIZED = re.compile(r'\([^)]*\)')
_MAC_FRAGMENT = re.compile(r'\b[0-9A-F]{2}(?:[:-][0-9A-F]{2})+\b')
_POSSESSIVE = re.compile(r"['\u2019]S\b")
_SERIAL_NUMBER = re.compile(r'\b[0-9]{2,}\b')
_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class FindMyStatus:
    """Decoded Find My advertisement status."""

    status_byte: int
    separated_from_owner: bool
    battery_level: str
    payload_fingerprint: str

    def to_dict(self) -> dict:
        return {
            'status_byte': self.status_byte,
            'separated_from_owner': self.separated_from_owner,
            'battery_level': self.battery_level,
            'payload_fingerprint': self.payload_fingerprint,
        }


def normalize_service_uuid(uuid: str) -> str:
    """Lowercase a service UUID, collapsing Bluetooth Base UUIDs to 16 bits."""
    uuid_lower = uuid.strip().lower()
    if len(uuid_lower) == 36 and uuid_lower.endswith(BLUETOOTH_BASE_UUID_SUFFIX):
        return uuid_lower[4:8]
    return uuid_lower


def continuity_type(manufacturer_id: Optional[int], payload: Optional[bytes]) -> Optional[int]:
    """Apple continuity message type byte, or None for non-Apple payloads."""
    if manufacturer_id != APPLE_COMPANY_ID or not payload:
        return None
    return payload[0]


def parse_findmy_payload(payload: Optional[bytes]) -> Optional[FindMyStatus]:
    """
    Parse an Apple Find My advertisement.

    Args:
        payload: Apple manufacturer data (after the company id).

    Returns:
        FindMyStatus, or None if the payload is not a Find My message.

    Raises:
        MalformedInputError: If the payload claims to be Find My but is
            too short to carry a status byte.
    """
    if not payload or payload[0] != APPLE_FIND_MY:
        return None

    if len(payload) < FINDMY_MIN_PAYLOAD_LEN:
        raise MalformedInputError(
            f'Find My payload too short: {len(payload)} bytes ({payload.hex()})'
        )

    status = payload[FINDMY_STATUS_INDEX]
    end = min(FINDMY_FINGERPRINT_START + FINDMY_FINGERPRINT_LEN, len(payload))
    fingerprint = payload[FINDMY_FINGERPRINT_START:end].hex().upper()

    return FindMyStatus(
        status_byte=status,
        separated_from_owner=bool(status & FINDMY_SEPARATED_MASK),
        battery_level=FINDMY_BATTERY_LEVELS.get(status & FINDMY_BATTERY_MASK, 'unknown'),
        payload_fingerprint=fingerprint,
    )


def extract_payload_fingerprint(
    manufacturer_id: Optional[int],
    payload: Optional[bytes],
) -> Optional[str]:
    """
    Extract a fingerprint from Apple continuity payloads.

    Only Find My and proximity pairing messages carry data stable enough to
    fingerprint. Nearby info, handoff and the other continuity types rotate
    their auth tags together with the MAC and are not fingerprinted.

    Raises:
        MalformedInputError: If a Find My payload is truncated.
    """
    msg_type = continuity_type(manufacturer_id, payload)
    if msg_type is None:
        return None

    if msg_type == APPLE_FIND_MY:
        status = parse_findmy_payload(payload)
        return f'FM:{status.payload_fingerprint}' if status else None

    if msg_type == APPLE_PROXIMITY_PAIRING:
        if len(payload) < 4:
            return None
        model_id = (payload[2] << 8) | payload[1]
        status_byte = payload[4] if len(payload) >= 5 else 0
        color_byte = payload[6] if len(payload) >= 7 else 0
        return f'PP:{model_id:04X}{status_byte & 0xF0:02X}{color_byte:02X}'

    return None


def extract_service_uuid_fingerprint(
    service_uuids: Optional[list[str]],
    payload: Optional[bytes],
) -> Optional[str]:
    """
    Fingerprint non-Apple trackers by their service UUID.

    The first four payload bytes are appended to tell apart several devices
    of the same tracker family.
    """
    if not service_uuids:
        return None

    normalized = [normalize_service_uuid(u) for u in service_uuids]
    payload_hex = payload[:4].hex().upper() if payload else ''

    for short_uuid, prefix in TRACKER_SERVICE_FINGERPRINT_PREFIXES.items():
        if short_uuid in normalized:
            return f'{prefix}:{short_uuid.upper()}:{payload_hex}'

    return None


def name_pattern(name: Optional[str]) -> str:
    """
    Stable part of an advertised name.

    Owner names in parentheses or possessives, serial-like numbers and MAC
    fragments are dropped: "Galaxy Buds2 (Sam's) 4F:A2" becomes "GALAXY BUDS2".
    """
    if not name:
        return ''
    pattern = name.upper()
    pattern = _PARENTHESIZED.sub('', pattern)
    pattern = _MAC_FRAGMENT.sub('', pattern)
    pattern = _POSSESSIVE.sub('', pattern)
    pattern = _SERIAL_NUMBER.sub('', pattern)
    pattern = _WHITESPACE.sub(' ', pattern).strip()
    return pattern[:NAME_PATTERN_MAX_LEN]


def _short_hash(text: str, length: int = 8) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest().upper()[:length]


def extract_composite_fingerprint(
    manufacturer_id: Optional[int] = None,
    device_type: Optional[str] = None,
    appearance: Optional[int] = None,
    tx_power: Optional[int] = None,
    service_uuids: Optional[list[str]] = None,
    name: Optional[str] = None,
) -> Optional[str]:
    """
    Fingerprint built from several semi-stable advertisement fields.

    Used for devices that carry no payload or service UUID fingerprint.
    Two different devices of the same make and model can share one, so
    matches on it are never treated as certain.

    Args:
        manufacturer_id: Bluetooth SIG company id (0 counts as absent).
        device_type: Device type value; 'unknown' counts as absent.
        appearance: GAP appearance value (0 counts as absent).
        tx_power: Advertised TX power in dBm.
        service_uuids: Advertised service UUIDs.
        name: Advertised name, reduced to its stable pattern.

    Returns:
        'COMP:<12 hex>' when at least three signals are present, else None.
    """
    components = []
    if manufacturer_id:
        components.append(f'M{manufacturer_id:04X}')
    if device_type and device_type != 'unknown':
        components.append(f'T{device_type[:3].upper()}')
    if appearance:
        components.append(f'A{appearance:04X}')
    if tx_power is not None:
        components.append(f'P{min(100, max(0, tx_power + 100)):02X}')
    if service_uuids:
        uuids = sorted(normalize_service_uuid(u)[:8].upper() for u in service_uuids)
        components.append(f'U{_short_hash("".join(uuids))}')
    pattern = name_pattern(name)
    if pattern:
        components.append(f'N{_short_hash(pattern)}')

    if len(components) < COMPOSITE_MIN_SIGNALS:
        return None

    digest = _short_hash(':'.join(sorted(components)), COMPOSITE_HASH_LEN)
    logger.debug(f"Composite fingerprint from {len(components)} signals: {digest}")
    return f'{COMPOSITE_PREFIX}:{digest}'


def is_composite_fingerprint(fingerprint: Optional[str]) -> bool:
    return bool(fingerprint) and fingerprint.startswith(COMPOSITE_PREFIX + ':')


def extract_fingerprint(
    manufacturer_id: Optional[int],
    payload: Optional[bytes],
    service_uuids: Optional[list[str]] = None,
    device_type: Optional[str] = None,
    appearance: Optional[int] = None,
    tx_power: Optional[int] = None,
    name: Optional[str] = None,
) -> Optional[str]:
    """
    Best available fingerprint for an advertisement.

    Apple payload fingerprints take priority over service UUID fingerprints,
    which take priority over composite fingerprints.

    Raises:
        MalformedInputError: If the payload is structurally broken.
    """
    fingerprint = extract_payload_fingerprint(manufacturer_id, payload)
    if fingerprint:
        return fingerprint
    fingerprint = extract_service_uuid_fingerprint(service_uuids, payload)
    if fingerprint:
        return fingerprint
    return extract_composite_fingerprint(
        manufacturer_id, device_type, appearance, tx_power, service_uuids, name,
    )
