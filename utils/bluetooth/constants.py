"""
Bluetooth advertisement constants shared by signature matching and
payload fingerprinting.
"""

from __future__ import annotations

# =============================================================================
# MANUFACTURER IDS (Bluetooth SIG company identifiers)
# =============================================================================

APPLE_COMPANY_ID = 0x004C
SAMSUNG_COMPANY_ID = 0x0075
TILE_COMPANY_ID = 0x00ED
TILE_ALT_COMPANY_ID = 0x038F
CHIPOLO_COMPANY_ID = 0x0A09
EUFY_COMPANY_ID = 0x0590

MANUFACTURER_NAMES = {
    0x004C: 'Apple, Inc.',
    0x0006: 'Microsoft',
    0x000F: 'Broadcom',
    0x0075: 'Samsung Electronics',
    0x00E0: 'Google',
    0x0157: 'Xiaomi',
    0x0310: 'Bose Corporation',
    0x0059: 'Nordic Semiconductor',
    0x0046: 'Sony Corporation',
    0x0002: 'Intel Corporation',
    0x0087: 'Garmin International',
    0x00D2: 'Fitbit',
    0x0154: 'Huawei Technologies',
    0x00ED: 'Tile, Inc.',
    0x038F: 'Tile, Inc.',
    0x0A09: 'Chipolo',
    0x0590: 'Anker (eufy)',
    0x0301: 'Jabra',
    0x01DA: 'Anker Innovations',
}

# =============================================================================
# APPLE CONTINUITY MESSAGE TYPES (first byte of Apple manufacturer data)
# =============================================================================

APPLE_AIRDROP = 0x05
APPLE_PROXIMITY_PAIRING = 0x07    # AirPods / Beats
APPLE_HEY_SIRI = 0x08
APPLE_AIRPLAY_TARGET = 0x09
APPLE_AIRPLAY_SOURCE = 0x0A
APPLE_MAGIC_SWITCH = 0x0B         # Apple Watch
APPLE_HANDOFF = 0x0C              # Mac / iPad
APPLE_TETHERING_TARGET = 0x0D
APPLE_TETHERING_SOURCE = 0x0E
APPLE_NEARBY_ACTION = 0x0F
APPLE_NEARBY_INFO = 0x10          # iPhone / iPad
APPLE_FIND_MY = 0x12              # AirTag / Find My accessory

# =============================================================================
# FIND MY PAYLOAD LAYOUT
# =============================================================================
# Byte 0: type (0x12), byte 1: length (0x19), byte 2: status,
# bytes 3..: rotating public key.

FINDMY_MIN_PAYLOAD_LEN = 3
FINDMY_STATUS_INDEX = 2
FINDMY_SEPARATED_MASK = 0x04
FINDMY_BATTERY_MASK = 0xC0
FINDMY_FINGERPRINT_START = 2
FINDMY_FINGERPRINT_LEN = 6

FINDMY_BATTERY_LEVELS = {
    0x00: 'full',
    0x40: 'medium',
    0x80: 'low',
    0xC0: 'critical',
}

# =============================================================================
# SERVICE UUIDS
# =============================================================================

BLUETOOTH_BASE_UUID_SUFFIX = '-0000-1000-8000-00805f9b34fb'

# 16-bit tracker service UUID -> fingerprint prefix
TRACKER_SERVICE_FINGERPRINT_PREFIXES = {
    'fd5a': 'ST',  # Samsung SmartTag
    'feed': 'TL',  # Tile
    'fe8c': 'CH',  # Chipolo
    'fe2c': 'GF',  # Google Find My Device
    'fe8d': 'PB',  # Pebblebee
    'fe8e': 'CB',  # Cube
    'fe9f': 'EF',  # eufy
    'fea0': 'JT',  # JioTag
}

# Composite fingerprints: several weak signals hashed together
COMPOSITE_PREFIX = 'COMP'
COMPOSITE_MIN_SIGNALS = 3
COMPOSITE_HASH_LEN = 12
NAME_PATTERN_MAX_LEN = 20

# =============================================================================
# DEVICE TYPE HINTS
# =============================================================================

APPLE_CONTINUITY_DEVICE_TYPES = {
    APPLE_NEARBY_INFO: 'phone',
    APPLE_MAGIC_SWITCH: 'watch',
    APPLE_PROXIMITY_PAIRING: 'headphones',
    APPLE_HANDOFF: 'tablet',
}

# Lowercase name fragments -> device type, checked in order
NAME_DEVICE_TYPE_HINTS = [
    ('iphone', 'phone'),
    ('galaxy s', 'phone'),
    ('pixel', 'phone'),
    ('phone', 'phone'),
    ('ipad', 'tablet'),
    ('tab', 'tablet'),
    ('watch', 'watch'),
    ('fitbit', 'fitness'),
    ('band', 'fitness'),
    ('airpods', 'headphones'),
    ('buds', 'headphones'),
    ('headphone', 'headphones'),
    ('speaker', 'speaker'),
    ('soundlink', 'speaker'),
    ('beacon', 'beacon'),
]
