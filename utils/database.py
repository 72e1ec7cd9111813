"""
SQLite storage for devices, places, sightings, alerts and settings.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Union

from utils.tracking.exceptions import MalformedInputError, TransientStorageError
from utils.tracking.models import (
    AlertRecord,
    Device,
    DeviceChain,
    DeviceType,
    LinkStrength,
    Location,
    ScanTriggerType,
    ShadowLocationCount,
    SightingRecord,
    SightingSnapshot,
    ThreatLevel,
    UserPathPoint,
    WhitelistCategory,
    WhitelistEntry,
)

logger = logging.getLogger('tailguard.database')

# Database file location
DB_DIR = Path(__file__).parent.parent / 'instance'
DB_PATH = DB_DIR / 'tailguard.db'

# Bounded wait for sqlite locks before surfacing a retryable error
DB_TIMEOUT_SECONDS = 5.0

# Thread-local storage for connections
_local = threading.local()

_db_path_override: Optional[Path] = None


def set_db_path(path: Optional[Union[str, Path]]) -> None:
    """Point the store at another database file. None restores the default."""
    global _db_path_override
    _db_path_override = Path(path) if path is not None else None


def get_db_path() -> Path:
    """Get the database file path, creating directory if needed."""
    if _db_path_override is not None:
        path = _db_path_override
    elif os.environ.get('TAILGUARD_DB_PATH'):
        path = Path(os.environ['TAILGUARD_DB_PATH'])
    else:
        path = DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_connection() -> sqlite3.Connection:
    """Get a thread-local database connection for the current db path."""
    db_path = str(get_db_path())
    conn = getattr(_local, 'connection', None)
    if conn is not None and getattr(_local, 'path', None) != db_path:
        conn.close()
        conn = None

    if conn is None:
        try:
            conn = sqlite3.connect(db_path, timeout=DB_TIMEOUT_SECONDS, check_same_thread=False)
        except sqlite3.OperationalError as e:
            raise TransientStorageError(f'Cannot open database {db_path}: {e}') from e
        conn.row_factory = sqlite3.Row
        # Enable foreign keys
        conn.execute('PRAGMA foreign_keys = ON')
        _local.connection = conn
        _local.path = db_path
        _local.depth = 0
    return conn


def _is_transient(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return 'locked' in message or 'busy' in message


@contextmanager
def get_db(immediate: bool = False):
    """
    Context manager for database operations.

    Nested uses on one thread share the outermost transaction. With
    ``immediate`` the outermost block takes the write lock up front so a
    read-then-write sequence cannot be interleaved by another writer.

    Raises:
        TransientStorageError: When sqlite reports lock contention or the
            bounded wait expires.
    """
    conn = get_connection()
    depth = getattr(_local, 'depth', 0)
    outermost = depth == 0

    if outermost and immediate:
        try:
            conn.execute('BEGIN IMMEDIATE')
        except sqlite3.OperationalError as e:
            if _is_transient(e):
                raise TransientStorageError(f'Database busy: {e}') from e
            raise

    _local.depth = depth + 1
    try:
        yield conn
        if outermost:
            conn.commit()
    except sqlite3.OperationalError as e:
        if outermost:
            conn.rollback()
        if _is_transient(e):
            raise TransientStorageError(f'Database busy: {e}') from e
        raise
    except Exception:
        if outermost:
            conn.rollback()
        raise
    finally:
        _local.depth = depth


def init_db() -> None:
    """Initialize the database schema."""
    db_path = get_db_path()
    logger.info(f"Initializing database at {db_path}")

    with get_db() as conn:
        # Settings table for key-value storage
        conn.execute('''
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                value_type TEXT DEFAULT 'string',
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Logical BLE devices. Rotated MACs get their own row pointing at
        # the canonical row; aliases never point at other aliases.
        conn.execute('''
            CREATE TABLE IF NOT EXISTS devices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                address TEXT UNIQUE NOT NULL,
                name TEXT,
                manufacturer_id INTEGER,
                manufacturer_name TEXT,
                device_type TEXT DEFAULT 'unknown',
                is_tracker BOOLEAN DEFAULT 0,
                beacon_type TEXT,
                payload_fingerprint TEXT,
                find_my_separated BOOLEAN DEFAULT 0,
                canonical_id INTEGER,
                link_strength TEXT,
                link_reason TEXT,
                last_mac_rotation INTEGER,
                first_seen INTEGER NOT NULL,
                last_seen INTEGER NOT NULL,
                detection_count INTEGER DEFAULT 1,
                highest_rssi INTEGER,
                last_rssi INTEGER,
                tx_power INTEGER,
                appearance INTEGER,
                shadow_key TEXT,
                FOREIGN KEY (canonical_id) REFERENCES devices(id) ON DELETE CASCADE,
                CHECK (canonical_id IS NULL OR canonical_id != id),
                CHECK (canonical_id IS NULL OR link_strength IN ('STRONG', 'WEAK'))
            )
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_devices_fingerprint
            ON devices(payload_fingerprint)
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_devices_canonical
            ON devices(canonical_id)
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_devices_rotation
            ON devices(manufacturer_id, device_type, last_seen)
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_devices_shadow
            ON devices(shadow_key)
        ''')

        # Clustered places
        conn.execute('''
            CREATE TABLE IF NOT EXISTS locations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                accuracy REAL DEFAULT 0,
                first_seen INTEGER NOT NULL,
                last_seen INTEGER NOT NULL
            )
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_locations_coords
            ON locations(latitude, longitude)
        ''')

        # Device-to-place facts
        conn.execute('''
            CREATE TABLE IF NOT EXISTS sightings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id INTEGER NOT NULL,
                location_id INTEGER NOT NULL,
                rssi INTEGER,
                timestamp INTEGER NOT NULL,
                scan_trigger_type TEXT DEFAULT 'CONTINUOUS',
                location_changed BOOLEAN DEFAULT 0,
                distance_from_last_m REAL,
                FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE,
                FOREIGN KEY (location_id) REFERENCES locations(id) ON DELETE CASCADE
            )
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_sightings_device_time
            ON sightings(device_id, timestamp)
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_sightings_location
            ON sightings(location_id)
        ''')

        # The user's own breadcrumbs, order preserving
        conn.execute('''
            CREATE TABLE IF NOT EXISTS user_path (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                location_id INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                accuracy REAL DEFAULT 0,
                FOREIGN KEY (location_id) REFERENCES locations(id) ON DELETE CASCADE
            )
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_user_path_time
            ON user_path(timestamp)
        ''')

        conn.execute('''
            CREATE TABLE IF NOT EXISTS whitelist (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id INTEGER UNIQUE NOT NULL,
                category TEXT NOT NULL CHECK (category IN ('OWN', 'PARTNER', 'TRUSTED')),
                label TEXT,
                added_via_learn_mode BOOLEAN DEFAULT 0,
                notes TEXT,
                created_at INTEGER NOT NULL,
                FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
            )
        ''')

        conn.execute('''
            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                level TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                device_addresses TEXT,
                location_ids TEXT,
                threat_score REAL NOT NULL,
                breakdown TEXT,
                details TEXT,
                dismissed BOOLEAN DEFAULT 0,
                dismissed_at INTEGER,
                FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
            )
        ''')
        conn.execute('''
            CREATE INDEX IF NOT EXISTS idx_alerts_device_time
            ON alerts(device_id, created_at)
        ''')

    logger.info("Database initialized successfully")


def close_db() -> None:
    """Close the thread-local database connection."""
    if getattr(_local, 'connection', None) is not None:
        _local.connection.close()
        _local.connection = None
        _local.path = None
        _local.depth = 0


# =============================================================================
# Settings Functions
# =============================================================================

def _decode_setting(value: str, value_type: str, default: Any = None) -> Any:
    if value_type == 'json':
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    elif value_type == 'int':
        return int(value)
    elif value_type == 'float':
        return float(value)
    elif value_type == 'bool':
        return value.lower() in ('true', '1', 'yes')
    return value


def _encode_setting(value: Any) -> tuple[str, str]:
    if isinstance(value, bool):
        return ('true' if value else 'false'), 'bool'
    elif isinstance(value, int):
        return str(value), 'int'
    elif isinstance(value, float):
        return repr(value), 'float'
    elif isinstance(value, (dict, list)):
        return json.dumps(value), 'json'
    return str(value), 'string'


def get_setting(key: str, default: Any = None) -> Any:
    """
    Get a setting value by key.

    Args:
        key: Setting key
        default: Default value if not found

    Returns:
        Setting value (auto-converted from JSON for complex types)
    """
    with get_db() as conn:
        row = conn.execute(
            'SELECT value, value_type FROM settings WHERE key = ?',
            (key,)
        ).fetchone()

        if row is None:
            return default
        return _decode_setting(row['value'], row['value_type'], default)


def set_setting(key: str, value: Any) -> None:
    """
    Set a setting value.

    Args:
        key: Setting key
        value: Setting value (will be JSON-encoded for complex types)
    """
    set_settings({key: value})


def set_settings(values: dict[str, Any]) -> None:
    """Write several settings in one transaction."""
    with get_db(immediate=True) as conn:
        for key, value in values.items():
            str_value, value_type = _encode_setting(value)
            conn.execute('''
                INSERT INTO settings (key, value, value_type, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    value_type = excluded.value_type,
                    updated_at = CURRENT_TIMESTAMP
            ''', (key, str_value, value_type))


def delete_setting(key: str) -> bool:
    """
    Delete a setting.

    Returns:
        True if setting was deleted, False if not found
    """
    with get_db() as conn:
        cursor = conn.execute('DELETE FROM settings WHERE key = ?', (key,))
        return cursor.rowcount > 0


def get_all_settings() -> dict[str, Any]:
    """Get all settings as a dictionary."""
    with get_db() as conn:
        cursor = conn.execute('SELECT key, value, value_type FROM settings')
        return {
            row['key']: _decode_setting(row['value'], row['value_type'], row['value'])
            for row in cursor
        }


# =============================================================================
# Device Functions
# =============================================================================

def get_device(device_id: int) -> Optional[Device]:
    with get_db() as conn:
        row = conn.execute('SELECT * FROM devices WHERE id = ?', (device_id,)).fetchone()
        return Device.from_row(row) if row else None


def get_device_by_address(address: str) -> Optional[Device]:
    with get_db() as conn:
        row = conn.execute(
            'SELECT * FROM devices WHERE address = ?', (address.upper(),)
        ).fetchone()
        return Device.from_row(row) if row else None


def find_devices_by_fingerprint(fingerprint: str) -> list[Device]:
    """Devices carrying a payload fingerprint, most recently seen first."""
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT * FROM devices
            WHERE payload_fingerprint = ?
            ORDER BY last_seen DESC, id DESC
        ''', (fingerprint,))
        return [Device.from_row(row) for row in cursor]


def find_rotation_candidates(
    manufacturer_id: int,
    device_type: DeviceType,
    seen_after: int,
    seen_before: int,
) -> list[Device]:
    """
    Devices of the same make and type whose last sighting falls inside
    ``[seen_after, seen_before)``, i.e. MACs that recently went quiet.
    """
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT * FROM devices
            WHERE manufacturer_id = ?
              AND device_type = ?
              AND last_seen >= ?
              AND last_seen < ?
            ORDER BY last_seen DESC, id DESC
        ''', (manufacturer_id, DeviceType(device_type).value, seen_after, seen_before))
        return [Device.from_row(row) for row in cursor]


def insert_device(
    address: str,
    timestamp: int,
    rssi: Optional[int] = None,
    name: Optional[str] = None,
    manufacturer_id: Optional[int] = None,
    manufacturer_name: Optional[str] = None,
    device_type: DeviceType = DeviceType.UNKNOWN,
    is_tracker: bool = False,
    beacon_type: Optional[str] = None,
    payload_fingerprint: Optional[str] = None,
    find_my_separated: bool = False,
    canonical_id: Optional[int] = None,
    link_strength: Optional[LinkStrength] = None,
    link_reason: Optional[str] = None,
    tx_power: Optional[int] = None,
    appearance: Optional[int] = None,
    shadow_key: Optional[str] = None,
) -> Device:
    """
    Insert a device row.

    When ``canonical_id`` names an alias, the link is redirected to that
    alias's own canonical row so chains stay one level deep.

    Raises:
        ValueError: If the canonical device does not exist or a link is
            requested without a strength.
    """
    with get_db(immediate=True) as conn:
        if canonical_id is not None:
            if link_strength is None:
                raise ValueError('link_strength is required when linking a device')
            target = conn.execute(
                'SELECT id, canonical_id FROM devices WHERE id = ?', (canonical_id,)
            ).fetchone()
            if target is None:
                raise ValueError(f'Canonical device {canonical_id} does not exist')
            canonical_id = target['canonical_id'] or target['id']

        cursor = conn.execute('''
            INSERT INTO devices (
                address, name, manufacturer_id, manufacturer_name, device_type,
                is_tracker, beacon_type, payload_fingerprint, find_my_separated,
                canonical_id, link_strength, link_reason,
                first_seen, last_seen, detection_count, highest_rssi, last_rssi,
                tx_power, appearance, shadow_key
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
        ''', (
            address.upper(), name, manufacturer_id, manufacturer_name,
            DeviceType(device_type).value, int(is_tracker), beacon_type,
            payload_fingerprint, int(find_my_separated), canonical_id,
            LinkStrength(link_strength).value if link_strength else None,
            link_reason, timestamp, timestamp, rssi, rssi,
            tx_power, appearance, shadow_key,
        ))
        row = conn.execute('SELECT * FROM devices WHERE id = ?', (cursor.lastrowid,)).fetchone()
        return Device.from_row(row)


def update_device_sighting(
    device_id: int,
    timestamp: int,
    rssi: Optional[int] = None,
    name: Optional[str] = None,
    payload_fingerprint: Optional[str] = None,
    device_type: Optional[DeviceType] = None,
    is_tracker: bool = False,
    beacon_type: Optional[str] = None,
    find_my_separated: bool = False,
    tx_power: Optional[int] = None,
    appearance: Optional[int] = None,
    shadow_key: Optional[str] = None,
) -> Device:
    """
    Fold one more sighting into an existing device row.

    Tracker and separated flags are sticky. The seen window only widens.
    The caller decides whether ``shadow_key`` replaces the stored one.
    """
    type_value = DeviceType(device_type).value if device_type else None
    with get_db(immediate=True) as conn:
        conn.execute('''
            UPDATE devices SET
                first_seen = MIN(first_seen, :ts),
                last_seen = MAX(last_seen, :ts),
                detection_count = detection_count + 1,
                highest_rssi = CASE
                    WHEN :rssi IS NULL THEN highest_rssi
                    WHEN highest_rssi IS NULL OR :rssi > highest_rssi THEN :rssi
                    ELSE highest_rssi END,
                last_rssi = COALESCE(:rssi, last_rssi),
                name = COALESCE(:name, name),
                payload_fingerprint = COALESCE(:fp, payload_fingerprint),
                device_type = CASE
                    WHEN :dtype IS NULL THEN device_type
                    WHEN :dtype = 'tracker' OR device_type = 'unknown' THEN :dtype
                    ELSE device_type END,
                is_tracker = is_tracker OR :tracker,
                beacon_type = COALESCE(:beacon, beacon_type),
                find_my_separated = find_my_separated OR :separated,
                tx_power = COALESCE(:tx_power, tx_power),
                appearance = COALESCE(:appearance, appearance),
                shadow_key = COALESCE(:shadow, shadow_key)
            WHERE id = :id
        ''', {
            'ts': timestamp,
            'rssi': rssi,
            'name': name,
            'fp': payload_fingerprint,
            'dtype': type_value,
            'tracker': int(is_tracker),
            'beacon': beacon_type,
            'separated': int(find_my_separated),
            'tx_power': tx_power,
            'appearance': appearance,
            'shadow': shadow_key,
            'id': device_id,
        })
        row = conn.execute('SELECT * FROM devices WHERE id = ?', (device_id,)).fetchone()
        if row is None:
            raise ValueError(f'Device {device_id} does not exist')
        return Device.from_row(row)


def mark_mac_rotation(canonical_id: int, timestamp: int) -> None:
    """Record that a canonical device was just seen under a new MAC."""
    with get_db(immediate=True) as conn:
        conn.execute('''
            UPDATE devices
            SET last_mac_rotation = MAX(COALESCE(last_mac_rotation, 0), ?)
            WHERE id = ?
        ''', (timestamp, canonical_id))


def _chains_for_roots(conn: sqlite3.Connection, roots: list[int]) -> list[DeviceChain]:
    if not roots:
        return []
    placeholders = ','.join('?' * len(roots))
    cursor = conn.execute(f'''
        SELECT * FROM devices
        WHERE id IN ({placeholders}) OR canonical_id IN ({placeholders})
        ORDER BY id
    ''', roots + roots)

    canonicals: dict[int, Device] = {}
    aliases: dict[int, list[Device]] = {}
    for row in cursor:
        device = Device.from_row(row)
        if device.canonical_id is None:
            canonicals[device.id] = device
        else:
            aliases.setdefault(device.canonical_id, []).append(device)

    return [
        DeviceChain(canonical=canonicals[root], aliases=aliases.get(root, []))
        for root in roots
        if root in canonicals
    ]


def get_chain(device_id: int) -> Optional[DeviceChain]:
    """The canonical chain a device belongs to, looked up from any member."""
    with get_db() as conn:
        row = conn.execute(
            'SELECT id, canonical_id FROM devices WHERE id = ?', (device_id,)
        ).fetchone()
        if row is None:
            return None
        root = row['canonical_id'] or row['id']
        chains = _chains_for_roots(conn, [root])
        return chains[0] if chains else None


def get_all_devices(limit: int = 1000) -> list[Device]:
    """Devices, most recently seen first."""
    with get_db() as conn:
        cursor = conn.execute(
            'SELECT * FROM devices ORDER BY last_seen DESC, id DESC LIMIT ?', (limit,)
        )
        return [Device.from_row(row) for row in cursor]


def get_candidate_chains(min_location_count: int) -> list[DeviceChain]:
    """
    Chains whose members together were seen at ``min_location_count`` or
    more distinct places. Locations are counted once per chain.
    """
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT COALESCE(d.canonical_id, d.id) AS root
            FROM sightings s
            JOIN devices d ON d.id = s.device_id
            GROUP BY root
            HAVING COUNT(DISTINCT s.location_id) >= ?
            ORDER BY root
        ''', (min_location_count,))
        roots = [row['root'] for row in cursor]
        return _chains_for_roots(conn, roots)


# =============================================================================
# Shadow Functions
# =============================================================================

def get_shadow_keys(min_location_count: int) -> list[str]:
    """Shadow keys whose devices together were seen at enough distinct places."""
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT d.shadow_key
            FROM sightings s
            JOIN devices d ON d.id = s.device_id
            WHERE d.shadow_key IS NOT NULL
            GROUP BY d.shadow_key
            HAVING COUNT(DISTINCT s.location_id) >= ?
            ORDER BY d.shadow_key
        ''', (min_location_count,))
        return [row['shadow_key'] for row in cursor]


def get_shadow_location_counts(shadow_key: str) -> list[ShadowLocationCount]:
    """
    Per place, the number of distinct device chains carrying a shadow key.

    Rows of one chain count once, so a rotation that was already linked
    does not inflate the count.
    """
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT s.location_id,
                   COUNT(DISTINCT COALESCE(d.canonical_id, d.id)) AS device_count,
                   MAX(s.rssi) AS max_rssi
            FROM sightings s
            JOIN devices d ON d.id = s.device_id
            WHERE d.shadow_key = ?
            GROUP BY s.location_id
            ORDER BY s.location_id
        ''', (shadow_key,))
        return [
            ShadowLocationCount(
                location_id=row['location_id'],
                device_count=row['device_count'],
                max_rssi=row['max_rssi'],
            )
            for row in cursor
        ]


def get_devices_by_shadow_key(shadow_key: str) -> list[Device]:
    """Devices carrying a shadow key, oldest first."""
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT * FROM devices
            WHERE shadow_key = ?
            ORDER BY first_seen, id
        ''', (shadow_key,))
        return [Device.from_row(row) for row in cursor]


def get_chains(root_ids: list[int]) -> list[DeviceChain]:
    """Chains for canonical device ids, in the given order."""
    with get_db() as conn:
        return _chains_for_roots(conn, list(root_ids))


# =============================================================================
# Location Functions
# =============================================================================

def get_location(location_id: int) -> Optional[Location]:
    with get_db() as conn:
        row = conn.execute('SELECT * FROM locations WHERE id = ?', (location_id,)).fetchone()
        return Location.from_row(row) if row else None


def count_locations() -> int:
    with get_db() as conn:
        return conn.execute('SELECT COUNT(*) FROM locations').fetchone()[0]


def get_locations_in_box(
    min_lat: float,
    max_lat: float,
    min_lon: float,
    max_lon: float,
) -> list[Location]:
    """Locations inside a lat/lon bounding box."""
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT * FROM locations
            WHERE latitude BETWEEN ? AND ?
              AND longitude BETWEEN ? AND ?
            ORDER BY id
        ''', (min_lat, max_lat, min_lon, max_lon))
        return [Location.from_row(row) for row in cursor]


def insert_location(latitude: float, longitude: float, accuracy: float, timestamp: int) -> Location:
    with get_db(immediate=True) as conn:
        cursor = conn.execute('''
            INSERT INTO locations (latitude, longitude, accuracy, first_seen, last_seen)
            VALUES (?, ?, ?, ?, ?)
        ''', (latitude, longitude, accuracy, timestamp, timestamp))
        return Location(
            id=cursor.lastrowid,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            first_seen=timestamp,
            last_seen=timestamp,
        )


def touch_location(location_id: int, timestamp: int, accuracy: float) -> None:
    """Widen a place's seen window and keep its best accuracy."""
    with get_db(immediate=True) as conn:
        conn.execute('''
            UPDATE locations SET
                first_seen = MIN(first_seen, ?),
                last_seen = MAX(last_seen, ?),
                accuracy = MIN(accuracy, ?)
            WHERE id = ?
        ''', (timestamp, timestamp, accuracy, location_id))


# =============================================================================
# Sighting Functions
# =============================================================================

def add_sighting_record(
    device_id: int,
    location_id: int,
    rssi: int,
    timestamp: int,
    scan_trigger_type: ScanTriggerType = ScanTriggerType.CONTINUOUS,
    location_changed: bool = False,
    distance_from_last_m: Optional[float] = None,
) -> SightingRecord:
    """
    Persist a sighting fact row.

    Raises:
        MalformedInputError: If the device is unknown or the timestamp lies
            outside the device's first/last seen window.
    """
    trigger = ScanTriggerType(scan_trigger_type)
    with get_db(immediate=True) as conn:
        device = conn.execute(
            'SELECT first_seen, last_seen FROM devices WHERE id = ?', (device_id,)
        ).fetchone()
        if device is None:
            raise MalformedInputError(f'Sighting references unknown device {device_id}')
        if not device['first_seen'] <= timestamp <= device['last_seen']:
            raise MalformedInputError(
                f'Sighting at {timestamp} outside device {device_id} window '
                f'[{device["first_seen"]}, {device["last_seen"]}]'
            )

        cursor = conn.execute('''
            INSERT INTO sightings (
                device_id, location_id, rssi, timestamp, scan_trigger_type,
                location_changed, distance_from_last_m
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (
            device_id, location_id, rssi, timestamp, trigger.value,
            int(location_changed), distance_from_last_m,
        ))
        return SightingRecord(
            id=cursor.lastrowid,
            device_id=device_id,
            location_id=location_id,
            rssi=rssi,
            timestamp=timestamp,
            scan_trigger_type=trigger,
            location_changed=location_changed,
            distance_from_last_m=distance_from_last_m,
        )


def _snapshot_from_row(row: sqlite3.Row) -> SightingSnapshot:
    strength = None
    if row['canonical_id'] is not None:
        strength = LinkStrength(row['link_strength'] or LinkStrength.WEAK.value)
    return SightingSnapshot(
        device_id=row['device_id'],
        location_id=row['location_id'],
        latitude=row['latitude'],
        longitude=row['longitude'],
        timestamp=row['timestamp'],
        rssi=row['rssi'],
        link_strength=strength,
    )


_SNAPSHOT_SELECT = '''
    SELECT s.device_id, s.location_id, l.latitude, l.longitude,
           s.timestamp, s.rssi, d.canonical_id, d.link_strength
    FROM sightings s
    JOIN locations l ON l.id = s.location_id
    JOIN devices d ON d.id = s.device_id
'''


def get_last_sighting(device_ids: list[int], at_or_before: int) -> Optional[SightingSnapshot]:
    """Most recent sighting of any of the given devices up to a timestamp."""
    if not device_ids:
        return None
    placeholders = ','.join('?' * len(device_ids))
    with get_db() as conn:
        row = conn.execute(f'''
            {_SNAPSHOT_SELECT}
            WHERE s.device_id IN ({placeholders}) AND s.timestamp <= ?
            ORDER BY s.timestamp DESC, s.id DESC
            LIMIT 1
        ''', list(device_ids) + [at_or_before]).fetchone()
        return _snapshot_from_row(row) if row else None


def get_chain_sightings(chain: DeviceChain) -> list[SightingSnapshot]:
    """Every sighting of every chain member, in time order."""
    ids = chain.member_ids
    placeholders = ','.join('?' * len(ids))
    with get_db() as conn:
        cursor = conn.execute(f'''
            {_SNAPSHOT_SELECT}
            WHERE s.device_id IN ({placeholders})
            ORDER BY s.timestamp, s.id
        ''', ids)
        return [_snapshot_from_row(row) for row in cursor]


# =============================================================================
# User Path Functions
# =============================================================================

def add_user_path_point(location_id: int, timestamp: int, accuracy: float = 0.0) -> UserPathPoint:
    with get_db(immediate=True) as conn:
        conn.execute('''
            INSERT INTO user_path (location_id, timestamp, accuracy)
            VALUES (?, ?, ?)
        ''', (location_id, timestamp, accuracy))
    return UserPathPoint(location_id=location_id, timestamp=timestamp, accuracy=accuracy)


def get_user_path(since: Optional[int] = None) -> list[UserPathPoint]:
    """The user's breadcrumbs in time order."""
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT location_id, timestamp, accuracy FROM user_path
            WHERE timestamp >= ?
            ORDER BY timestamp, id
        ''', (since if since is not None else 0,))
        return [
            UserPathPoint(
                location_id=row['location_id'],
                timestamp=row['timestamp'],
                accuracy=row['accuracy'] or 0.0,
            )
            for row in cursor
        ]


# =============================================================================
# Whitelist Functions
# =============================================================================

def add_whitelist_entry(
    device_id: int,
    category: WhitelistCategory,
    created_at: int,
    label: Optional[str] = None,
    added_via_learn_mode: bool = False,
    notes: Optional[str] = None,
) -> WhitelistEntry:
    """Whitelist a device. An existing entry for the device is replaced."""
    category = WhitelistCategory(category)
    with get_db(immediate=True) as conn:
        conn.execute('''
            INSERT INTO whitelist (device_id, category, label, added_via_learn_mode, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
                category = excluded.category,
                label = excluded.label,
                added_via_learn_mode = excluded.added_via_learn_mode,
                notes = excluded.notes
        ''', (device_id, category.value, label, int(added_via_learn_mode), notes, created_at))
        row = conn.execute('SELECT * FROM whitelist WHERE device_id = ?', (device_id,)).fetchone()
        return WhitelistEntry.from_row(row)


def remove_whitelist_entry(device_id: int) -> bool:
    with get_db() as conn:
        cursor = conn.execute('DELETE FROM whitelist WHERE device_id = ?', (device_id,))
        return cursor.rowcount > 0


def get_whitelist_entries() -> list[WhitelistEntry]:
    with get_db() as conn:
        cursor = conn.execute('SELECT * FROM whitelist ORDER BY created_at, id')
        return [WhitelistEntry.from_row(row) for row in cursor]


def get_whitelisted_device_ids() -> set[int]:
    with get_db() as conn:
        cursor = conn.execute('SELECT device_id FROM whitelist')
        return {row['device_id'] for row in cursor}


# =============================================================================
# Alert Functions
# =============================================================================

def _alert_from_row(row: sqlite3.Row) -> AlertRecord:
    return AlertRecord(
        id=row['id'],
        device_id=row['device_id'],
        created_at=row['created_at'],
        level=ThreatLevel(row['level']),
        title=row['title'],
        message=row['message'],
        device_addresses=json.loads(row['device_addresses']) if row['device_addresses'] else [],
        location_ids=json.loads(row['location_ids']) if row['location_ids'] else [],
        threat_score=row['threat_score'],
        breakdown=json.loads(row['breakdown']) if row['breakdown'] else {},
        details=json.loads(row['details']) if row['details'] else {},
        dismissed=bool(row['dismissed']),
        dismissed_at=row['dismissed_at'],
    )


def insert_alert(
    device_id: int,
    created_at: int,
    level: ThreatLevel,
    title: str,
    message: str,
    device_addresses: list[str],
    location_ids: list[int],
    threat_score: float,
    breakdown: dict,
    details: dict,
) -> AlertRecord:
    level = ThreatLevel(level)
    with get_db(immediate=True) as conn:
        cursor = conn.execute('''
            INSERT INTO alerts (
                device_id, created_at, level, title, message, device_addresses,
                location_ids, threat_score, breakdown, details
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            device_id, created_at, level.value, title, message,
            json.dumps(device_addresses), json.dumps(location_ids),
            threat_score, json.dumps(breakdown), json.dumps(details, default=str),
        ))
        row = conn.execute('SELECT * FROM alerts WHERE id = ?', (cursor.lastrowid,)).fetchone()
        return _alert_from_row(row)


def get_recent_active_alerts(device_id: int, since: int) -> list[AlertRecord]:
    """Non-dismissed alerts for a device created at or after ``since``."""
    with get_db() as conn:
        cursor = conn.execute('''
            SELECT * FROM alerts
            WHERE device_id = ? AND dismissed = 0 AND created_at >= ?
            ORDER BY created_at DESC, id DESC
        ''', (device_id, since))
        return [_alert_from_row(row) for row in cursor]


def get_alerts(active_only: bool = False, limit: int = 100) -> list[AlertRecord]:
    """Alerts, newest first."""
    query = 'SELECT * FROM alerts'
    if active_only:
        query += ' WHERE dismissed = 0'
    query += ' ORDER BY created_at DESC, id DESC LIMIT ?'

    with get_db() as conn:
        cursor = conn.execute(query, (limit,))
        return [_alert_from_row(row) for row in cursor]


def get_alert(alert_id: int) -> Optional[AlertRecord]:
    with get_db() as conn:
        row = conn.execute('SELECT * FROM alerts WHERE id = ?', (alert_id,)).fetchone()
        return _alert_from_row(row) if row else None


def dismiss_alert(alert_id: int, dismissed_at: int) -> bool:
    """Dismiss one alert. Returns False if it does not exist or was already dismissed."""
    with get_db() as conn:
        cursor = conn.execute('''
            UPDATE alerts SET dismissed = 1, dismissed_at = ?
            WHERE id = ? AND dismissed = 0
        ''', (dismissed_at, alert_id))
        return cursor.rowcount > 0


def dismiss_all_alerts(dismissed_at: int) -> int:
    with get_db() as conn:
        cursor = conn.execute('''
            UPDATE alerts SET dismissed = 1, dismissed_at = ?
            WHERE dismissed = 0
        ''', (dismissed_at,))
        return cursor.rowcount


# =============================================================================
# Retention
# =============================================================================

def cleanup_old_data(cutoff: int) -> dict[str, int]:
    """
    Delete data older than ``cutoff``.

    A device chain goes only when its newest member is older than the
    cutoff; aliases, sightings, whitelist entries and alerts cascade with it.

    Returns:
        Counts of deleted rows by kind.
    """
    with get_db(immediate=True) as conn:
        roots = [
            row['root'] for row in conn.execute('''
                SELECT COALESCE(canonical_id, id) AS root
                FROM devices
                GROUP BY root
                HAVING MAX(last_seen) < ?
            ''', (cutoff,))
        ]

        devices_deleted = 0
        if roots:
            placeholders = ','.join('?' * len(roots))
            devices_deleted = conn.execute(
                f'SELECT COUNT(*) FROM devices WHERE id IN ({placeholders}) OR canonical_id IN ({placeholders})',
                roots + roots,
            ).fetchone()[0]
            conn.execute(f'DELETE FROM devices WHERE id IN ({placeholders})', roots)

        alerts_deleted = conn.execute(
            'DELETE FROM alerts WHERE dismissed = 1 AND created_at < ?', (cutoff,)
        ).rowcount

        path_deleted = conn.execute(
            'DELETE FROM user_path WHERE timestamp < ?', (cutoff,)
        ).rowcount

        locations_deleted = conn.execute('''
            DELETE FROM locations
            WHERE last_seen < ?
              AND id NOT IN (SELECT location_id FROM sightings)
              AND id NOT IN (SELECT location_id FROM user_path)
        ''', (cutoff,)).rowcount

    counts = {
        'devices': devices_deleted,
        'alerts': alerts_deleted,
        'user_path': path_deleted,
        'locations': locations_deleted,
    }
    logger.info(f"Retention cleanup before {cutoff}: {counts}")
    return counts
