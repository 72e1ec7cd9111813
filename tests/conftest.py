"""Shared fixtures: a fresh sqlite database per test and record factories."""

from typing import Optional

import pytest

from utils import database as db
from utils.bluetooth.constants import APPLE_COMPANY_ID
from utils.mqtt import reset_mqtt_manager
from utils.tracking.identity import reset_identity_resolver
from utils.tracking.ingest import ingest_sighting
from utils.tracking.models import LocationFix, RawSighting
from utils.tracking.orchestrator import reset_orchestrator

# 2023-11-14 22:13:20 UTC
T0 = 1_700_000_000_000
MINUTE = 60_000
HOUR = 3_600_000

# iPhone nearby-info advertisement; carries no stable fingerprint
PHONE_PAYLOAD = bytes.fromhex('1005031c8a7b')


def airtag_payload(key: str = 'a1b2c3d4e5', status: int = 0x10) -> bytes:
    """Find My advertisement: type, length, status byte, then key bytes."""
    return bytes([0x12, 0x19, status]) + bytes.fromhex(key) + bytes(17)


@pytest.fixture
def temp_db(tmp_path):
    """Point the store at a throwaway database file."""
    path = tmp_path / 'tailguard.db'
    db.set_db_path(path)
    db.init_db()
    yield path
    db.close_db()
    db.set_db_path(None)
    reset_identity_resolver()
    reset_orchestrator()
    reset_mqtt_manager()


@pytest.fixture
def make_sighting():
    """Factory for RawSighting with sensible defaults."""
    def _make(
        mac: str = 'AA:BB:CC:DD:EE:01',
        timestamp: int = T0,
        rssi: int = -60,
        payload: Optional[bytes] = None,
        manufacturer_id: Optional[int] = None,
        service_uuids: Optional[list] = None,
        name: Optional[str] = None,
        tx_power: Optional[int] = None,
        appearance: Optional[int] = None,
    ) -> RawSighting:
        return RawSighting(
            mac_address=mac,
            rssi=rssi,
            timestamp=timestamp,
            advertisement_bytes=payload,
            manufacturer_id=manufacturer_id,
            service_uuids=service_uuids or [],
            name=name,
            tx_power=tx_power,
            appearance=appearance,
        )
    return _make


@pytest.fixture
def make_airtag(make_sighting):
    """Factory for AirTag sightings sharing one Find My key by default."""
    def _make(mac: str = 'AA:BB:CC:DD:EE:01', timestamp: int = T0, rssi: int = -60, key: str = 'a1b2c3d4e5',
              status: int = 0x10) -> RawSighting:
        return make_sighting(
            mac=mac,
            timestamp=timestamp,
            rssi=rssi,
            payload=airtag_payload(key, status),
            manufacturer_id=APPLE_COMPANY_ID,
            service_uuids=['fd6f'],
        )
    return _make


@pytest.fixture
def make_fix():
    def _make(latitude: float, longitude: float, timestamp: int = T0, accuracy: float = 10.0) -> LocationFix:
        return LocationFix(latitude=latitude, longitude=longitude, accuracy=accuracy, timestamp=timestamp)
    return _make


@pytest.fixture
def rotating_phone(make_sighting, make_fix):
    """
    Seed an iPhone that takes a new MAC every 15 minutes. Each MAC is seen
    twice, 11 minutes apart, so it goes quiet 4 minutes before the next one
    appears: too late for temporal linking, close enough to be a hand-off.
    MACs are seen ``per_place`` at a time at each of ``places`` in turn.

    Returns the device ids, oldest first.
    """
    def _rotate(places, config, resolver, per_place=2):
        device_ids = []
        for k in range(len(places) * per_place):
            born = T0 + k * 15 * MINUTE
            lat, lon = places[k // per_place]
            for ts in (born, born + 11 * MINUTE):
                record = ingest_sighting(
                    make_sighting(
                        mac=f'4A:00:00:00:00:{k:02X}',
                        timestamp=ts,
                        payload=PHONE_PAYLOAD,
                        manufacturer_id=APPLE_COMPANY_ID,
                    ),
                    make_fix(lat, lon, ts),
                    config,
                    resolver,
                )
            device_ids.append(record.device_id)
        return device_ids
    return _rotate
