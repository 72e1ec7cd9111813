"""
Sighting ingestion: attribute an advertisement to a device and a place.
"""

from __future__ import annotations

import logging
from typing import Optional

from utils import database as db

from .config import DetectionConfig, load_config
from .identity import IdentityResolver, get_identity_resolver
from .locations import find_or_create_location, haversine_m
from .models import LocationFix, RawSighting, SightingRecord

logger = logging.getLogger('tailguard.ingest')


def ingest_sighting(
    sighting: RawSighting,
    fix: LocationFix,
    config: Optional[DetectionConfig] = None,
    resolver: Optional[IdentityResolver] = None,
) -> SightingRecord:
    """
    Resolve the sighting's device, cluster the fix, and store the fact row.

    ``location_changed`` and ``distance_from_last_m`` compare against the
    previous sighting of any member of the device's chain.

    Raises:
        MalformedInputError: If the fix is off the globe.
        TransientStorageError: If the store is locked beyond its timeout.
    """
    config = config or load_config()
    resolver = resolver or get_identity_resolver()
    fix.validate()

    device_id = resolver.resolve(sighting, config)
    location = find_or_create_location(fix, config)

    chain = db.get_chain(device_id)
    member_ids = chain.member_ids if chain else [device_id]
    previous = db.get_last_sighting(member_ids, sighting.timestamp)

    location_changed = False
    distance = None
    if previous is not None:
        location_changed = previous.location_id != location.id
        distance = haversine_m(previous.latitude, previous.longitude, location.latitude, location.longitude)

    return db.add_sighting_record(
        device_id=device_id,
        location_id=location.id,
        rssi=sighting.rssi,
        timestamp=sighting.timestamp,
        scan_trigger_type=sighting.scan_trigger_type,
        location_changed=location_changed,
        distance_from_last_m=distance,
    )


def ingest_scan(
    sightings: list[RawSighting],
    fix: LocationFix,
    config: Optional[DetectionConfig] = None,
) -> list[SightingRecord]:
    """Ingest one scan batch that shares a single location fix."""
    config = config or load_config()
    records = [ingest_sighting(s, fix, config) for s in sightings]
    logger.debug(f"Ingested {len(records)} sightings at {fix.latitude:.5f},{fix.longitude:.5f}")
    return records
