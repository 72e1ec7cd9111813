"""
Geo math and place clustering.

Raw GPS fixes are merged into clustered places: a fix within the cluster
radius of a known place (and, when configured, within the time gap of its
seen window) is attributed to the nearest such place; otherwise a new place
is created.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import numpy as np

from utils import database as db

from .config import DetectionConfig
from .constants import EARTH_RADIUS_M
from .models import Location, LocationFix, UserPathPoint

logger = logging.getLogger('tailguard.locations')


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def pairwise_distances_m(latitudes: Sequence[float], longitudes: Sequence[float]) -> np.ndarray:
    """Symmetric matrix of great-circle distances between all points."""
    lat = np.radians(np.asarray(latitudes, dtype=float))
    lon = np.radians(np.asarray(longitudes, dtype=float))
    dlat = lat[:, None] - lat[None, :]
    dlon = lon[:, None] - lon[None, :]
    a = np.sin(dlat / 2) ** 2 + np.cos(lat)[:, None] * np.cos(lat)[None, :] * np.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def distance_stats(points: Sequence[tuple[float, float]]) -> tuple[float, float]:
    """
    Maximum and mean pairwise distance between places.

    Returns:
        (max_m, avg_m); both 0.0 for fewer than two points.
    """
    if len(points) < 2:
        return 0.0, 0.0
    matrix = pairwise_distances_m([p[0] for p in points], [p[1] for p in points])
    upper = matrix[np.triu_indices(len(points), k=1)]
    return float(upper.max()), float(upper.mean())


def _bounding_box(latitude: float, longitude: float, radius_m: float) -> tuple[float, float, float, float]:
    dlat = math.degrees(radius_m / EARTH_RADIUS_M)
    dlon = dlat / max(math.cos(math.radians(latitude)), 1e-6)
    return latitude - dlat, latitude + dlat, longitude - dlon, longitude + dlon


def _within_gap(location: Location, timestamp: int, max_gap_ms: Optional[int]) -> bool:
    if max_gap_ms is None:
        return True
    return timestamp - location.last_seen <= max_gap_ms and location.first_seen - timestamp <= max_gap_ms


def find_or_create_location(fix: LocationFix, config: Optional[DetectionConfig] = None) -> Location:
    """
    Attribute a fix to a clustered place.

    Raises:
        MalformedInputError: If the fix is off the globe.
    """
    config = config or DetectionConfig()
    fix.validate()
    radius = config.location_cluster_radius_m

    with db.get_db(immediate=True):
        nearest: Optional[Location] = None
        nearest_distance = math.inf
        for location in db.get_locations_in_box(*_bounding_box(fix.latitude, fix.longitude, radius)):
            if not _within_gap(location, fix.timestamp, config.location_cluster_max_gap_ms):
                continue
            distance = haversine_m(fix.latitude, fix.longitude, location.latitude, location.longitude)
            if distance <= radius and distance < nearest_distance:
                nearest, nearest_distance = location, distance

        if nearest is not None:
            db.touch_location(nearest.id, fix.timestamp, fix.accuracy)
            return db.get_location(nearest.id)

        location = db.insert_location(fix.latitude, fix.longitude, fix.accuracy, fix.timestamp)

    logger.debug(f"New place {location.id} at {fix.latitude:.5f},{fix.longitude:.5f}")
    return location


def record_user_fix(fix: LocationFix, config: Optional[DetectionConfig] = None) -> UserPathPoint:
    """Append one of the user's own fixes to the breadcrumb path."""
    location = find_or_create_location(fix, config)
    return db.add_user_path_point(location.id, fix.timestamp, fix.accuracy)
