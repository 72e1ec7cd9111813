"""
Detection configuration.

The host supplies every knob; defaults are declared in constants.py and
persisted through the key/value settings table under ``detection.*``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Any, Optional

from .constants import (
    DEFAULT_FINGERPRINT_STALE_MS,
    DEFAULT_LOCATION_CLUSTER_MAX_GAP_MS,
    DEFAULT_LOCATION_CLUSTER_RADIUS_M,
    DEFAULT_LOCATION_SATURATION_COUNT,
    DEFAULT_MAC_ROTATION_MAX_GAP_MS,
    DEFAULT_MIN_DETECTION_DISTANCE_M,
    DEFAULT_MIN_LOCATION_COUNT,
    DEFAULT_MIN_THREAT_SCORE,
    DEFAULT_NOTABLE_DISTANCE_M,
    DEFAULT_OUTING_GAP_MS,
    DEFAULT_RSSI_MATCH_TOLERANCE_DB,
    DEFAULT_SCORE_WEIGHTS,
    DEFAULT_THROTTLE_WINDOW_MS,
    DEFAULT_WEAK_LINK_DAMPING_FACTOR,
    SCORE_WEIGHT_KEYS,
    SETTINGS_PREFIX,
    WEIGHT_SUM_TOLERANCE,
)
from .exceptions import ConfigurationError


@dataclass
class DetectionConfig:
    """All tunables for identity resolution, scoring and alerting."""

    min_location_count: int = DEFAULT_MIN_LOCATION_COUNT
    min_threat_score: float = DEFAULT_MIN_THREAT_SCORE
    throttle_window_ms: int = DEFAULT_THROTTLE_WINDOW_MS
    weak_link_damping_factor: float = DEFAULT_WEAK_LINK_DAMPING_FACTOR
    mac_rotation_max_gap_ms: int = DEFAULT_MAC_ROTATION_MAX_GAP_MS
    rssi_match_tolerance_db: int = DEFAULT_RSSI_MATCH_TOLERANCE_DB
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SCORE_WEIGHTS))

    min_detection_distance_m: float = DEFAULT_MIN_DETECTION_DISTANCE_M
    location_saturation_count: int = DEFAULT_LOCATION_SATURATION_COUNT
    notable_distance_m: float = DEFAULT_NOTABLE_DISTANCE_M
    outing_gap_ms: int = DEFAULT_OUTING_GAP_MS
    fingerprint_stale_ms: int = DEFAULT_FINGERPRINT_STALE_MS
    location_cluster_radius_m: float = DEFAULT_LOCATION_CLUSTER_RADIUS_M
    location_cluster_max_gap_ms: Optional[int] = DEFAULT_LOCATION_CLUSTER_MAX_GAP_MS

    def validate(self) -> 'DetectionConfig':
        """
        Check the configuration for internal consistency.

        Returns:
            self, so calls can be chained.

        Raises:
            ConfigurationError: On the first violated constraint.
        """
        missing = [k for k in SCORE_WEIGHT_KEYS if k not in self.weights]
        if missing:
            raise ConfigurationError(f'Missing score weights: {", ".join(missing)}')

        unknown = [k for k in self.weights if k not in SCORE_WEIGHT_KEYS]
        if unknown:
            raise ConfigurationError(f'Unknown score weights: {", ".join(unknown)}')

        for key, value in self.weights.items():
            if not _is_number(value) or not 0.0 <= value <= 1.0:
                raise ConfigurationError(f'Weight {key} must be within [0, 1], got {value!r}')

        total = sum(self.weights.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ConfigurationError(f'Score weights must sum to 1.0, got {total:.6f}')

        if not _is_number(self.min_threat_score) or not 0.0 <= self.min_threat_score <= 1.0:
            raise ConfigurationError(f'min_threat_score must be within [0, 1], got {self.min_threat_score!r}')

        if not _is_number(self.weak_link_damping_factor) or not 0.0 < self.weak_link_damping_factor <= 1.0:
            raise ConfigurationError(
                f'weak_link_damping_factor must be within (0, 1], got {self.weak_link_damping_factor!r}'
            )

        for name in ('min_location_count', 'location_saturation_count'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f'{name} must be a positive integer, got {value!r}')

        for name in ('throttle_window_ms', 'rssi_match_tolerance_db', 'min_detection_distance_m'):
            value = getattr(self, name)
            if not _is_number(value) or value < 0:
                raise ConfigurationError(f'{name} must be non-negative, got {value!r}')

        for name in ('mac_rotation_max_gap_ms', 'notable_distance_m', 'outing_gap_ms',
                     'fingerprint_stale_ms', 'location_cluster_radius_m'):
            value = getattr(self, name)
            if not _is_number(value) or value <= 0:
                raise ConfigurationError(f'{name} must be positive, got {value!r}')

        gap = self.location_cluster_max_gap_ms
        if gap is not None and (not _is_number(gap) or gap <= 0):
            raise ConfigurationError(f'location_cluster_max_gap_ms must be positive or None, got {gap!r}')

        return self

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> 'DetectionConfig':
        """
        Build a config from a key/value settings mapping.

        Keys are the field names prefixed with ``detection.``; absent keys
        keep their defaults.

        Raises:
            ConfigurationError: If a stored value has the wrong shape.
        """
        config = cls()
        for f in fields(cls):
            key = SETTINGS_PREFIX + f.name
            if key not in settings:
                continue
            value = settings[key]
            if f.name == 'weights':
                if not isinstance(value, dict):
                    raise ConfigurationError(f'{key} must be a JSON object')
                value = {str(k): v for k, v in value.items()}
            setattr(config, f.name, value)
        return config

    def to_settings(self) -> dict[str, Any]:
        """Flatten into ``detection.*`` settings keys. Unset optionals are omitted."""
        return {
            SETTINGS_PREFIX + f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def load_config() -> DetectionConfig:
    """Pull the current configuration from the settings table and validate it."""
    from utils.database import get_all_settings

    return DetectionConfig.from_settings(get_all_settings()).validate()
