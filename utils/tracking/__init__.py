"""
Covert tracker detection core.

Attributes BLE sightings to logical devices across MAC rotation, scores
each device chain against the user's movement, and turns high scores into
throttled alerts.
"""

from .config import DetectionConfig, load_config
from .exceptions import (
    ComputationError,
    ConfigurationError,
    MalformedInputError,
    TailguardError,
    TransientStorageError,
)
from .models import (
    Alias,
    AlertRecord,
    Canonical,
    Detection,
    DetectionPassResult,
    Device,
    DeviceChain,
    DeviceType,
    Identity,
    LinkStrength,
    Location,
    LocationFix,
    RawSighting,
    ScanTriggerType,
    ScoreBreakdown,
    SightingSnapshot,
    ThreatLevel,
    UserPathPoint,
    WhitelistCategory,
    WhitelistEntry,
)

__all__ = [
    # Configuration
    'DetectionConfig',
    'load_config',

    # Errors
    'TailguardError',
    'TransientStorageError',
    'MalformedInputError',
    'ConfigurationError',
    'ComputationError',

    # Models
    'RawSighting',
    'LocationFix',
    'Canonical',
    'Alias',
    'Identity',
    'Device',
    'DeviceChain',
    'DeviceType',
    'LinkStrength',
    'Location',
    'UserPathPoint',
    'SightingSnapshot',
    'ScanTriggerType',
    'ScoreBreakdown',
    'ThreatLevel',
    'Detection',
    'DetectionPassResult',
    'AlertRecord',
    'WhitelistCategory',
    'WhitelistEntry',
]
