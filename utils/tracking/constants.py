"""
Detection core constants and configuration defaults.
"""

from __future__ import annotations

# =============================================================================
# DETECTION DEFAULTS
# =============================================================================

DEFAULT_MIN_LOCATION_COUNT = 3
DEFAULT_MIN_THREAT_SCORE = 0.5
DEFAULT_THROTTLE_WINDOW_MS = 3_600_000  # 1 hour
DEFAULT_WEAK_LINK_DAMPING_FACTOR = 0.7
DEFAULT_MIN_DETECTION_DISTANCE_M = 100.0

# Score factor weights (must sum to 1.0)
DEFAULT_SCORE_WEIGHTS = {
    'location': 0.30,
    'distance': 0.25,
    'time': 0.20,
    'consistency': 0.15,
    'device_type': 0.10,
}
SCORE_WEIGHT_KEYS = tuple(DEFAULT_SCORE_WEIGHTS.keys())
WEIGHT_SUM_TOLERANCE = 1e-6

# Sub-score normalization
DEFAULT_LOCATION_SATURATION_COUNT = 5
DEFAULT_NOTABLE_DISTANCE_M = 2000.0
DEFAULT_OUTING_GAP_MS = 1_800_000  # 30 minutes between separate outings

# =============================================================================
# IDENTITY RESOLUTION
# =============================================================================

DEFAULT_MAC_ROTATION_MAX_GAP_MS = 180_000  # prior MAC gone for at most 3 min
DEFAULT_RSSI_MATCH_TOLERANCE_DB = 10
DEFAULT_FINGERPRINT_STALE_MS = 1_200_000  # 20 minutes

# Temporal candidate points; a candidate needs TEMPORAL_MIN_SCORE to link
TEMPORAL_RSSI_POINTS = 30.0
TEMPORAL_RECENCY_POINTS = 25.0
TEMPORAL_NAME_POINTS = 30.0
TEMPORAL_APPEARANCE_POINTS = 10.0
TEMPORAL_TX_POWER_POINTS = 5.0
TEMPORAL_TX_POWER_TOLERANCE_DB = 3
TEMPORAL_MIN_SCORE = 20.0

# =============================================================================
# SHADOW ANALYSIS
# =============================================================================

SHADOW_MIN_COMPONENTS = 2
SHADOW_MAX_COMPONENTS = 8
SHADOW_PERSISTENCE_WEIGHT = 0.7
SHADOW_ROTATION_WEIGHT = 0.3
SHADOW_MIN_COMBINED_SCORE = 0.3
SHADOW_MAX_HANDOFF_GAP_MS = 300_000  # next MAC born within 5 min of the last one dying
SHADOW_MIN_HANDOFFS = 2

# =============================================================================
# LOCATION CLUSTERING
# =============================================================================

DEFAULT_LOCATION_CLUSTER_RADIUS_M = 50.0
DEFAULT_LOCATION_CLUSTER_MAX_GAP_MS = None  # None = radius only

EARTH_RADIUS_M = 6_371_000.0

# =============================================================================
# THREAT LEVEL THRESHOLDS
# =============================================================================

THREAT_THRESHOLD_LOW = 0.5
THREAT_THRESHOLD_MEDIUM = 0.6
THREAT_THRESHOLD_HIGH = 0.75
THREAT_THRESHOLD_CRITICAL = 0.9

# =============================================================================
# MOVEMENT CORRELATION
# =============================================================================

CORRELATION_WEIGHT_SYNC = 0.40
CORRELATION_WEIGHT_ROUTE = 0.30
CORRELATION_WEIGHT_DWELL = 0.20
CORRELATION_WEIGHT_TIME_PATTERN = 0.10

CORRELATION_MIN_RECORDS = 3
SYNC_WINDOW_MS = 300_000          # device seen within 5 min of a user move
DWELL_TOLERANCE_MS = 600_000      # 10 minutes
DWELL_TOLERANCE_RATIO = 0.5
TIME_PATTERN_PEAK_RATIO = 0.7
TIME_PATTERN_WINDOW_HOURS = 2

ONE_HOUR_MS = 3_600_000
ONE_DAY_MS = 86_400_000

# Fallback time score by observed span when no usable user path exists
SPAN_SCORE_UNDER_HOUR = 0.25
SPAN_SCORE_UNDER_DAY = 0.75
SPAN_SCORE_LONGER = 1.0

# =============================================================================
# DEVICE TYPE PRIORS
# =============================================================================

DEVICE_TYPE_PRIORS = {
    'tracker': 1.0,
    'phone': 0.6,
    'tablet': 0.6,
    'watch': 0.5,
    'fitness': 0.4,
    'headphones': 0.3,
    'speaker': 0.2,
    'beacon': 0.15,
    'unknown': 0.35,
}
SEPARATED_BONUS_TRACKER = 0.3
SEPARATED_BONUS_OTHER = 0.15

# =============================================================================
# SETTINGS KEYS
# =============================================================================

SETTINGS_PREFIX = 'detection.'
LAST_PASS_PREFIX = 'detection.last_pass.'
