"""
Alert text and detail documents for detections.
"""

from __future__ import annotations

from .models import Detection, DeviceChain, ScoreBreakdown, ThreatLevel

ALERT_TITLES = {
    ThreatLevel.CRITICAL: 'Critical Tracking Alert',
    ThreatLevel.HIGH: 'High Priority Alert',
    ThreatLevel.MEDIUM: 'Medium Priority Alert',
    ThreatLevel.LOW: 'Low Priority Alert',
}

LEVEL_ADVICE = {
    ThreatLevel.CRITICAL: (
        'CRITICAL: This device shows a very strong pattern of tracking behavior. '
        'Please review the details immediately and consider contacting authorities if you feel unsafe.'
    ),
    ThreatLevel.HIGH: (
        'HIGH: This device shows a strong pattern of following behavior. '
        'Please review the detection details and take appropriate action.'
    ),
    ThreatLevel.MEDIUM: (
        'MEDIUM: This device may be following you. '
        'Review the details to determine if this is a known device or requires action.'
    ),
    ThreatLevel.LOW: (
        'LOW: This device has appeared at multiple locations. '
        'It may be a coincidence, but worth monitoring.'
    ),
}


def format_time_span(span_ms: int) -> str:
    """Largest whole unit: '2 days', '1 hour', '5 minutes', '30 seconds'."""
    seconds = span_ms // 1000
    for unit, size in (('day', 86400), ('hour', 3600), ('minute', 60)):
        count = seconds // size
        if count > 0:
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def build_reason(chain: DeviceChain, breakdown: ScoreBreakdown) -> str:
    hours = breakdown.time_span_ms // 3_600_000
    reason = (
        f"Device {chain.display_name} detected at {breakdown.distinct_location_count} "
        f"different locations over the last {hours} hours. "
    )
    if chain.find_my_separated:
        reason += 'Find My device is separated from its owner. '
    reason += f"Threat level: {breakdown.threat_level.value}."
    return reason


def build_title(level: ThreatLevel) -> str:
    return ALERT_TITLES.get(level, 'Detection Alert')


def build_message(detection: Detection) -> str:
    chain = detection.chain
    breakdown = detection.breakdown
    level = breakdown.threat_level

    lines = [
        'A suspicious device has been detected following your movements.',
        '',
        f'Device: {chain.display_name}',
        f'MAC Address: {chain.canonical.address}',
        f'Threat Level: {level.value}',
        f'Locations: {breakdown.distinct_location_count} different places',
        f'Max Distance: {breakdown.max_distance_m / 1000.0:.1f} km',
        f'Time Period: {format_time_span(breakdown.time_span_ms)}',
    ]
    if len(chain.members) > 1:
        lines.append(f'Addresses: {len(chain.members)} (MAC rotation detected)')
    if level in LEVEL_ADVICE:
        lines += ['', LEVEL_ADVICE[level]]
    return '\n'.join(lines)


def build_details(detection: Detection) -> dict:
    """Structured document stored with the alert."""
    chain = detection.chain
    breakdown = detection.breakdown
    return {
        'deviceId': chain.canonical.id,
        'deviceName': chain.display_name,
        'deviceAddress': chain.canonical.address,
        'memberIds': chain.member_ids,
        'locationCount': breakdown.distinct_location_count,
        'effectiveLocationCount': round(breakdown.effective_location_count, 2),
        'maxDistance': round(breakdown.max_distance_m, 1),
        'avgDistance': round(breakdown.avg_distance_m, 1),
        'threatScore': round(breakdown.total, 4),
        'timeSpan': breakdown.time_span_ms,
        'detectionReason': detection.reason,
        'breakdown': breakdown.to_dict(),
        'shadow': detection.shadow,
    }
