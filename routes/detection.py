"""
Detection API - sighting ingestion, detection passes, alerts and whitelist.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime
from typing import Any, Optional

from flask import Blueprint, Response, jsonify, request

from utils import database as db
from utils.logging import get_logger
from utils.tracking.config import load_config
from utils.tracking.exceptions import (
    ConfigurationError,
    MalformedInputError,
    TransientStorageError,
)
from utils.tracking.ingest import ingest_scan
from utils.tracking.locations import record_user_fix
from utils.tracking.models import (
    LocationFix,
    RawSighting,
    ScanTriggerType,
    WhitelistCategory,
    now_ms,
)
from utils.tracking.orchestrator import get_orchestrator, score_device

logger = get_logger('tailguard.detection_api')

# Blueprint
detection_bp = Blueprint('detection', __name__, url_prefix='/api/detection')

DEFAULT_ALERT_LIMIT = 100
MAX_ALERT_LIMIT = 1000


# =============================================================================
# REQUEST PARSING
# =============================================================================

def _error_response(e: Exception) -> tuple[Response, int]:
    """Map an exception onto a JSON error and status code."""
    if isinstance(e, (MalformedInputError, ConfigurationError)):
        return jsonify({'status': 'error', 'message': str(e)}), 400
    if isinstance(e, TransientStorageError):
        return jsonify({'status': 'error', 'message': str(e), 'retryable': True}), 503
    logger.error(f"Unexpected error: {e}", exc_info=True)
    return jsonify({'status': 'error', 'message': str(e)}), 500


def _parse_fix(data: Any, default_ts: int) -> LocationFix:
    if not isinstance(data, dict):
        raise MalformedInputError('location must be an object')
    try:
        fix = LocationFix(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            accuracy=float(data.get('accuracy', 0.0)),
            timestamp=int(data.get('timestamp', default_ts)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedInputError(f'Invalid location: {e}') from e
    fix.validate()
    return fix


def _parse_sighting(data: Any, default_ts: int) -> RawSighting:
    """
    Build a RawSighting from JSON.

    Request JSON:
        - mac_address: Advertised MAC (required)
        - rssi: Signal strength in dBm (required)
        - timestamp: Epoch ms (optional, defaults to now)
        - advertisement_hex: Manufacturer data after the company id, hex
        - manufacturer_id: Bluetooth SIG company id
        - service_uuids: List of service UUID strings
        - scan_trigger_type: MANUAL, CONTINUOUS, PERIODIC or LOCATION_BASED
        - name, tx_power, appearance: Optional advertised fields
    """
    if not isinstance(data, dict):
        raise MalformedInputError('sighting must be an object')
    try:
        payload_hex = data.get('advertisement_hex')
        manufacturer_id = data.get('manufacturer_id')
        tx_power = data.get('tx_power')
        appearance = data.get('appearance')
        return RawSighting(
            mac_address=str(data['mac_address']).strip(),
            rssi=int(data['rssi']),
            timestamp=int(data.get('timestamp', default_ts)),
            advertisement_bytes=bytes.fromhex(payload_hex) if payload_hex else None,
            manufacturer_id=int(manufacturer_id) if manufacturer_id is not None else None,
            service_uuids=[str(u) for u in data.get('service_uuids') or []],
            scan_trigger_type=ScanTriggerType(data.get('scan_trigger_type', ScanTriggerType.CONTINUOUS.value)),
            name=data.get('name') or None,
            tx_power=int(tx_power) if tx_power is not None else None,
            appearance=int(appearance) if appearance is not None else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedInputError(f'Invalid sighting: {e}') from e


def _bool_arg(name: str, default: bool = False) -> bool:
    value = request.args.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes')


# =============================================================================
# INGESTION
# =============================================================================

@detection_bp.route('/sightings', methods=['POST'])
def post_sightings():
    """
    Ingest one scan.

    Request JSON:
        - location: {latitude, longitude, accuracy, timestamp}
        - sightings: list of sighting objects, or a single sighting's fields
          at the top level

    Returns:
        JSON with the stored sighting records.
    """
    data = request.get_json(silent=True) or {}
    ts = now_ms()

    try:
        fix = _parse_fix(data.get('location'), ts)
        raw = data['sightings'] if 'sightings' in data else [data]
        if not isinstance(raw, list) or not raw:
            raise MalformedInputError('sightings must be a non-empty list')
        sightings = [_parse_sighting(item, ts) for item in raw]
        records = ingest_scan(sightings, fix, load_config())
    except Exception as e:
        return _error_response(e)

    return jsonify({
        'status': 'success',
        'count': len(records),
        'sightings': [
            {
                'id': r.id,
                'device_id': r.device_id,
                'location_id': r.location_id,
                'timestamp': r.timestamp,
                'location_changed': r.location_changed,
                'distance_from_last_m': round(r.distance_from_last_m, 1) if r.distance_from_last_m is not None else None,
            }
            for r in records
        ],
    })


@detection_bp.route('/path', methods=['POST'])
def post_user_fix():
    """Record one of the user's own GPS fixes."""
    data = request.get_json(silent=True) or {}
    try:
        fix = _parse_fix(data, now_ms())
        point = record_user_fix(fix, load_config())
    except Exception as e:
        return _error_response(e)

    return jsonify({
        'status': 'success',
        'location_id': point.location_id,
        'timestamp': point.timestamp,
    })


# =============================================================================
# DETECTION
# =============================================================================

@detection_bp.route('/run', methods=['POST'])
def run_pass():
    """
    Run a detection pass now.

    Returns:
        JSON pass summary. A pass that found another one running reports
        status 'skipped'.
    """
    try:
        result = get_orchestrator().run_detection_pass()
    except Exception as e:
        return _error_response(e)

    return jsonify({
        'status': 'skipped' if result.skipped else 'success',
        'result': result.to_dict(),
    })


@detection_bp.route('/devices/<int:device_id>/score', methods=['GET'])
def get_device_score(device_id: int):
    """Score breakdown for the chain a device belongs to."""
    try:
        breakdown = score_device(device_id)
    except Exception as e:
        return _error_response(e)

    if breakdown is None:
        return jsonify({'status': 'error', 'message': 'Device not found'}), 404

    chain = db.get_chain(device_id)
    return jsonify({
        'status': 'success',
        'device_id': device_id,
        'canonical_id': chain.canonical.id if chain else device_id,
        'breakdown': breakdown.to_dict(),
    })


# =============================================================================
# ALERTS
# =============================================================================

@detection_bp.route('/alerts', methods=['GET'])
def list_alerts():
    """
    List alerts, newest first.

    Query parameters:
        - active: Only non-dismissed alerts ('true'/'false')
        - limit: Maximum number of alerts
    """
    active_only = _bool_arg('active')
    limit = min(request.args.get('limit', DEFAULT_ALERT_LIMIT, type=int), MAX_ALERT_LIMIT)

    try:
        alerts = db.get_alerts(active_only=active_only, limit=limit)
    except Exception as e:
        return _error_response(e)

    return jsonify({
        'count': len(alerts),
        'alerts': [a.to_dict() for a in alerts],
    })


@detection_bp.route('/alerts/<int:alert_id>', methods=['GET'])
def get_alert(alert_id: int):
    alert = db.get_alert(alert_id)
    if alert is None:
        return jsonify({'status': 'error', 'message': 'Alert not found'}), 404
    return jsonify(alert.to_dict())


@detection_bp.route('/alerts/<int:alert_id>/dismiss', methods=['POST'])
def dismiss_alert(alert_id: int):
    alert = db.get_alert(alert_id)
    if alert is None:
        return jsonify({'status': 'error', 'message': 'Alert not found'}), 404
    if alert.dismissed:
        return jsonify({'status': 'already_dismissed', 'alert_id': alert_id})

    db.dismiss_alert(alert_id, now_ms())
    return jsonify({'status': 'success', 'alert_id': alert_id})


@detection_bp.route('/alerts/dismiss-all', methods=['POST'])
def dismiss_all_alerts():
    count = db.dismiss_all_alerts(now_ms())
    return jsonify({'status': 'success', 'dismissed': count})


@detection_bp.route('/export', methods=['GET'])
def export_alerts():
    """
    Export alerts and devices.

    Query parameters:
        - format: Export format ('csv', 'json'). CSV holds alerts only.
    """
    export_format = request.args.get('format', 'json').lower()
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    alerts = db.get_alerts(limit=MAX_ALERT_LIMIT)

    if export_format == 'csv':
        output = io.StringIO()
        writer = csv.writer(output)

        writer.writerow([
            'alert_id', 'device_id', 'created_at', 'level', 'threat_score',
            'title', 'device_addresses', 'location_ids', 'dismissed', 'dismissed_at',
        ])
        for alert in alerts:
            writer.writerow([
                alert.id,
                alert.device_id,
                alert.created_at,
                alert.level.value,
                round(alert.threat_score, 4),
                alert.title,
                ';'.join(alert.device_addresses),
                ';'.join(str(i) for i in alert.location_ids),
                'yes' if alert.dismissed else 'no',
                alert.dismissed_at or '',
            ])

        return Response(
            output.getvalue(),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename=tailguard_alerts_{stamp}.csv'}
        )

    devices = db.get_all_devices()
    data = {
        'exported_at': datetime.now().isoformat(),
        'alert_count': len(alerts),
        'device_count': len(devices),
        'alerts': [a.to_dict() for a in alerts],
        'devices': [d.to_dict() for d in devices],
    }
    return Response(
        json.dumps(data, indent=2),
        mimetype='application/json',
        headers={'Content-Disposition': f'attachment; filename=tailguard_export_{stamp}.json'}
    )


# =============================================================================
# WHITELIST
# =============================================================================

@detection_bp.route('/whitelist', methods=['GET'])
def list_whitelist():
    entries = db.get_whitelist_entries()
    return jsonify({
        'count': len(entries),
        'entries': [e.to_dict() for e in entries],
    })


@detection_bp.route('/whitelist', methods=['POST'])
def add_whitelist():
    """
    Whitelist a device.

    Request JSON:
        - device_id: Device to whitelist (required)
        - category: OWN, PARTNER or TRUSTED (default TRUSTED)
        - label, notes: Optional text
        - added_via_learn_mode: Whether Learn Mode added it
    """
    data = request.get_json(silent=True) or {}

    device_id: Optional[int] = data.get('device_id')
    if not isinstance(device_id, int) or isinstance(device_id, bool):
        return jsonify({'status': 'error', 'message': 'device_id must be an integer'}), 400

    try:
        category = WhitelistCategory(data.get('category', WhitelistCategory.TRUSTED.value))
    except ValueError:
        valid = ', '.join(c.value for c in WhitelistCategory)
        return jsonify({'status': 'error', 'message': f'Invalid category. Must be one of: {valid}'}), 400

    if db.get_device(device_id) is None:
        return jsonify({'status': 'error', 'message': 'Device not found'}), 404

    entry = db.add_whitelist_entry(
        device_id=device_id,
        category=category,
        created_at=now_ms(),
        label=data.get('label'),
        added_via_learn_mode=bool(data.get('added_via_learn_mode', False)),
        notes=data.get('notes'),
    )
    logger.info(f"Device {device_id} whitelisted as {category.value}")
    return jsonify({'status': 'success', 'entry': entry.to_dict()})


@detection_bp.route('/whitelist/<int:device_id>', methods=['DELETE'])
def remove_whitelist(device_id: int):
    if not db.remove_whitelist_entry(device_id):
        return jsonify({'status': 'not_found', 'device_id': device_id}), 404
    return jsonify({'status': 'success', 'device_id': device_id})


# =============================================================================
# RETENTION
# =============================================================================

@detection_bp.route('/cleanup', methods=['POST'])
def cleanup():
    """
    Delete old data.

    Request JSON:
        - max_age_days: Keep data newer than this many days (default 30)
    """
    data = request.get_json(silent=True) or {}
    max_age_days = data.get('max_age_days', 30)
    if not isinstance(max_age_days, (int, float)) or isinstance(max_age_days, bool) or max_age_days <= 0:
        return jsonify({'status': 'error', 'message': 'max_age_days must be positive'}), 400

    cutoff = now_ms() - int(max_age_days * 86_400_000)
    try:
        counts = db.cleanup_old_data(cutoff)
    except Exception as e:
        return _error_response(e)

    return jsonify({'status': 'success', 'deleted': counts})
