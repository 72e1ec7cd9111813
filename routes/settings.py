"""Settings management routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request, Response

from utils.database import (
    get_db,
    get_setting,
    set_setting,
    set_settings,
    delete_setting,
    get_all_settings,
)
from utils.logging import get_logger
from utils.tracking.config import DetectionConfig
from utils.tracking.constants import SETTINGS_PREFIX
from utils.tracking.exceptions import ConfigurationError, TransientStorageError

logger = get_logger('tailguard.settings')

settings_bp = Blueprint('settings', __name__, url_prefix='/settings')


def _valid_key(key: str) -> bool:
    """Alphanumeric, underscores, dots, hyphens."""
    return bool(key) and all(c.isalnum() or c in '_.-' for c in key)


def _storage_error(e: Exception) -> tuple[Response, int]:
    if isinstance(e, TransientStorageError):
        return jsonify({'status': 'error', 'message': str(e), 'retryable': True}), 503
    return jsonify({'status': 'error', 'message': str(e)}), 500


@settings_bp.route('', methods=['GET'])
def get_settings() -> Response:
    """Get all settings."""
    try:
        return jsonify({
            'status': 'success',
            'settings': get_all_settings()
        })
    except Exception as e:
        logger.error(f"Error getting settings: {e}")
        return _storage_error(e)


@settings_bp.route('', methods=['POST'])
def save_settings() -> Response:
    """Save one or more settings. Detection keys must go through /settings/detection."""
    data = request.get_json(silent=True) or {}

    if not data:
        return jsonify({
            'status': 'error',
            'message': 'No settings provided'
        }), 400

    saved = [
        key for key in data
        if _valid_key(key) and not key.startswith(SETTINGS_PREFIX)
    ]
    try:
        set_settings({key: data[key] for key in saved})
        return jsonify({
            'status': 'success',
            'saved': saved
        })
    except Exception as e:
        logger.error(f"Error saving settings: {e}")
        return _storage_error(e)


@settings_bp.route('/detection', methods=['GET'])
def get_detection_config() -> Response:
    """Current detection configuration, defaults filled in."""
    try:
        config = DetectionConfig.from_settings(get_all_settings())
        return jsonify({
            'status': 'success',
            'config': config.to_dict()
        })
    except ConfigurationError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400
    except Exception as e:
        logger.error(f"Error reading detection config: {e}")
        return _storage_error(e)


@settings_bp.route('/detection', methods=['POST'])
def save_detection_config() -> Response:
    """
    Merge fields into the detection configuration.

    The merged configuration is validated before anything is written.
    """
    data = request.get_json(silent=True) or {}
    if not data:
        return jsonify({'status': 'error', 'message': 'No configuration provided'}), 400

    try:
        current = get_all_settings()
        merged = dict(current)
        merged.update({SETTINGS_PREFIX + key: value for key, value in data.items()})
        config = DetectionConfig.from_settings(merged)

        unknown = [key for key in data if key not in config.to_dict()]
        if unknown:
            raise ConfigurationError(f'Unknown configuration keys: {", ".join(unknown)}')

        config.validate()
        with get_db(immediate=True):
            set_settings(config.to_settings())
            if config.location_cluster_max_gap_ms is None:
                delete_setting(SETTINGS_PREFIX + 'location_cluster_max_gap_ms')
    except ConfigurationError as e:
        logger.error(f"Rejected detection config: {e}")
        return jsonify({'status': 'error', 'message': str(e)}), 400
    except Exception as e:
        logger.error(f"Error saving detection config: {e}")
        return _storage_error(e)

    return jsonify({
        'status': 'success',
        'config': config.to_dict()
    })


@settings_bp.route('/<key>', methods=['GET'])
def get_single_setting(key: str) -> Response:
    """Get a single setting by key."""
    try:
        value = get_setting(key)
        if value is None:
            return jsonify({
                'status': 'not_found',
                'key': key
            }), 404

        return jsonify({
            'status': 'success',
            'key': key,
            'value': value
        })
    except Exception as e:
        logger.error(f"Error getting setting {key}: {e}")
        return _storage_error(e)


@settings_bp.route('/<key>', methods=['PUT'])
def update_single_setting(key: str) -> Response:
    """Update a single setting."""
    data = request.get_json(silent=True) or {}

    if 'value' not in data:
        return jsonify({
            'status': 'error',
            'message': 'Value is required'
        }), 400

    if not _valid_key(key) or key.startswith(SETTINGS_PREFIX):
        return jsonify({
            'status': 'error',
            'message': f'Setting {key} cannot be written here'
        }), 400

    try:
        set_setting(key, data['value'])
        return jsonify({
            'status': 'success',
            'key': key,
            'value': data['value']
        })
    except Exception as e:
        logger.error(f"Error updating setting {key}: {e}")
        return _storage_error(e)


@settings_bp.route('/<key>', methods=['DELETE'])
def delete_single_setting(key: str) -> Response:
    """Delete a setting."""
    try:
        if delete_setting(key):
            return jsonify({
                'status': 'success',
                'key': key,
                'deleted': True
            })
        return jsonify({
            'status': 'not_found',
            'key': key
        }), 404
    except Exception as e:
        logger.error(f"Error deleting setting {key}: {e}")
        return _storage_error(e)
