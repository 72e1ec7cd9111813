"""
MQTT configuration and status routes.

Provides REST API for the alert publisher: configuration, connection
management, topics and status.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request, Response

from utils.logging import get_logger
from utils.mqtt import TOPICS, get_mqtt_manager

logger = get_logger('tailguard.mqtt')

mqtt_bp = Blueprint('mqtt', __name__, url_prefix='/mqtt')


@mqtt_bp.route('/status')
def mqtt_status() -> Response:
    """Get MQTT connection status and statistics."""
    manager = get_mqtt_manager()

    return jsonify({
        'enabled': manager.is_enabled,
        'connected': manager.is_connected,
        'last_error': manager.last_error,
        'queue_size': manager.queue_size,
        'stats': manager.stats,
        'config': manager.get_config()
    })


@mqtt_bp.route('/config', methods=['GET'])
def get_config() -> Response:
    """Get current MQTT configuration."""
    return jsonify(get_mqtt_manager().get_config())


@mqtt_bp.route('/config', methods=['POST'])
def save_config() -> Response:
    """Save MQTT configuration, connecting or disconnecting on enable changes."""
    manager = get_mqtt_manager()

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'status': 'error', 'message': 'No configuration provided'}), 400

    if not manager.save_config(data):
        return jsonify({
            'status': 'error',
            'message': manager.last_error or 'Failed to save configuration'
        }), 400

    was_connected = manager.is_connected
    is_enabled = data.get('enabled', manager.is_enabled)

    if is_enabled and not was_connected:
        manager.connect()
    elif not is_enabled and was_connected:
        manager.disconnect()

    return jsonify({
        'status': 'success',
        'message': 'Configuration saved',
        'connected': manager.is_connected
    })


@mqtt_bp.route('/connect', methods=['POST'])
def connect() -> Response:
    """Manually connect to MQTT broker."""
    manager = get_mqtt_manager()

    if manager.is_connected:
        return jsonify({'status': 'success', 'message': 'Already connected'})

    if manager.connect():
        return jsonify({'status': 'success', 'message': 'Connection initiated'})

    return jsonify({
        'status': 'error',
        'message': manager.last_error or 'Connection failed'
    }), 500


@mqtt_bp.route('/disconnect', methods=['POST'])
def disconnect() -> Response:
    """Manually disconnect from MQTT broker."""
    manager = get_mqtt_manager()

    if not manager.is_connected:
        return jsonify({'status': 'success', 'message': 'Already disconnected'})

    manager.disconnect()
    return jsonify({'status': 'success', 'message': 'Disconnected'})


@mqtt_bp.route('/test', methods=['POST'])
def test_connection() -> Response:
    """Test MQTT broker connection with current configuration."""
    return jsonify(get_mqtt_manager().test_connection())


@mqtt_bp.route('/topics')
def get_topics() -> Response:
    """List published topics and whether each is enabled."""
    config = get_mqtt_manager().get_config()
    prefix = config['topic_prefix']

    return jsonify({
        'prefix': prefix,
        'topics': [
            {'name': name, 'topic': f'{prefix}/{name}', 'enabled': enabled}
            for name, enabled in config['topics'].items()
        ]
    })


@mqtt_bp.route('/topics/<name>', methods=['PUT'])
def toggle_topic(name: str) -> Response:
    """Enable or disable a topic."""
    if name not in TOPICS:
        return jsonify({
            'status': 'error',
            'message': f'Invalid topic: {name}. Valid: {", ".join(TOPICS)}'
        }), 400

    data = request.get_json(silent=True)
    if data is None or 'enabled' not in data:
        return jsonify({'status': 'error', 'message': 'Missing "enabled" field'}), 400

    get_mqtt_manager().save_config({'topics': {name: data['enabled']}})
    logger.info(f"MQTT topic {name} {'enabled' if data['enabled'] else 'disabled'}")

    return jsonify({'status': 'success', 'topic': name, 'enabled': bool(data['enabled'])})
