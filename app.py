"""
TailGuard Flask application.

Registers the detection, settings and MQTT blueprints on a fresh app and
makes sure the database schema exists.
"""

from __future__ import annotations

import os
from typing import Optional

from flask import Flask, jsonify

from routes.detection import detection_bp
from routes.mqtt import mqtt_bp
from routes.settings import settings_bp
from utils.database import init_db, set_db_path
from utils.logging import get_logger

logger = get_logger('tailguard.app')


def create_app(db_path: Optional[str] = None) -> Flask:
    """
    Build the application.

    Args:
        db_path: Database file to use instead of the default location.
    """
    if db_path is not None:
        set_db_path(db_path)

    app = Flask(__name__)
    app.register_blueprint(detection_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(mqtt_bp)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    init_db()
    logger.info("TailGuard application ready")
    return app


def main() -> None:
    app = create_app(os.environ.get('TAILGUARD_DB_PATH'))
    host = os.environ.get('TAILGUARD_HOST', '127.0.0.1')
    port = int(os.environ.get('TAILGUARD_PORT', '5050'))
    app.run(host=host, port=port)


if __name__ == '__main__':
    main()
