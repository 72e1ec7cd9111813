"""
MQTT publisher for TailGuard.

Publishes alerts and detection pass summaries to an MQTT broker.
Supports automatic reconnection, thread-safe publishing, and configuration via settings.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Optional

import paho.mqtt.client as mqtt

from utils.database import get_setting, set_settings

logger = logging.getLogger('tailguard.mqtt')

# Default settings
DEFAULT_BROKER_HOST = 'localhost'
DEFAULT_BROKER_PORT = 1883
DEFAULT_CLIENT_ID = 'tailguard'
DEFAULT_TOPIC_PREFIX = 'tailguard'
DEFAULT_QOS = 1
DEFAULT_KEEPALIVE = 60

# Published topics, relative to the prefix
TOPICS = ('alerts', 'detection_pass')

# Reconnection settings
RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 60
RECONNECT_MULTIPLIER = 2

PUBLISH_QUEUE_SIZE = 1000


class MQTTManager:
    """
    MQTT client manager.

    Handles connection, reconnection, and thread-safe publishing to the broker.
    Configuration is loaded from the settings database.
    """

    def __init__(self):
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._connecting = False
        self._publish_queue: queue.Queue = queue.Queue(maxsize=PUBLISH_QUEUE_SIZE)
        self._publish_thread: Optional[threading.Thread] = None
        self._reconnect_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._reconnect_delay = RECONNECT_MIN_DELAY
        self._last_error: Optional[str] = None
        self._stats = {
            'messages_published': 0,
            'messages_failed': 0,
            'reconnect_attempts': 0,
            'last_publish_time': None
        }

    @property
    def is_enabled(self) -> bool:
        """Check if MQTT is enabled in settings."""
        return bool(get_setting('mqtt_enabled', False))

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def stats(self) -> dict:
        return self._stats.copy()

    @property
    def queue_size(self) -> int:
        return self._publish_queue.qsize()

    def get_config(self) -> dict:
        """Get current MQTT configuration from settings. The password is masked."""
        return {
            'enabled': get_setting('mqtt_enabled', False),
            'broker_host': get_setting('mqtt_broker_host', DEFAULT_BROKER_HOST),
            'broker_port': get_setting('mqtt_broker_port', DEFAULT_BROKER_PORT),
            'username': get_setting('mqtt_username', ''),
            'password': '***' if get_setting('mqtt_password', '') else '',
            'use_tls': get_setting('mqtt_use_tls', False),
            'client_id': get_setting('mqtt_client_id', DEFAULT_CLIENT_ID),
            'topic_prefix': get_setting('mqtt_topic_prefix', DEFAULT_TOPIC_PREFIX),
            'qos': get_setting('mqtt_qos', DEFAULT_QOS),
            'topics': {topic: get_setting(f'mqtt_{topic}_enabled', True) for topic in TOPICS},
        }

    def save_config(self, config: dict) -> bool:
        """
        Save MQTT configuration to settings.

        A masked password ('***') leaves the stored password unchanged.
        """
        values = {}
        try:
            for key in ('enabled', 'broker_host', 'username', 'use_tls', 'client_id', 'topic_prefix'):
                if key in config:
                    values[f'mqtt_{key}'] = config[key]
            for key in ('broker_port', 'qos'):
                if key in config:
                    values[f'mqtt_{key}'] = int(config[key])
            if 'password' in config and config['password'] != '***':
                values['mqtt_password'] = config['password']
            for topic, enabled in (config.get('topics') or {}).items():
                if topic in TOPICS:
                    values[f'mqtt_{topic}_enabled'] = bool(enabled)

            set_settings(values)
            logger.info("MQTT configuration saved")
            return True
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to save MQTT config: {e}")
            self._last_error = str(e)
            return False

    def _build_client(self, client_id: str, config: dict) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        username = config['username']
        if username:
            client.username_pw_set(username, get_setting('mqtt_password', ''))
        if config['use_tls']:
            client.tls_set()
        return client

    def connect(self) -> bool:
        """
        Connect to the MQTT broker.

        Returns True if connection was initiated successfully.
        """
        if self._connected or self._connecting:
            return True

        self._connecting = True
        self._stop_event.clear()

        try:
            config = self.get_config()
            self._client = self._build_client(f"{config['client_id']}_{int(time.time())}", config)

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_publish = self._on_publish

            logger.info(f"Connecting to MQTT broker at {config['broker_host']}:{config['broker_port']}")
            self._client.connect_async(
                config['broker_host'],
                config['broker_port'],
                keepalive=DEFAULT_KEEPALIVE
            )
            self._client.loop_start()
            self._start_publish_thread()
            return True

        except Exception as e:
            self._connecting = False
            self._last_error = str(e)
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self) -> bool:
        """Disconnect from the MQTT broker."""
        self._stop_event.set()

        if self._client:
            try:
                self._client.loop_stop()
                self._client.disconnect()
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self._client = None

        self._connected = False
        self._connecting = False

        if self._publish_thread and self._publish_thread.is_alive():
            self._publish_thread.join(timeout=2)

        logger.info("Disconnected from MQTT broker")
        return True

    def publish(self, topic: str, data: dict) -> bool:
        """
        Queue a JSON message for ``<prefix>/<topic>``.

        Args:
            topic: One of TOPICS.
            data: Message body. A copy is published with ``@timestamp`` and
                ``topic`` fields added.

        Returns True if the message was queued.
        """
        if topic not in TOPICS:
            logger.warning(f"Refusing to publish to unknown topic: {topic}")
            return False

        if not self.is_enabled:
            return False

        if not self._connected:
            if not self._connecting:
                self.connect()
            return False

        if not get_setting(f'mqtt_{topic}_enabled', True):
            return False

        body = dict(data)
        body.setdefault('@timestamp', datetime.now(timezone.utc).isoformat())
        body['topic'] = topic

        message = {
            'topic': f"{get_setting('mqtt_topic_prefix', DEFAULT_TOPIC_PREFIX)}/{topic}",
            'payload': json.dumps(body, default=str),
            'qos': get_setting('mqtt_qos', DEFAULT_QOS),
        }

        try:
            self._publish_queue.put_nowait(message)
            return True
        except queue.Full:
            self._stats['messages_failed'] += 1
            logger.warning("MQTT publish queue full, dropping message")
            return False

    def test_connection(self) -> dict:
        """Connect once with the stored configuration and publish a test message."""
        config = self.get_config()
        test_client = None

        try:
            test_client = self._build_client(f'tailguard_test_{int(time.time())}', config)
            test_client.connect(config['broker_host'], config['broker_port'], keepalive=10)

            result = test_client.publish(f"{config['topic_prefix']}/test", '{"test": true}', qos=0)
            result.wait_for_publish(timeout=5)

            return {
                'success': True,
                'message': f"Successfully connected to {config['broker_host']}:{config['broker_port']}"
            }
        except Exception as e:
            return {'success': False, 'message': str(e)}
        finally:
            if test_client is not None:
                try:
                    test_client.disconnect()
                except Exception as e:
                    logger.debug(f"Test client disconnect failed: {e}")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._connecting = False
        if not reason_code.is_failure:
            self._connected = True
            self._reconnect_delay = RECONNECT_MIN_DELAY
            self._last_error = None
            logger.info("Connected to MQTT broker")
        else:
            self._connected = False
            self._last_error = f"Connection refused: {reason_code}"
            logger.error(f"MQTT connection failed: {self._last_error}")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._connected = False

        if reason_code.is_failure:
            self._last_error = f"Unexpected disconnection: {reason_code}"
            logger.warning(f"MQTT disconnected unexpectedly: {self._last_error}")

            if self.is_enabled and not self._stop_event.is_set():
                self._start_reconnect_thread()
        else:
            logger.info("MQTT disconnected gracefully")

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        self._stats['messages_published'] += 1
        self._stats['last_publish_time'] = datetime.now(timezone.utc).isoformat()

    def _start_publish_thread(self):
        if self._publish_thread and self._publish_thread.is_alive():
            return

        self._publish_thread = threading.Thread(target=self._publish_loop, daemon=True)
        self._publish_thread.start()

    def _publish_loop(self):
        """Background thread draining the publish queue."""
        while not self._stop_event.is_set():
            try:
                message = self._publish_queue.get(timeout=1)
            except queue.Empty:
                continue

            if not (self._connected and self._client):
                # Re-queue until the broker is back
                try:
                    self._publish_queue.put_nowait(message)
                except queue.Full:
                    self._stats['messages_failed'] += 1
                time.sleep(0.1)
                continue

            try:
                result = self._client.publish(message['topic'], message['payload'], qos=message['qos'])
                if result.rc != mqtt.MQTT_ERR_SUCCESS:
                    self._stats['messages_failed'] += 1
                    logger.warning(f"MQTT publish failed: {result.rc}")
            except Exception as e:
                self._stats['messages_failed'] += 1
                logger.error(f"Error in publish loop: {e}")

    def _start_reconnect_thread(self):
        if self._reconnect_thread and self._reconnect_thread.is_alive():
            return

        self._reconnect_thread = threading.Thread(target=self._reconnect_loop, daemon=True)
        self._reconnect_thread.start()

    def _reconnect_loop(self):
        """Reconnect with exponential backoff."""
        while not self._stop_event.is_set() and self.is_enabled and not self._connected:
            self._stats['reconnect_attempts'] += 1
            logger.info(f"Attempting MQTT reconnection (delay: {self._reconnect_delay}s)")

            if self._stop_event.wait(self._reconnect_delay):
                break

            try:
                if self._client:
                    self._client.reconnect()
                else:
                    self.connect()
            except Exception as e:
                logger.warning(f"MQTT reconnection failed: {e}")
                self._reconnect_delay = min(
                    self._reconnect_delay * RECONNECT_MULTIPLIER,
                    RECONNECT_MAX_DELAY
                )

    def shutdown(self):
        logger.info("Shutting down MQTT manager")
        self.disconnect()

        while not self._publish_queue.empty():
            try:
                self._publish_queue.get_nowait()
            except queue.Empty:
                break


# Global instance
_mqtt_manager: Optional[MQTTManager] = None
_mqtt_lock = threading.Lock()


def get_mqtt_manager() -> MQTTManager:
    """Get the global MQTT manager instance."""
    global _mqtt_manager
    with _mqtt_lock:
        if _mqtt_manager is None:
            _mqtt_manager = MQTTManager()
        return _mqtt_manager


def reset_mqtt_manager() -> None:
    """Shut down and drop the global manager."""
    global _mqtt_manager
    with _mqtt_lock:
        if _mqtt_manager is not None:
            _mqtt_manager.shutdown()
        _mqtt_manager = None


def mqtt_publish(topic: str, data: dict) -> bool:
    """
    Convenience function to publish via the global manager.

    Returns True if the message was queued for publishing.
    """
    return get_mqtt_manager().publish(topic, data)
