"""API endpoint tests for detection routes."""

from unittest.mock import MagicMock, patch

import pytest

from app import create_app
from conftest import T0, HOUR, airtag_payload
from utils import database as db
from utils.bluetooth.constants import APPLE_COMPANY_ID
from utils.tracking.exceptions import TransientStorageError
from utils.tracking.orchestrator import get_orchestrator

PLACES = [(40.00, -75.0), (40.02, -75.0), (40.04, -75.0)]


@pytest.fixture
def app(temp_db):
    """Create Flask application for testing."""
    app = create_app()
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


def airtag_json(mac='AA:BB:CC:DD:EE:01', timestamp=T0):
    return {
        'mac_address': mac,
        'rssi': -60,
        'timestamp': timestamp,
        'advertisement_hex': airtag_payload().hex(),
        'manufacturer_id': APPLE_COMPANY_ID,
        'service_uuids': ['fd6f'],
    }


def location_json(lat, lon, timestamp=T0):
    return {'latitude': lat, 'longitude': lon, 'accuracy': 10.0, 'timestamp': timestamp}


@pytest.fixture
def followed(client):
    """Post an AirTag seen at three distant places, two hours apart."""
    device_ids = set()
    for i, (lat, lon) in enumerate(PLACES):
        ts = T0 + i * 2 * HOUR
        response = client.post('/api/detection/sightings', json={
            'location': location_json(lat, lon, ts),
            'sightings': [airtag_json(timestamp=ts)],
        })
        assert response.status_code == 200
        device_ids.add(response.get_json()['sightings'][0]['device_id'])
    assert len(device_ids) == 1
    return device_ids.pop()


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'


class TestSightingEndpoints:

    def test_single_sighting_at_top_level(self, client):
        body = airtag_json()
        body['location'] = location_json(40.0, -75.0)

        response = client.post('/api/detection/sightings', json=body)

        assert response.status_code == 200
        data = response.get_json()
        assert data['count'] == 1
        record = data['sightings'][0]
        assert record['location_changed'] is False
        assert record['distance_from_last_m'] is None
        assert db.get_device(record['device_id']).is_tracker is True

    def test_batch_shares_location(self, client):
        response = client.post('/api/detection/sightings', json={
            'location': location_json(40.0, -75.0),
            'sightings': [
                {'mac_address': '11:11:11:11:11:11', 'rssi': -70, 'timestamp': T0},
                {'mac_address': '22:22:22:22:22:22', 'rssi': -80, 'timestamp': T0},
            ],
        })

        assert response.status_code == 200
        records = response.get_json()['sightings']
        assert len(records) == 2
        assert records[0]['location_id'] == records[1]['location_id']

    def test_distance_reported_on_move(self, client, followed):
        response = client.post('/api/detection/sightings', json={
            'location': location_json(40.0, -75.0, T0 + 6 * HOUR),
            'sightings': [airtag_json(timestamp=T0 + 6 * HOUR)],
        })
        record = response.get_json()['sightings'][0]
        assert record['location_changed'] is True
        assert record['distance_from_last_m'] > 4000

    @pytest.mark.parametrize('body', [
        {'sightings': [{'mac_address': '11:11:11:11:11:11', 'rssi': -70}]},
        {'location': location_json(95.0, 0.0), 'sightings': [{'mac_address': '11:11:11:11:11:11', 'rssi': -70}]},
        {'location': location_json(40.0, -75.0), 'sightings': []},
        {'location': location_json(40.0, -75.0), 'sightings': [{'mac_address': '11:11:11:11:11:11'}]},
        {'location': location_json(40.0, -75.0),
         'sightings': [{'mac_address': '11:11:11:11:11:11', 'rssi': -70, 'advertisement_hex': 'zz'}]},
        {'location': location_json(40.0, -75.0),
         'sightings': [{'mac_address': '11:11:11:11:11:11', 'rssi': -70, 'scan_trigger_type': 'SOMETIMES'}]},
    ])
    def test_malformed_requests(self, client, body):
        response = client.post('/api/detection/sightings', json=body)
        assert response.status_code == 400
        assert response.get_json()['status'] == 'error'

    def test_nothing_stored_on_bad_request(self, client):
        client.post('/api/detection/sightings', json={
            'location': location_json(95.0, 0.0),
            'sightings': [{'mac_address': '11:11:11:11:11:11', 'rssi': -70}],
        })
        assert db.get_all_devices() == []

    def test_user_path(self, client):
        response = client.post('/api/detection/path', json=location_json(40.0, -75.0))

        assert response.status_code == 200
        assert response.get_json()['timestamp'] == T0
        assert len(db.get_user_path()) == 1

    def test_user_path_invalid(self, client):
        response = client.post('/api/detection/path', json={'latitude': 'north'})
        assert response.status_code == 400


class TestRunEndpoint:

    def test_run_generates_alert(self, client, followed):
        response = client.post('/api/detection/run')

        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'success'
        assert data['result']['detections_found'] == 1
        assert len(data['result']['alerts_generated']) == 1

    def test_run_skipped_while_running(self, client):
        orchestrator = get_orchestrator()
        orchestrator._pass_lock.acquire()
        try:
            response = client.post('/api/detection/run')
        finally:
            orchestrator._pass_lock.release()

        assert response.get_json()['status'] == 'skipped'

    def test_run_with_invalid_config(self, client):
        db.set_setting('detection.min_threat_score', 4.0)
        response = client.post('/api/detection/run')
        assert response.status_code == 400

    def test_run_transient_failure(self, client):
        with patch('routes.detection.get_orchestrator') as mock_get:
            orchestrator = MagicMock()
            orchestrator.run_detection_pass.side_effect = TransientStorageError('database is locked')
            mock_get.return_value = orchestrator

            response = client.post('/api/detection/run')

        assert response.status_code == 503
        assert response.get_json()['retryable'] is True

    def test_device_score(self, client, followed):
        response = client.get(f'/api/detection/devices/{followed}/score')

        assert response.status_code == 200
        data = response.get_json()
        assert data['canonical_id'] == followed
        assert data['breakdown']['threat_level'] == 'HIGH'
        assert data['breakdown']['distinct_location_count'] == 3

    def test_device_score_not_found(self, client):
        response = client.get('/api/detection/devices/999/score')
        assert response.status_code == 404


class TestAlertEndpoints:

    @pytest.fixture
    def alert_id(self, client, followed):
        response = client.post('/api/detection/run')
        return response.get_json()['result']['alerts_generated'][0]

    def test_list_alerts(self, client, alert_id):
        data = client.get('/api/detection/alerts').get_json()
        assert data['count'] == 1
        assert data['alerts'][0]['id'] == alert_id
        assert data['alerts'][0]['level'] == 'HIGH'

    def test_get_alert(self, client, alert_id):
        response = client.get(f'/api/detection/alerts/{alert_id}')
        assert response.status_code == 200
        assert response.get_json()['title'] == 'High Priority Alert'

    def test_get_missing_alert(self, client):
        assert client.get('/api/detection/alerts/12345').status_code == 404

    def test_dismiss(self, client, alert_id):
        first = client.post(f'/api/detection/alerts/{alert_id}/dismiss')
        again = client.post(f'/api/detection/alerts/{alert_id}/dismiss')

        assert first.get_json()['status'] == 'success'
        assert again.get_json()['status'] == 'already_dismissed'
        assert client.get('/api/detection/alerts?active=true').get_json()['count'] == 0
        assert client.get('/api/detection/alerts').get_json()['count'] == 1

    def test_dismiss_missing(self, client):
        assert client.post('/api/detection/alerts/12345/dismiss').status_code == 404

    def test_dismiss_all(self, client, alert_id):
        response = client.post('/api/detection/alerts/dismiss-all')
        assert response.get_json()['dismissed'] == 1
        assert db.get_alert(alert_id).dismissed is True


class TestExportEndpoint:

    def test_export_csv(self, client, followed):
        client.post('/api/detection/run')
        response = client.get('/api/detection/export?format=csv')

        assert response.status_code == 200
        assert response.mimetype == 'text/csv'
        assert 'attachment' in response.headers['Content-Disposition']
        lines = response.get_data(as_text=True).strip().splitlines()
        assert lines[0].startswith('alert_id,device_id')
        assert len(lines) == 2
        assert 'AA:BB:CC:DD:EE:01' in lines[1]

    def test_export_json(self, client, followed):
        response = client.get('/api/detection/export')

        assert response.mimetype == 'application/json'
        data = response.get_json()
        assert data['alert_count'] == 0
        assert data['device_count'] == 1
        assert data['devices'][0]['id'] == followed


class TestWhitelistEndpoints:

    def test_add_list_remove(self, client, followed):
        response = client.post('/api/detection/whitelist', json={
            'device_id': followed, 'category': 'OWN', 'label': 'My keys',
        })
        assert response.status_code == 200
        assert response.get_json()['entry']['category'] == 'OWN'

        listing = client.get('/api/detection/whitelist').get_json()
        assert listing['count'] == 1
        assert listing['entries'][0]['label'] == 'My keys'

        assert client.delete(f'/api/detection/whitelist/{followed}').status_code == 200
        assert client.delete(f'/api/detection/whitelist/{followed}').status_code == 404

    def test_whitelisted_device_not_alerted(self, client, followed):
        client.post('/api/detection/whitelist', json={'device_id': followed})
        data = client.post('/api/detection/run').get_json()
        assert data['result']['detections_found'] == 0

    @pytest.mark.parametrize('body', [
        {},
        {'device_id': 'one'},
        {'device_id': True},
    ])
    def test_bad_device_id(self, client, body):
        assert client.post('/api/detection/whitelist', json=body).status_code == 400

    def test_bad_category(self, client, followed):
        response = client.post('/api/detection/whitelist', json={'device_id': followed, 'category': 'FRIEND'})
        assert response.status_code == 400

    def test_unknown_device(self, client):
        assert client.post('/api/detection/whitelist', json={'device_id': 999}).status_code == 404


class TestCleanupEndpoint:

    def test_cleanup_default(self, client, followed):
        response = client.post('/api/detection/cleanup', json={})

        assert response.status_code == 200
        deleted = response.get_json()['deleted']
        assert set(deleted) == {'devices', 'alerts', 'user_path', 'locations'}
        # T0 is far in the past relative to the wall clock
        assert deleted['devices'] == 1

    @pytest.mark.parametrize('value', [0, -3, 'ten', True])
    def test_cleanup_rejects_bad_age(self, client, value):
        response = client.post('/api/detection/cleanup', json={'max_age_days': value})
        assert response.status_code == 400
