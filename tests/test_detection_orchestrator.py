"""Tests for detection passes, throttling and whitelisting."""

import threading
from unittest.mock import MagicMock

import pytest

from conftest import T0, MINUTE, HOUR
from utils import database as db
from utils.tracking import orchestrator as orchestrator_module
from utils.tracking.config import DetectionConfig
from utils.tracking.exceptions import ConfigurationError
from utils.tracking.identity import IdentityResolver
from utils.tracking.ingest import ingest_sighting
from utils.tracking.models import ThreatLevel, WhitelistCategory
from utils.tracking.orchestrator import DetectionOrchestrator, score_device

# About 2.2 km apart on one meridian
PLACES = [(40.00, -75.0), (40.02, -75.0), (40.04, -75.0)]
NOW = T0 + 5 * HOUR


class Clock:
    """Settable clock in epoch milliseconds."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def config():
    return DetectionConfig()


@pytest.fixture
def resolver(temp_db, config):
    return IdentityResolver(config)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def publisher():
    return MagicMock(return_value=True)


@pytest.fixture
def orchestrator(temp_db, clock, publisher):
    return DetectionOrchestrator(clock=clock, publisher=publisher)


@pytest.fixture
def follow(resolver, config, make_airtag, make_fix):
    """Seed an AirTag seen at three distant places two hours apart."""
    def _follow(mac='AA:BB:CC:DD:EE:01', key='a1b2c3d4e5', offset=0):
        records = []
        for i, (lat, lon) in enumerate(PLACES):
            ts = T0 + i * 2 * HOUR + offset
            records.append(ingest_sighting(
                make_airtag(mac=mac, timestamp=ts, key=key), make_fix(lat, lon, ts), config, resolver,
            ))
        return records[0].device_id
    return _follow


class TestDetectionPass:

    def test_following_tracker_raises_alert(self, orchestrator, follow, config):
        device_id = follow()

        result = orchestrator.run_detection_pass(config)

        assert result.skipped is False
        assert result.detections_found == 1
        assert len(result.alerts_generated) == 1

        alert = db.get_alert(result.alerts_generated[0])
        assert alert.device_id == device_id
        assert alert.level == ThreatLevel.HIGH
        assert alert.title == 'High Priority Alert'
        assert alert.created_at == NOW
        assert len(alert.location_ids) == 3
        assert alert.device_addresses == ['AA:BB:CC:DD:EE:01']
        assert alert.breakdown['threat_level'] == 'HIGH'
        assert alert.details['locationCount'] == 3
        assert alert.details['deviceId'] == device_id

    def test_one_place_many_sightings_never_alerts(self, orchestrator, resolver, config, make_airtag, make_fix):
        for i in range(50):
            ts = T0 + i * MINUTE
            ingest_sighting(make_airtag(timestamp=ts), make_fix(40.0, -75.0, ts), config, resolver)

        result = orchestrator.run_detection_pass(config)

        assert result.detections_found == 0
        assert result.alerts_generated == []

    def test_nothing_to_do(self, orchestrator, config):
        result = orchestrator.run_detection_pass(config)
        assert result.detections_found == 0
        assert result.failed_devices == []

    def test_min_threat_score_filters(self, orchestrator, follow):
        follow()
        result = orchestrator.run_detection_pass(DetectionConfig(min_threat_score=0.95))
        assert result.detections_found == 0

    def test_min_distance_filters(self, orchestrator, follow):
        follow()
        result = orchestrator.run_detection_pass(DetectionConfig(min_detection_distance_m=10_000.0))
        assert result.detections_found == 0

    def test_last_pass_persisted(self, orchestrator, follow, config):
        follow()
        orchestrator.run_detection_pass(config)

        assert db.get_setting('detection.last_pass.detections_found') == 1
        assert db.get_setting('detection.last_pass.alerts_generated') == 1
        assert db.get_setting('detection.last_pass.completed_at') == NOW

    def test_config_loaded_from_settings(self, orchestrator, follow):
        follow()
        db.set_setting('detection.min_threat_score', 0.95)
        result = orchestrator.run_detection_pass()
        assert result.detections_found == 0


class TestThrottling:

    def test_second_pass_throttled(self, orchestrator, follow, config):
        follow()
        first = orchestrator.run_detection_pass(config)
        second = orchestrator.run_detection_pass(config)

        assert len(first.alerts_generated) == 1
        assert second.detections_found == 1
        assert second.alerts_generated == []

    def test_alert_again_after_window(self, orchestrator, follow, config, clock):
        follow()
        orchestrator.run_detection_pass(config)

        clock.now = NOW + config.throttle_window_ms + 1
        result = orchestrator.run_detection_pass(config)
        assert len(result.alerts_generated) == 1

    def test_dismissed_alert_does_not_throttle(self, orchestrator, follow, config):
        follow()
        first = orchestrator.run_detection_pass(config)
        db.dismiss_alert(first.alerts_generated[0], NOW)

        result = orchestrator.run_detection_pass(config)
        assert len(result.alerts_generated) == 1

    def _existing_alert(self, device_id, level):
        return db.insert_alert(
            device_id=device_id,
            created_at=NOW - MINUTE,
            level=level,
            title='earlier',
            message='earlier',
            device_addresses=[],
            location_ids=[],
            threat_score=0.5,
            breakdown={},
            details={},
        )

    def test_escalation_breaks_through(self, orchestrator, follow, config):
        device_id = follow()
        self._existing_alert(device_id, ThreatLevel.LOW)

        result = orchestrator.run_detection_pass(config)
        assert len(result.alerts_generated) == 1
        assert db.get_alert(result.alerts_generated[0]).level == ThreatLevel.HIGH

    def test_lower_level_throttled_by_higher(self, orchestrator, follow, config):
        device_id = follow()
        self._existing_alert(device_id, ThreatLevel.CRITICAL)

        result = orchestrator.run_detection_pass(config)
        assert result.alerts_generated == []

    def test_throttle_is_per_device(self, orchestrator, follow, config):
        follow()
        follow(mac='AA:BB:CC:DD:EE:02', key='0102030405', offset=10 * MINUTE)

        result = orchestrator.run_detection_pass(config)
        assert len(result.alerts_generated) == 2


class TestWhitelist:

    def test_whitelisted_device_skipped(self, orchestrator, follow, config):
        device_id = follow()
        db.add_whitelist_entry(device_id, WhitelistCategory.OWN, created_at=T0)

        result = orchestrator.run_detection_pass(config)
        assert result.detections_found == 0

    def test_whitelisting_any_member_covers_chain(self, orchestrator, resolver, config, make_airtag, make_fix):
        first = ingest_sighting(make_airtag(mac='11:11:11:11:11:11', timestamp=T0),
                                make_fix(*PLACES[0], T0), config, resolver)
        rotated = ingest_sighting(make_airtag(mac='22:22:22:22:22:22', timestamp=T0 + MINUTE),
                                  make_fix(*PLACES[0], T0 + MINUTE), config, resolver)
        for i in (1, 2):
            ts = T0 + i * 2 * HOUR
            ingest_sighting(make_airtag(mac='22:22:22:22:22:22', timestamp=ts),
                            make_fix(*PLACES[i], ts), config, resolver)

        assert rotated.device_id != first.device_id
        assert orchestrator.evaluate_chain(db.get_chain(first.device_id), [], config) is not None

        db.add_whitelist_entry(rotated.device_id, WhitelistCategory.PARTNER, created_at=T0)
        result = orchestrator.run_detection_pass(config)
        assert result.detections_found == 0


class TestShadowDetection:

    def test_unlinked_rotation_detected(self, orchestrator, resolver, rotating_phone):
        config = DetectionConfig(min_location_count=2)
        device_ids = rotating_phone(PLACES, config, resolver)

        result = orchestrator.run_detection_pass(config)

        assert result.detections_found == 1
        alert = db.get_alert(result.alerts_generated[0])
        assert alert.device_id == device_ids[-1]
        assert alert.level != ThreatLevel.NONE
        assert alert.threat_score >= config.min_threat_score
        assert len(alert.location_ids) == 3
        assert len(alert.device_addresses) == 6
        assert alert.details['shadow']['shadow_key'] == 'C:10|M:004C|T:PHONE'
        assert alert.details['shadow']['rotation']['handoff_count'] == 5
        assert 'Shadow detection' in alert.details['detectionReason']

    def test_weak_places_damped_below_default_count(self, orchestrator, resolver, config, rotating_phone):
        rotating_phone(PLACES, config, resolver)

        result = orchestrator.run_detection_pass(config)
        assert result.detections_found == 0

    def test_chain_detection_not_repeated(self, orchestrator, follow, config):
        follow()

        result = orchestrator.run_detection_pass(config)

        assert result.detections_found == 1
        alert = db.get_alert(result.alerts_generated[0])
        assert alert.details['shadow'] is None

    def test_whitelisted_member_left_out(self, orchestrator, resolver, rotating_phone):
        config = DetectionConfig(min_location_count=2)
        device_ids = rotating_phone(PLACES, config, resolver)
        db.add_whitelist_entry(device_ids[-1], WhitelistCategory.OWN, created_at=T0)

        result = orchestrator.run_detection_pass(config)

        assert result.detections_found == 1
        alert = db.get_alert(result.alerts_generated[0])
        assert alert.device_id == device_ids[-2]
        assert len(alert.device_addresses) == 5

    def test_shadow_failure_isolated(self, orchestrator, resolver, rotating_phone, monkeypatch):
        config = DetectionConfig(min_location_count=2)
        device_ids = rotating_phone(PLACES, config, resolver)

        def broken_score(chain, sightings, user_path, cfg):
            raise ValueError('boom')

        monkeypatch.setattr(orchestrator_module, 'score', broken_score)
        result = orchestrator.run_detection_pass(config)

        assert result.detections_found == 0
        assert result.failed_devices == [device_ids[-1]]


class TestFailures:

    def test_invalid_config_rejected_before_work(self, orchestrator, follow):
        follow()
        bad = DetectionConfig(weights={
            'location': 0.5, 'distance': 0.5, 'time': 0.5, 'consistency': 0.0, 'device_type': 0.0,
        })

        with pytest.raises(ConfigurationError):
            orchestrator.run_detection_pass(bad)
        assert db.get_alerts() == []
        assert db.get_setting('detection.last_pass.completed_at') is None

    def test_one_device_failure_isolated(self, orchestrator, follow, config, monkeypatch):
        good = follow()
        bad = follow(mac='AA:BB:CC:DD:EE:02', key='0102030405', offset=10 * MINUTE)
        real_score = orchestrator_module.score

        def flaky_score(chain, sightings, user_path, cfg):
            if chain.canonical.id == bad:
                raise ValueError('boom')
            return real_score(chain, sightings, user_path, cfg)

        monkeypatch.setattr(orchestrator_module, 'score', flaky_score)
        result = orchestrator.run_detection_pass(config)

        assert result.failed_devices == [bad]
        assert len(result.alerts_generated) == 1
        assert db.get_alert(result.alerts_generated[0]).device_id == good

    def test_publisher_errors_do_not_fail_pass(self, temp_db, follow, config, clock):
        publisher = MagicMock(side_effect=RuntimeError('broker down'))
        orchestrator = DetectionOrchestrator(clock=clock, publisher=publisher)
        follow()

        result = orchestrator.run_detection_pass(config)
        assert len(result.alerts_generated) == 1


class TestConcurrencyAndCancellation:

    def test_overlapping_pass_skipped(self, orchestrator, follow, config):
        follow()
        orchestrator._pass_lock.acquire()
        try:
            assert orchestrator.is_running is True
            result = orchestrator.run_detection_pass(config)
        finally:
            orchestrator._pass_lock.release()

        assert result.skipped is True
        assert db.get_alerts() == []

    def test_cancelled_before_start(self, orchestrator, follow, config):
        follow()
        cancel = threading.Event()
        cancel.set()

        result = orchestrator.run_detection_pass(config, cancel_event=cancel)

        assert result.cancelled is True
        assert result.alerts_generated == []

    def test_lock_released_after_pass(self, orchestrator, config):
        orchestrator.run_detection_pass(config)
        assert orchestrator.is_running is False


class TestPublishing:

    def test_alert_and_pass_summary_published(self, orchestrator, follow, config, publisher):
        follow()
        orchestrator.run_detection_pass(config)

        topics = [call.args[0] for call in publisher.call_args_list]
        assert topics == ['alerts', 'detection_pass']

        alert_payload = publisher.call_args_list[0].args[1]
        assert alert_payload['level'] == 'HIGH'
        summary = publisher.call_args_list[1].args[1]
        assert summary['detections_found'] == 1

    def test_no_publisher(self, temp_db, follow, config, clock):
        orchestrator = DetectionOrchestrator(clock=clock, publisher=None)
        follow()
        assert len(orchestrator.run_detection_pass(config).alerts_generated) == 1


class TestScoreDevice:

    def test_scores_chain_without_alerting(self, follow, config):
        device_id = follow()

        breakdown = score_device(device_id, config)

        assert breakdown.threat_level == ThreatLevel.HIGH
        assert breakdown.distinct_location_count == 3
        assert db.get_alerts() == []

    def test_unknown_device(self, temp_db, config):
        assert score_device(424242, config) is None
