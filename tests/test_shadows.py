"""Tests for shadow keys and rotating-device analysis."""

import pytest

from conftest import T0, MINUTE
from utils import database as db
from utils.tracking.config import DetectionConfig
from utils.tracking.identity import IdentityResolver
from utils.tracking.ingest import ingest_sighting
from utils.tracking.models import Device, LinkStrength
from utils.tracking.shadows import (
    find_suspicious_shadows,
    more_specific,
    persistence_score,
    rotation_rhythm,
    shadow_key,
    specificity,
)

PLACES = [(40.00, -75.0), (40.02, -75.0), (40.04, -75.0)]
PHONE_SHADOW = 'C:10|M:004C|T:PHONE'


def _device(device_id, first_seen, last_seen):
    return Device(id=device_id, address=f'00:00:00:00:00:{device_id:02X}',
                  first_seen=first_seen, last_seen=last_seen)


def _lifetimes(births, lifetime=14 * MINUTE):
    return [_device(i + 1, T0 + b, T0 + b + lifetime) for i, b in enumerate(births)]


class TestShadowKey:

    def test_components_sorted(self):
        key = shadow_key(manufacturer_id=0x0087, tx_power=-8, name='Forerunner 255')
        assert key == 'M:0087|N:FORERUNNER|P:-8'

    def test_findmy_tracker(self):
        key = shadow_key(
            manufacturer_id=0x004C,
            device_type='tracker',
            continuity=0x12,
            is_tracker=True,
            service_uuids=['0000fd6f-0000-1000-8000-00805f9b34fb'],
        )
        assert key == 'C:12|M:004C|T:TRACKER|TR:1|U:FD6F'

    def test_uuids_sorted_and_deduplicated(self):
        key = shadow_key(manufacturer_id=0x0087, service_uuids=['180F', '180d', '180f'])
        assert key == 'M:0087|U:180D,180F'

    def test_beacon_type(self):
        assert shadow_key(manufacturer_id=0x004C, beacon_type='ibeacon') == 'B:IBEACON|M:004C'

    def test_too_few_components(self):
        assert shadow_key(manufacturer_id=0x0087) is None
        assert shadow_key(device_type='unknown', tx_power=-8) is None
        assert shadow_key() is None

    def test_separator_in_name_replaced(self):
        assert shadow_key(manufacturer_id=0x0001, name='Left|Right') == 'M:0001|N:LEFT RIGHT'


class TestSpecificity:

    def test_share_of_components(self):
        assert specificity('M:0087|P:-8') == 0.25
        assert specificity(PHONE_SHADOW) == 0.375

    def test_capped(self):
        assert specificity('|'.join(f'X{i}:1' for i in range(10))) == 1.0

    def test_empty(self):
        assert specificity(None) == 0.0

    def test_more_specific(self):
        assert more_specific(None, 'M:0087|P:-8') == 'M:0087|P:-8'
        assert more_specific('M:0087|P:-8', 'M:0087|N:FORERUNNER|P:-8') == 'M:0087|N:FORERUNNER|P:-8'
        assert more_specific('M:0087|N:FORERUNNER|P:-8', 'M:0087|P:-8') is None
        assert more_specific('M:0087|P:-8', 'M:0087|P:-4') is None
        assert more_specific('M:0087|P:-8', 'M:0087|P:-8') is None
        assert more_specific('M:0087|P:-8', None) is None


class TestPersistence:

    def test_steady_counts(self):
        assert persistence_score([1, 1, 1], 0.5, 1.0) == pytest.approx(0.5)

    def test_varying_counts_penalized(self):
        assert persistence_score([1, 3], 1.0, 1.0) == pytest.approx(0.5)

    def test_coverage_scales(self):
        assert persistence_score([2, 2], 1.0, 0.5) == pytest.approx(0.5)

    def test_no_counts(self):
        assert persistence_score([], 1.0, 1.0) == 0.0


class TestRotationRhythm:

    def test_regular_handoffs(self):
        rhythm = rotation_rhythm(_lifetimes([0, 15 * MINUTE, 30 * MINUTE, 45 * MINUTE]))

        assert rhythm.score == pytest.approx(1.0)
        assert rhythm.handoff_count == 3
        assert rhythm.average_interval_ms == 15 * MINUTE
        assert rhythm.is_regular is True

    def test_order_of_input_irrelevant(self):
        devices = _lifetimes([0, 15 * MINUTE, 30 * MINUTE, 45 * MINUTE])
        assert rotation_rhythm(list(reversed(devices))).score == pytest.approx(1.0)

    def test_irregular_handoffs(self):
        births = [0, 10 * MINUTE, 40 * MINUTE, 45 * MINUTE]
        devices = [
            _device(i + 1, T0 + b, T0 + nxt - MINUTE)
            for i, (b, nxt) in enumerate(zip(births, births[1:] + [50 * MINUTE]))
        ]
        rhythm = rotation_rhythm(devices)

        assert rhythm.handoff_count == 3
        assert 0.0 < rhythm.score < 0.5
        assert rhythm.is_regular is False

    def test_no_handoffs(self):
        rhythm = rotation_rhythm(_lifetimes([0, 60 * MINUTE, 120 * MINUTE], lifetime=10 * MINUTE))
        assert rhythm.score == 0.0
        assert rhythm.handoff_count == 0

    def test_single_handoff_not_enough(self):
        rhythm = rotation_rhythm(_lifetimes([0, 15 * MINUTE]))
        assert rhythm.handoff_count == 1
        assert rhythm.score == 0.0

    def test_partial_handoffs_scaled(self):
        births = [0, 15 * MINUTE, 30 * MINUTE, 45 * MINUTE, 180 * MINUTE]
        rhythm = rotation_rhythm(_lifetimes(births))
        assert rhythm.handoff_count == 3
        assert rhythm.score == pytest.approx(0.75)

    def test_one_device(self):
        assert rotation_rhythm(_lifetimes([0])).score == 0.0

    def test_to_dict(self):
        data = rotation_rhythm(_lifetimes([0, 15 * MINUTE, 30 * MINUTE])).to_dict()
        assert data == {
            'score': 1.0,
            'handoff_count': 2,
            'average_interval_ms': 15 * MINUTE,
            'is_regular': True,
        }


class TestShadowAnalysis:

    @pytest.fixture
    def config(self):
        return DetectionConfig()

    @pytest.fixture
    def resolver(self, temp_db, config):
        return IdentityResolver(config)

    def test_unlinked_rotation_found(self, resolver, config, rotating_phone):
        device_ids = rotating_phone(PLACES, config, resolver)
        assert all(db.get_device(d).canonical_id is None for d in device_ids)

        shadows = find_suspicious_shadows(3)

        assert len(shadows) == 1
        shadow = shadows[0]
        assert shadow.shadow_key == PHONE_SHADOW
        assert sorted(shadow.root_ids) == sorted(device_ids)
        assert shadow.location_count == 3
        assert shadow.persistence_score == pytest.approx(0.375)
        assert shadow.rotation.handoff_count == 5
        assert shadow.rotation_score == pytest.approx(1.0)
        assert shadow.combined_score == pytest.approx(0.7 * 0.375 + 0.3)
        assert shadow.representative.id == device_ids[-1]

    def test_group_chain_and_sightings(self, resolver, config, rotating_phone):
        device_ids = rotating_phone(PLACES, config, resolver)
        shadow = find_suspicious_shadows(3)[0]

        chain = shadow.group_chain()
        assert chain.canonical.id == device_ids[-1]
        assert sorted(chain.member_ids) == sorted(device_ids)

        sightings = shadow.group_sightings(db.get_chain_sightings(chain))
        assert len(sightings) == 12
        for s in sightings:
            expected = None if s.device_id == device_ids[-1] else LinkStrength.WEAK
            assert s.link_strength == expected

    def test_excluded_chain_left_out(self, resolver, config, rotating_phone):
        device_ids = rotating_phone(PLACES, config, resolver)

        shadow = find_suspicious_shadows(3, {device_ids[-1]})[0]

        assert device_ids[-1] not in shadow.root_ids
        assert shadow.representative.id == device_ids[-2]
        assert shadow.rotation.handoff_count == 4

    def test_everything_excluded(self, resolver, config, rotating_phone):
        device_ids = rotating_phone(PLACES, config, resolver)
        assert find_suspicious_shadows(3, set(device_ids)) == []

    def test_too_few_places(self, resolver, config, rotating_phone):
        rotating_phone(PLACES[:2], config, resolver)
        assert find_suspicious_shadows(3) == []

    def test_linked_rotation_counted_once_per_place(self, resolver, config, make_airtag, make_fix):
        for i, mac in enumerate(['11:11:11:11:11:11', '22:22:22:22:22:22']):
            ts = T0 + i * MINUTE
            ingest_sighting(make_airtag(mac=mac, timestamp=ts), make_fix(*PLACES[0], ts), config, resolver)

        key = db.get_device(1).shadow_key
        counts = db.get_shadow_location_counts(key)

        assert len(counts) == 1
        assert counts[0].device_count == 1

    def test_to_dict(self, resolver, config, rotating_phone):
        rotating_phone(PLACES, config, resolver)
        data = find_suspicious_shadows(3)[0].to_dict()

        assert data['shadow_key'] == PHONE_SHADOW
        assert data['location_count'] == 3
        assert data['rotation']['handoff_count'] == 5
        assert len(data['root_ids']) == 6
