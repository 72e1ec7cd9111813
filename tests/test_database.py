"""Tests for the SQLite store."""

import sqlite3

import pytest

from conftest import T0, HOUR, MINUTE
from utils import database as db
from utils.tracking.exceptions import MalformedInputError, TransientStorageError
from utils.tracking.models import DeviceType, LinkStrength, ThreatLevel, WhitelistCategory


def _device(address, timestamp=T0, **kwargs):
    return db.insert_device(address=address, timestamp=timestamp, rssi=-60, **kwargs)


def _sighting(device, location, timestamp):
    db.update_device_sighting(device.id, timestamp=timestamp)
    return db.add_sighting_record(device.id, location.id, rssi=-60, timestamp=timestamp)


def _alert(device_id, created_at=T0, level=ThreatLevel.HIGH):
    return db.insert_alert(
        device_id=device_id,
        created_at=created_at,
        level=level,
        title='High Priority Alert',
        message='test',
        device_addresses=['AA:BB:CC:DD:EE:01'],
        location_ids=[1, 2, 3],
        threat_score=0.8,
        breakdown={'total': 0.8},
        details={'deviceId': device_id},
    )


class TestSchema:

    def test_init_is_idempotent(self, temp_db):
        db.init_db()
        db.init_db()
        assert db.get_all_settings() == {}

    def test_switching_path_reconnects(self, temp_db, tmp_path):
        db.set_setting('marker', 'first')
        db.set_db_path(tmp_path / 'other.db')
        db.init_db()
        assert db.get_setting('marker') is None

        db.set_db_path(temp_db)
        assert db.get_setting('marker') == 'first'


class TestSettings:

    @pytest.mark.parametrize('value', [42, 0.7, True, False, 'text', {'a': 0.5}, [1, 2]])
    def test_round_trip(self, temp_db, value):
        db.set_setting('key', value)
        assert db.get_setting('key') == value

    def test_default(self, temp_db):
        assert db.get_setting('missing', 'fallback') == 'fallback'

    def test_set_many_and_delete(self, temp_db):
        db.set_settings({'a': 1, 'b': 2})
        assert db.get_all_settings() == {'a': 1, 'b': 2}

        assert db.delete_setting('a') is True
        assert db.delete_setting('a') is False
        assert db.get_all_settings() == {'b': 2}


class TestTransactions:

    def test_nested_blocks_roll_back_together(self, temp_db):
        with pytest.raises(RuntimeError):
            with db.get_db(immediate=True):
                db.set_setting('inner', 1)
                raise RuntimeError('boom')

        assert db.get_setting('inner') is None

    def test_lock_contention_is_transient(self, temp_db, monkeypatch):
        monkeypatch.setattr(db, 'DB_TIMEOUT_SECONDS', 0.1)
        db.close_db()

        blocker = sqlite3.connect(str(temp_db), isolation_level=None)
        try:
            blocker.execute('BEGIN IMMEDIATE')
            with pytest.raises(TransientStorageError) as exc_info:
                db.set_setting('key', 'value')
            assert exc_info.value.retryable is True
        finally:
            blocker.execute('ROLLBACK')
            blocker.close()

        db.set_setting('key', 'value')
        assert db.get_setting('key') == 'value'


class TestDevices:

    def test_insert_and_lookup(self, temp_db):
        device = _device('aa:bb:cc:dd:ee:01', name='Tag')
        assert device.address == 'AA:BB:CC:DD:EE:01'
        assert db.get_device_by_address('aa:bb:cc:dd:ee:01').id == device.id
        assert device.canonical_id is None

    def test_duplicate_address_rejected(self, temp_db):
        _device('AA:BB:CC:DD:EE:01')
        with pytest.raises(sqlite3.IntegrityError):
            _device('AA:BB:CC:DD:EE:01')

    def test_link_to_alias_redirects_to_root(self, temp_db):
        root = _device('AA:00:00:00:00:01')
        alias = _device('AA:00:00:00:00:02', canonical_id=root.id,
                        link_strength=LinkStrength.STRONG, link_reason='fingerprint_match:FM:01')
        second = _device('AA:00:00:00:00:03', canonical_id=alias.id,
                         link_strength=LinkStrength.WEAK, link_reason='temporal')

        assert second.canonical_id == root.id
        chain = db.get_chain(second.id)
        assert chain.canonical.id == root.id
        assert chain.member_ids == [root.id, alias.id, second.id]

    def test_link_requires_strength(self, temp_db):
        root = _device('AA:00:00:00:00:01')
        with pytest.raises(ValueError):
            _device('AA:00:00:00:00:02', canonical_id=root.id)

    def test_link_to_missing_device(self, temp_db):
        with pytest.raises(ValueError):
            _device('AA:00:00:00:00:02', canonical_id=999, link_strength=LinkStrength.STRONG)

    def test_update_widens_window(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01', timestamp=T0)
        db.update_device_sighting(device.id, timestamp=T0 - MINUTE, rssi=-40)
        updated = db.update_device_sighting(device.id, timestamp=T0 + MINUTE, rssi=-70)

        assert updated.first_seen == T0 - MINUTE
        assert updated.last_seen == T0 + MINUTE
        assert updated.detection_count == 3
        assert updated.highest_rssi == -40
        assert updated.last_rssi == -70

    def test_rotation_candidates_window(self, temp_db):
        quiet = _device('AA:00:00:00:00:01', timestamp=T0, manufacturer_id=0x0087)
        _device('AA:00:00:00:00:02', timestamp=T0 - HOUR, manufacturer_id=0x0087)
        _device('AA:00:00:00:00:03', timestamp=T0, manufacturer_id=0x0157)

        found = db.find_rotation_candidates(0x0087, DeviceType.UNKNOWN, T0 - MINUTE, T0 + MINUTE)
        assert [d.id for d in found] == [quiet.id]


class TestSightings:

    def test_window_enforced(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01', timestamp=T0)
        location = db.insert_location(40.0, -75.0, 10.0, T0)

        db.add_sighting_record(device.id, location.id, rssi=-60, timestamp=T0)
        with pytest.raises(MalformedInputError):
            db.add_sighting_record(device.id, location.id, rssi=-60, timestamp=T0 + MINUTE)
        with pytest.raises(MalformedInputError):
            db.add_sighting_record(device.id, location.id, rssi=-60, timestamp=T0 - MINUTE)

    def test_unknown_device(self, temp_db):
        location = db.insert_location(40.0, -75.0, 10.0, T0)
        with pytest.raises(MalformedInputError):
            db.add_sighting_record(999, location.id, rssi=-60, timestamp=T0)

    def test_candidates_count_union_of_places(self, temp_db):
        root = _device('AA:00:00:00:00:01')
        alias = _device('AA:00:00:00:00:02', canonical_id=root.id, link_strength=LinkStrength.STRONG)
        places = [db.insert_location(40.0 + i * 0.02, -75.0, 10.0, T0) for i in range(3)]

        _sighting(root, places[0], T0)
        _sighting(root, places[1], T0 + HOUR)
        _sighting(alias, places[1], T0 + HOUR)
        _sighting(alias, places[2], T0 + 2 * HOUR)

        chains = db.get_candidate_chains(3)
        assert len(chains) == 1
        assert chains[0].member_ids == [root.id, alias.id]
        assert db.get_candidate_chains(4) == []

        sightings = db.get_chain_sightings(chains[0])
        assert [s.timestamp for s in sightings] == [T0, T0 + HOUR, T0 + HOUR, T0 + 2 * HOUR]
        assert sightings[0].link_strength is None
        assert sightings[-1].link_strength == LinkStrength.STRONG

    def test_last_sighting(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        a = db.insert_location(40.0, -75.0, 10.0, T0)
        b = db.insert_location(40.1, -75.0, 10.0, T0)
        _sighting(device, a, T0)
        _sighting(device, b, T0 + HOUR)

        assert db.get_last_sighting([device.id], T0 + MINUTE).location_id == a.id
        assert db.get_last_sighting([device.id], T0 + 2 * HOUR).location_id == b.id
        assert db.get_last_sighting([device.id], T0 - 1) is None
        assert db.get_last_sighting([], T0) is None

    def test_delete_device_cascades(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        location = db.insert_location(40.0, -75.0, 10.0, T0)
        _sighting(device, location, T0)

        with db.get_db() as conn:
            conn.execute('DELETE FROM devices WHERE id = ?', (device.id,))
            remaining = conn.execute('SELECT COUNT(*) FROM sightings').fetchone()[0]
        assert remaining == 0


class TestUserPath:

    def test_order_and_since(self, temp_db):
        location = db.insert_location(40.0, -75.0, 10.0, T0)
        db.add_user_path_point(location.id, T0 + HOUR)
        db.add_user_path_point(location.id, T0)

        path = db.get_user_path()
        assert [p.timestamp for p in path] == [T0, T0 + HOUR]
        assert [p.timestamp for p in db.get_user_path(since=T0 + 1)] == [T0 + HOUR]


class TestWhitelist:

    def test_one_entry_per_device(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        db.add_whitelist_entry(device.id, WhitelistCategory.OWN, created_at=T0, label='Keys')
        entry = db.add_whitelist_entry(device.id, WhitelistCategory.PARTNER, created_at=T0 + 1,
                                       added_via_learn_mode=True)

        entries = db.get_whitelist_entries()
        assert len(entries) == 1
        assert entry.category == WhitelistCategory.PARTNER
        assert entry.added_via_learn_mode is True
        assert db.get_whitelisted_device_ids() == {device.id}

    def test_remove(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        db.add_whitelist_entry(device.id, WhitelistCategory.TRUSTED, created_at=T0)

        assert db.remove_whitelist_entry(device.id) is True
        assert db.remove_whitelist_entry(device.id) is False
        assert db.get_whitelisted_device_ids() == set()


class TestAlerts:

    def test_insert_and_read(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        alert = _alert(device.id)

        stored = db.get_alert(alert.id)
        assert stored.level == ThreatLevel.HIGH
        assert stored.location_ids == [1, 2, 3]
        assert stored.breakdown == {'total': 0.8}
        assert stored.dismissed is False

    def test_recent_active_excludes_dismissed_and_old(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        old = _alert(device.id, created_at=T0 - 2 * HOUR)
        dismissed = _alert(device.id, created_at=T0)
        active = _alert(device.id, created_at=T0 + MINUTE)
        db.dismiss_alert(dismissed.id, T0 + 2 * MINUTE)

        recent = db.get_recent_active_alerts(device.id, since=T0 - HOUR)
        assert [a.id for a in recent] == [active.id]
        assert old.id not in [a.id for a in recent]

    def test_dismiss(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        a = _alert(device.id)
        _alert(device.id, created_at=T0 + 1)
        _alert(device.id, created_at=T0 + 2)

        assert db.dismiss_alert(a.id, T0 + 10) is True
        assert db.dismiss_alert(a.id, T0 + 11) is False
        assert db.get_alert(a.id).dismissed_at == T0 + 10

        assert db.dismiss_all_alerts(T0 + 20) == 2
        assert db.get_alerts(active_only=True) == []
        assert len(db.get_alerts()) == 3

    def test_newest_first(self, temp_db):
        device = _device('AA:BB:CC:DD:EE:01')
        first = _alert(device.id, created_at=T0)
        second = _alert(device.id, created_at=T0 + 1)
        assert [a.id for a in db.get_alerts()] == [second.id, first.id]
        assert len(db.get_alerts(limit=1)) == 1


class TestCleanup:

    def test_old_chains_removed(self, temp_db):
        old_root = _device('AA:00:00:00:00:01', timestamp=T0)
        _device('AA:00:00:00:00:02', timestamp=T0, canonical_id=old_root.id, link_strength=LinkStrength.WEAK)
        fresh = _device('BB:00:00:00:00:01', timestamp=T0 + 10 * HOUR)
        old_place = db.insert_location(40.0, -75.0, 10.0, T0)
        _sighting(old_root, old_place, T0)
        dismissed = _alert(fresh.id, created_at=T0)
        db.dismiss_alert(dismissed.id, T0)

        counts = db.cleanup_old_data(T0 + HOUR)

        assert counts['devices'] == 2
        assert counts['alerts'] == 1
        assert counts['locations'] == 1
        assert db.get_device(old_root.id) is None
        assert db.get_device(fresh.id) is not None

    def test_chain_kept_while_any_member_is_recent(self, temp_db):
        root = _device('AA:00:00:00:00:01', timestamp=T0)
        _device('AA:00:00:00:00:02', timestamp=T0 + 10 * HOUR, canonical_id=root.id,
                link_strength=LinkStrength.STRONG)

        counts = db.cleanup_old_data(T0 + HOUR)
        assert counts['devices'] == 0
        assert db.get_device(root.id) is not None
