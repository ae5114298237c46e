import json
import tempfile
import unittest
from pathlib import Path

from fakes import DAY_MS, NOW, record

from watchsync.models import Backup
from watchsync.settings_registry import SettingSpec, SettingsRegistry
from watchsync.state import LocalStore
from watchsync.sync_state import Phase, SyncState


class TestLocalStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "state.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_persists_camel_case_history(self):
        store = LocalStore(str(self.path), retention_ms=60 * DAY_MS)
        store.insert([record("s@@@v@@@1", position=42, name="Title", create_time=NOW)])

        on_disk = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(on_disk["history"]["s@@@v@@@1"]["vodName"], "Title")
        self.assertEqual(on_disk["history"]["s@@@v@@@1"]["createTime"], NOW)

        reloaded = LocalStore(str(self.path))
        self.assertEqual(reloaded.get("s@@@v@@@1").position, 42)

    def test_update_replaces_whole_record(self):
        store = LocalStore(str(self.path), persist=False)
        store.insert([record("k", position=1, name="old", create_time=NOW)])
        store.update([record("k", position=9, create_time=NOW + 1)])
        self.assertEqual(store.get("k").position, 9)
        self.assertEqual(store.get("k").vod_name, "k")
        self.assertEqual(len(store.find_all()), 1)

    def test_rekey_moves_record_to_new_key(self):
        store = LocalStore(str(self.path), persist=False)
        store.insert([record("broken", position=1, create_time=NOW), record("taken", position=2, create_time=NOW)])
        store.insert([record("stale", position=3, create_time=NOW - 1)])

        store.rekey({
            "broken": record("fixed", position=1, create_time=NOW),
            "stale": record("taken", position=3, create_time=NOW - 1),
        })
        self.assertIsNone(store.get("broken"))
        self.assertIsNone(store.get("stale"))
        self.assertEqual(store.get("fixed").position, 1)
        # Existing newer record keeps the key
        self.assertEqual(store.get("taken").position, 2)
        self.assertEqual(len(store.find_all()), 2)

    def test_find_recent_applies_retention(self):
        store = LocalStore(str(self.path), persist=False, retention_ms=60 * DAY_MS)
        store.insert([
            record("new", create_time=NOW - DAY_MS),
            record("newest", create_time=NOW),
            record("old", create_time=NOW - 61 * DAY_MS),
        ])
        self.assertEqual([r.key for r in store.find_recent(now=NOW)], ["newest", "new"])
        self.assertEqual(len(store.find_all()), 3)

    def test_returned_records_are_copies(self):
        store = LocalStore(str(self.path), persist=False)
        store.insert([record("k", position=1)])
        store.find_all()[0].position = 500
        self.assertEqual(store.get("k").position, 1)

    def test_corrupt_state_starts_fresh(self):
        self.path.write_text("{broken", encoding="utf-8")
        store = LocalStore(str(self.path))
        self.assertEqual(store.find_all(), [])

    def test_unwritable_path_goes_read_only(self):
        blocker = Path(self.tmp.name) / "file"
        blocker.write_text("x")
        store = LocalStore(str(blocker / "state.json"))
        store.put_all({"speed": 2.0})
        self.assertTrue(store.read_only)
        self.assertEqual(store.get_all(), {"speed": 2.0})

    def test_backup_round_trip_protects_identity(self):
        store = LocalStore(str(self.path), persist=False)
        store.put_all({"device_uuid": "mine", "speed": 1.0})
        backup = Backup(
            config=[{"key": "site-a", "name": "Site A"}],
            history=[record("s@@@v@@@1", position=7)],
            settings={"device_uuid": "theirs", "webdav_url": "https://theirs", "speed": 1.5},
        )
        store.restore_backup(backup)

        self.assertEqual(store.get_all(), {"device_uuid": "mine", "speed": 1.5})
        self.assertEqual(store.get("s@@@v@@@1").position, 7)
        created = store.create_backup()
        self.assertEqual(created.config, [{"key": "site-a", "name": "Site A"}])
        self.assertEqual(len(created.history), 1)


class TestSettingsRegistry(unittest.TestCase):
    def setUp(self):
        self.registry = SettingsRegistry()

    def test_syncable_flags(self):
        self.assertFalse(self.registry.is_syncable("webdav_url"))
        self.assertFalse(self.registry.is_syncable("webdav_anything"))
        self.assertFalse(self.registry.is_syncable("device_name"))
        self.assertTrue(self.registry.is_syncable("speed"))
        self.assertTrue(self.registry.is_syncable("unregistered_key"))

    def test_coercion(self):
        self.assertEqual(self.registry.coerce("player", 3.0), 3)
        self.assertEqual(self.registry.coerce("speed", "1.5"), 1.5)
        self.assertEqual(self.registry.coerce("unknown", {"a": 1}), {"a": 1})

    def test_invalid_values_are_dropped(self):
        accepted = self.registry.filter_incoming({"player": "not-a-number", "speed": 2, "custom": "x"})
        self.assertEqual(accepted, {"speed": 2.0, "custom": "x"})

    def test_custom_specs(self):
        registry = SettingsRegistry([SettingSpec(name="webdav_shared", type=str, syncable=True)])
        self.assertTrue(registry.is_syncable("webdav_shared"))
        self.assertEqual(registry.filter_incoming({"webdav_shared": "x", "webdav_url": "y"}), {"webdav_shared": "x"})


class TestSyncState(unittest.TestCase):
    def test_transitions(self):
        state = SyncState()
        self.assertEqual(state.phase, Phase.IDLE)
        self.assertTrue(state.try_begin())
        self.assertTrue(state.is_syncing)
        self.assertFalse(state.try_begin())
        state.end()
        self.assertFalse(state.is_syncing)
        self.assertTrue(state.try_begin())


if __name__ == '__main__':
    unittest.main()
