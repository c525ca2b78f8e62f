import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from wayfarer.errors import StoreError
from wayfarer.models import Location, SyncStatus
from wayfarer.state_store import StateStore


START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _location(name: str, external_event_id: str | None = None, **overrides) -> Location:
    values = {
        "name": name,
        "start_time": START,
        "end_time": START + timedelta(hours=1),
        "external_event_id": external_event_id,
    }
    values.update(overrides)
    return Location(**values)


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "nested" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_session_changes_are_invisible_until_save(self) -> None:
        session = self.store.session()
        location = _location("Dentist", "E1", tags={"health"})
        session.insert(location)
        self.assertTrue(session.has_changes)
        self.assertEqual(self.store.load_locations(), [])
        self.assertEqual(session.get(location.id), location)

        session.save()
        self.assertFalse(session.has_changes)
        self.assertEqual(self.store.load_locations(), [location])

    def test_rollback_discards_staged_work(self) -> None:
        kept = _location("Kept", "E1")
        session = self.store.session()
        session.insert(kept)
        session.save()

        session.insert(_location("Staged", "E2"))
        session.delete(kept)
        session.rollback()
        session.save()
        self.assertEqual([loc.name for loc in self.store.load_locations()], ["Kept"])

    def test_insert_with_existing_id_replaces_record(self) -> None:
        location = _location("Dentist", "E1")
        session = self.store.session()
        session.insert(location)
        session.save()

        session.insert(location.with_updates(name="Orthodontist", sync_status=SyncStatus.MODIFIED))
        session.save()
        stored = self.store.load_locations()
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].name, "Orthodontist")
        self.assertEqual(stored[0].sync_status, SyncStatus.MODIFIED)

    def test_fetch_overlays_staged_deletes_and_returns_copies(self) -> None:
        first = _location("First", "E1")
        second = _location("Second", "E2")
        session = self.store.session()
        session.insert(first)
        session.insert(second)
        session.save()

        session.delete(first)
        fetched = session.fetch()
        self.assertEqual([loc.name for loc in fetched], ["Second"])
        fetched[0].name = "Mutated"
        self.assertEqual(session.fetch()[0].name, "Second")
        self.assertEqual(len(session.fetch(lambda loc: loc.name == "First")), 0)

    def test_duplicate_external_event_id_is_store_error(self) -> None:
        session = self.store.session()
        session.insert(_location("One", "E1"))
        session.insert(_location("Two", "E1"))
        with self.assertRaises(StoreError):
            session.save()
        self.assertEqual(self.store.load_locations(), [])

    def test_sync_run_history(self) -> None:
        run_id = self.store.start_sync_run(trigger="manual")
        self.store.finish_sync_run(
            run_id=run_id,
            status="success",
            message="done",
            duration_ms=12,
            counts={"created": 2, "geocoding_failures": 1},
        )
        runs = self.store.recent_sync_runs(limit=5)
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["status"], "success")
        self.assertEqual(runs[0]["created"], 2)
        self.assertEqual(runs[0]["geocoding_failures"], 1)

    def test_audit_events_filtered_by_run(self) -> None:
        self.store.record_audit_event(location_id="a", action="create_location", details={"name": "A"}, run_id=1)
        self.store.record_audit_events(
            [{"location_id": "b", "external_event_id": "E2", "action": "soft_delete_location", "details": {}}],
            run_id=2,
        )
        events = self.store.recent_audit_events(run_id=2)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["external_event_id"], "E2")
        self.assertEqual(len(self.store.recent_audit_events()), 2)
        self.assertEqual(self.store.recent_audit_events(run_id=1)[0]["details"], {"name": "A"})


if __name__ == "__main__":
    unittest.main()
