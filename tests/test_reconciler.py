import unittest
from datetime import datetime, timedelta, timezone

from wayfarer.models import ExternalEvent, Location, SyncStatus
from wayfarer.reconciler import event_fingerprint, fingerprint, plan


START = datetime(2026, 2, 27, 9, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=1)


def _event(event_id: str = "E1", **overrides) -> ExternalEvent:
    values = {
        "id": event_id,
        "title": "Dentist",
        "location_text": "Main St 1",
        "start_time": START,
        "end_time": END,
        "notes": None,
    }
    values.update(overrides)
    return ExternalEvent(**values)


def _location_for(event: ExternalEvent) -> Location:
    return Location(
        name=event.title,
        address=event.location_text,
        start_time=event.start_time,
        end_time=event.end_time,
        external_event_id=event.id,
        sync_status=SyncStatus.SYNCED,
        change_fingerprint=event_fingerprint(event),
    )


class FingerprintTests(unittest.TestCase):
    def test_same_fields_same_fingerprint(self) -> None:
        self.assertEqual(event_fingerprint(_event()), event_fingerprint(_event()))

    def test_each_field_changes_fingerprint(self) -> None:
        base = event_fingerprint(_event())
        variants = [
            _event(title="Dentist!"),
            _event(location_text="Main St 2"),
            _event(start_time=START + timedelta(minutes=1)),
            _event(end_time=END + timedelta(minutes=1)),
            _event(notes="bring card"),
        ]
        for variant in variants:
            self.assertNotEqual(event_fingerprint(variant), base)

    def test_fields_do_not_bleed_into_each_other(self) -> None:
        self.assertNotEqual(
            fingerprint("ab", "c", START, END, None),
            fingerprint("a", "bc", START, END, None),
        )

    def test_same_instant_in_other_timezone_matches(self) -> None:
        shifted = START.astimezone(timezone(timedelta(hours=2)))
        self.assertEqual(
            fingerprint("t", "x", START, END, None),
            fingerprint("t", "x", shifted, END, None),
        )


class PlanTests(unittest.TestCase):
    def test_new_event_is_created(self) -> None:
        result = plan([], [_event()])
        self.assertEqual([item.event.id for item in result.to_create], ["E1"])
        self.assertEqual(result.to_create[0].fingerprint, event_fingerprint(_event()))
        self.assertFalse(result.is_empty)

    def test_unchanged_event_is_skipped(self) -> None:
        event = _event()
        result = plan([_location_for(event)], [event])
        self.assertEqual(len(result.unchanged), 1)
        self.assertTrue(result.is_empty)
        self.assertEqual(result.action_count, 1)

    def test_changed_event_is_updated(self) -> None:
        location = _location_for(_event())
        changed = _event(location_text="Elm St 5")
        result = plan([location], [changed])
        self.assertEqual(len(result.to_update), 1)
        self.assertIs(result.to_update[0].location, location)
        self.assertEqual(result.to_update[0].fingerprint, event_fingerprint(changed))

    def test_missing_event_is_deleted(self) -> None:
        location = _location_for(_event("E1"))
        result = plan([location], [_event("E2")])
        self.assertEqual(result.to_delete, [location])
        self.assertEqual(len(result.to_create), 1)

    def test_local_only_location_is_never_deleted(self) -> None:
        local = Location(name="Home", start_time=START, end_time=END)
        result = plan([local], [_event()])
        self.assertEqual(result.to_delete, [])

    def test_invalid_events_are_rejected_without_deleting(self) -> None:
        location = _location_for(_event("E1"))
        events = [
            _event("E1", location_text="  "),
            _event("", title="No id"),
            _event("E3", start_time=None),
        ]
        result = plan([location], events)
        self.assertEqual(len(result.rejected), 3)
        self.assertEqual(result.rejected[0].event_id, "E1")
        self.assertIsNone(result.rejected[1].event_id)
        self.assertEqual(result.to_delete, [])
        self.assertEqual(result.to_create, [])

    def test_duplicate_event_id_in_batch_is_rejected(self) -> None:
        result = plan([], [_event("E1"), _event("E1", title="Other")])
        self.assertEqual(len(result.to_create), 1)
        self.assertEqual(result.to_create[0].event.title, "Dentist")
        self.assertEqual(len(result.rejected), 1)
        self.assertEqual(result.rejected[0].event_id, "E1")

    def test_every_event_lands_in_exactly_one_bucket(self) -> None:
        kept = _event("E1")
        changed = _event("E2")
        existing = [_location_for(kept), _location_for(changed), _location_for(_event("E3"))]
        events = [kept, _event("E2", title="Moved"), _event("E4"), _event("E5", location_text=None)]
        result = plan(existing, events)
        self.assertEqual(len(result.unchanged), 1)
        self.assertEqual(len(result.to_update), 1)
        self.assertEqual(len(result.to_create), 1)
        self.assertEqual(len(result.rejected), 1)
        self.assertEqual([loc.external_event_id for loc in result.to_delete], ["E3"])


if __name__ == "__main__":
    unittest.main()
