import unittest
from datetime import datetime, timedelta, timezone

from wayfarer import query
from wayfarer.models import Coordinate, GeocodingStatus, Location, SyncStatus
from wayfarer.query import FilterKind, LocationFilter, SortKey, SortOption


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _location(name: str, hours: float, **overrides) -> Location:
    start = NOW + timedelta(hours=hours)
    values = {"name": name, "start_time": start, "end_time": start + timedelta(hours=1)}
    values.update(overrides)
    return Location(**values)


class QueryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.gym = _location("Gym", 2, address="Sport Park", tags={"health"}, latitude=52.52, longitude=13.40)
        self.cafe = _location("Cafe", -5, notes="great coffee", latitude=48.85, longitude=2.35)
        self.office = _location("Office", 30, is_archived=True, latitude=52.50, longitude=13.39)
        self.gone = _location("Gone", 1, sync_status=SyncStatus.DELETED)
        self.pending = _location("Pending", 3, geocoding_status=GeocodingStatus.RETRY_LATER)
        self.all = [self.gym, self.cafe, self.office, self.gone, self.pending]

    def _names(self, **kwargs) -> list[str]:
        return [loc.name for loc in query.apply(self.all, now=NOW, **kwargs)]

    def test_all_excludes_soft_deleted(self) -> None:
        self.assertEqual(self._names(), ["Cafe", "Gym", "Pending", "Office"])

    def test_time_filters(self) -> None:
        self.assertEqual(self._names(location_filter=LocationFilter(FilterKind.TODAY)), ["Gym", "Pending"])
        self.assertEqual(
            self._names(location_filter=LocationFilter(FilterKind.UPCOMING)),
            ["Gym", "Pending", "Office"],
        )
        self.assertEqual(self._names(location_filter=LocationFilter(FilterKind.PAST)), ["Cafe"])

    def test_attribute_filters(self) -> None:
        self.assertEqual(self._names(location_filter=LocationFilter(FilterKind.WITH_NOTES)), ["Cafe"])
        self.assertEqual(self._names(location_filter=LocationFilter(FilterKind.ARCHIVED)), ["Office"])
        self.assertEqual(self._names(location_filter=LocationFilter(FilterKind.SOFT_DELETED)), ["Gone"])
        self.assertEqual(self._names(location_filter=LocationFilter.by_tag("health")), ["Gym"])
        self.assertEqual(
            self._names(location_filter=LocationFilter.by_geocoding_status(GeocodingStatus.RETRY_LATER)),
            ["Pending"],
        )
        self.assertEqual(
            self._names(location_filter=LocationFilter.by_sync_status(SyncStatus.DELETED)),
            ["Gone"],
        )

    def test_search_is_case_insensitive_across_fields(self) -> None:
        self.assertEqual(self._names(search_text="COFFEE"), ["Cafe"])
        self.assertEqual(self._names(search_text="sport"), ["Gym"])
        self.assertEqual(self._names(search_text="HEALTH"), ["Gym"])

    def test_sort_by_name_descending(self) -> None:
        self.assertEqual(
            self._names(sort=SortOption(SortKey.NAME), ascending=False),
            ["Pending", "Office", "Gym", "Cafe"],
        )

    def test_sort_by_distance(self) -> None:
        origin = Coordinate(52.52, 13.40)
        names = self._names(sort=SortOption.distance_from(origin), location_filter=LocationFilter.by_geocoding_status(
            GeocodingStatus.PENDING
        ))
        self.assertEqual(names, ["Gym", "Office", "Cafe"])

    def test_distance_sort_requires_origin(self) -> None:
        with self.assertRaises(ValueError):
            query.apply(self.all, sort=SortOption(SortKey.DISTANCE), now=NOW)

    def test_sort_is_stable_for_equal_keys(self) -> None:
        first = _location("Same", 1)
        second = _location("Same", 1)
        ordered = query.apply([first, second], sort=SortOption(SortKey.NAME), now=NOW)
        self.assertEqual([loc.id for loc in ordered], [first.id, second.id])
        reversed_order = query.apply([first, second], sort=SortOption(SortKey.NAME), ascending=False, now=NOW)
        self.assertEqual([loc.id for loc in reversed_order], [first.id, second.id])

    def test_apply_does_not_mutate_input(self) -> None:
        before = [loc.id for loc in self.all]
        query.apply(self.all, sort=SortOption(SortKey.NAME), now=NOW)
        self.assertEqual([loc.id for loc in self.all], before)

    def test_haversine_distance(self) -> None:
        berlin = Coordinate(52.5200, 13.4050)
        paris = Coordinate(48.8566, 2.3522)
        self.assertAlmostEqual(query.haversine_distance(berlin, paris) / 1000, 878, delta=5)
        self.assertEqual(query.haversine_distance(berlin, berlin), 0.0)

    def test_counts_and_tags(self) -> None:
        counts = query.location_counts(self.all)
        self.assertEqual(counts["total"], 5)
        self.assertEqual(counts["soft_deleted"], 1)
        self.assertEqual(counts["active"], 4)
        self.assertEqual(query.geocoding_counts(self.all)["retry_later"], 1)
        self.assertEqual(query.available_tags(self.all), ["health"])


if __name__ == "__main__":
    unittest.main()
