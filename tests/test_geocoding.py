import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests

from wayfarer.errors import GeocodeError
from wayfarer.geocoding import (
    NominatimGeocoder,
    attempt_geocoding,
    needs_geocoding_retry,
    next_geocoding_state,
    rearm,
)
from wayfarer.models import Coordinate, GeocoderConfig, GeocodingStatus, Location


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _ScriptedGeocoder:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    def resolve(self, address: str) -> Coordinate:
        self.calls.append(address)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _location(**overrides) -> Location:
    values = {"name": "Dentist", "address": "Main St 1", "start_time": NOW, "end_time": NOW + timedelta(hours=1)}
    values.update(overrides)
    return Location(**values)


class GeocodingStateTests(unittest.TestCase):
    def test_failures_walk_to_failed_at_cap(self) -> None:
        state = (GeocodingStatus.PENDING, 0)
        state = next_geocoding_state(*state, succeeded=False, max_attempts=3)
        self.assertEqual(state, (GeocodingStatus.RETRY_LATER, 1))
        state = next_geocoding_state(*state, succeeded=False, max_attempts=3)
        self.assertEqual(state, (GeocodingStatus.RETRY_LATER, 2))
        state = next_geocoding_state(*state, succeeded=False, max_attempts=3)
        self.assertEqual(state, (GeocodingStatus.FAILED, 3))

    def test_failed_absorbs_further_failures(self) -> None:
        self.assertEqual(
            next_geocoding_state(GeocodingStatus.FAILED, 3, succeeded=False, max_attempts=3),
            (GeocodingStatus.FAILED, 3),
        )

    def test_success_keeps_attempt_count(self) -> None:
        self.assertEqual(
            next_geocoding_state(GeocodingStatus.RETRY_LATER, 2, succeeded=True),
            (GeocodingStatus.SUCCESS, 2),
        )

    def test_rearm_resets_budget(self) -> None:
        location = _location(geocoding_status=GeocodingStatus.FAILED, geocoding_attempts=3)
        rearm(location)
        self.assertEqual(location.geocoding_status, GeocodingStatus.PENDING)
        self.assertEqual(location.geocoding_attempts, 0)


class AttemptGeocodingTests(unittest.TestCase):
    def test_success_stores_coordinates(self) -> None:
        location = _location()
        geocoder = _ScriptedGeocoder(Coordinate(52.5, 13.4))
        self.assertTrue(attempt_geocoding(location, geocoder, now=NOW))
        self.assertEqual((location.latitude, location.longitude), (52.5, 13.4))
        self.assertEqual(location.geocoding_status, GeocodingStatus.SUCCESS)
        self.assertEqual(location.last_geocoding_attempt, NOW)

    def test_failure_keeps_coordinates_and_counts_attempt(self) -> None:
        location = _location(latitude=1.0, longitude=2.0)
        geocoder = _ScriptedGeocoder(GeocodeError("Main St 1", "no result"))
        self.assertFalse(attempt_geocoding(location, geocoder, now=NOW))
        self.assertEqual((location.latitude, location.longitude), (1.0, 2.0))
        self.assertEqual(location.geocoding_status, GeocodingStatus.RETRY_LATER)
        self.assertEqual(location.geocoding_attempts, 1)

    def test_failed_and_not_needed_are_not_attempted(self) -> None:
        geocoder = _ScriptedGeocoder()
        for status in (GeocodingStatus.FAILED, GeocodingStatus.NOT_NEEDED):
            location = _location(geocoding_status=status)
            self.assertFalse(attempt_geocoding(location, geocoder, now=NOW))
        self.assertFalse(attempt_geocoding(_location(address="  "), geocoder, now=NOW))
        self.assertEqual(geocoder.calls, [])

    def test_attempts_never_exceed_cap(self) -> None:
        location = _location()
        geocoder = _ScriptedGeocoder(*[GeocodeError("Main St 1") for _ in range(5)])
        for _ in range(5):
            attempt_geocoding(location, geocoder, now=NOW, max_attempts=3)
        self.assertEqual(location.geocoding_status, GeocodingStatus.FAILED)
        self.assertEqual(location.geocoding_attempts, 3)
        self.assertEqual(len(geocoder.calls), 3)

    def test_needs_retry_respects_delay(self) -> None:
        location = _location(geocoding_status=GeocodingStatus.RETRY_LATER, last_geocoding_attempt=NOW)
        self.assertFalse(needs_geocoding_retry(location, NOW + timedelta(seconds=1), 2.0))
        self.assertTrue(needs_geocoding_retry(location, NOW + timedelta(seconds=2), 2.0))
        location.geocoding_status = GeocodingStatus.SUCCESS
        self.assertFalse(needs_geocoding_retry(location, NOW + timedelta(hours=1), 2.0))


class NominatimGeocoderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.geocoder = NominatimGeocoder(GeocoderConfig(base_url="https://geo.example.com/", user_agent="tests"))

    def test_resolve_parses_first_result(self) -> None:
        response = mock.Mock()
        response.json.return_value = [{"lat": "52.52", "lon": "13.405"}, {"lat": "0", "lon": "0"}]
        with mock.patch("wayfarer.geocoding.requests.get", return_value=response) as get:
            coordinate = self.geocoder.resolve(" Alexanderplatz ")
        self.assertEqual(coordinate, Coordinate(52.52, 13.405))
        args, kwargs = get.call_args
        self.assertEqual(args[0], "https://geo.example.com/search")
        self.assertEqual(kwargs["params"]["q"], "Alexanderplatz")
        self.assertEqual(kwargs["headers"]["User-Agent"], "tests")

    def test_empty_result_is_geocode_error(self) -> None:
        response = mock.Mock()
        response.json.return_value = []
        with mock.patch("wayfarer.geocoding.requests.get", return_value=response):
            with self.assertRaises(GeocodeError) as ctx:
                self.geocoder.resolve("Nowhere")
        self.assertEqual(ctx.exception.address, "Nowhere")
        self.assertEqual(ctx.exception.detail, "no result")

    def test_transport_error_is_geocode_error(self) -> None:
        with mock.patch("wayfarer.geocoding.requests.get", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(GeocodeError):
                self.geocoder.resolve("Main St 1")

    def test_empty_address_is_rejected_without_request(self) -> None:
        with mock.patch("wayfarer.geocoding.requests.get") as get:
            with self.assertRaises(GeocodeError):
                self.geocoder.resolve("   ")
        get.assert_not_called()


if __name__ == "__main__":
    unittest.main()
