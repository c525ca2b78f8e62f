from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

import requests

from wayfarer.errors import GeocodeError
from wayfarer.models import (
    DEFAULT_MAX_GEOCODING_ATTEMPTS,
    Coordinate,
    GeocoderConfig,
    GeocodingStatus,
    Location,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {GeocodingStatus.PENDING, GeocodingStatus.RETRY_LATER}


class Geocoder(Protocol):
    def resolve(self, address: str) -> Coordinate: ...


def next_geocoding_state(
    status: GeocodingStatus,
    attempts: int,
    succeeded: bool,
    max_attempts: int = DEFAULT_MAX_GEOCODING_ATTEMPTS,
) -> tuple[GeocodingStatus, int]:
    """Transition for one resolution outcome.

    ``failed`` absorbs further failures without counting them; success keeps
    the attempt count as it was.
    """
    if succeeded:
        return GeocodingStatus.SUCCESS, attempts
    if status == GeocodingStatus.FAILED:
        return status, attempts
    attempts += 1
    if attempts >= max(1, max_attempts):
        return GeocodingStatus.FAILED, attempts
    return GeocodingStatus.RETRY_LATER, attempts


def rearm(location: Location) -> None:
    location.geocoding_status = GeocodingStatus.PENDING
    location.geocoding_attempts = 0


def needs_geocoding_retry(location: Location, now: datetime, retry_delay_seconds: float) -> bool:
    if location.geocoding_status not in RETRYABLE_STATUSES:
        return False
    if not (location.address or "").strip():
        return False
    if location.last_geocoding_attempt is None:
        return True
    return now - location.last_geocoding_attempt >= timedelta(seconds=retry_delay_seconds)


def attempt_geocoding(
    location: Location,
    geocoder: Geocoder,
    *,
    now: datetime,
    max_attempts: int = DEFAULT_MAX_GEOCODING_ATTEMPTS,
) -> bool:
    """Resolve ``location.address`` once and fold the outcome into its status.

    Returns True only when coordinates were stored.
    """
    address = (location.address or "").strip()
    if location.geocoding_status in {GeocodingStatus.FAILED, GeocodingStatus.NOT_NEEDED} or not address:
        return False

    location.last_geocoding_attempt = now
    try:
        coordinate = geocoder.resolve(address)
    except GeocodeError as exc:
        location.geocoding_status, location.geocoding_attempts = next_geocoding_state(
            location.geocoding_status, location.geocoding_attempts, False, max_attempts
        )
        if location.geocoding_status == GeocodingStatus.FAILED:
            logger.warning(
                "Geocoding failed permanently for %r after %d attempts: %s",
                address,
                location.geocoding_attempts,
                exc.detail or exc,
            )
        else:
            logger.info(
                "Geocoding failed for %r, will retry later (attempt %d/%d)",
                address,
                location.geocoding_attempts,
                max_attempts,
            )
        return False

    location.latitude = coordinate.latitude
    location.longitude = coordinate.longitude
    location.geocoding_status, location.geocoding_attempts = next_geocoding_state(
        location.geocoding_status, location.geocoding_attempts, True, max_attempts
    )
    logger.debug("Geocoded %r to (%s, %s)", address, coordinate.latitude, coordinate.longitude)
    return True


class NominatimGeocoder:
    def __init__(self, config: GeocoderConfig) -> None:
        self.config = config

    def _search_endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/search"):
            return base
        return f"{base}/search"

    def resolve(self, address: str) -> Coordinate:
        text = str(address or "").strip()
        if not text:
            raise GeocodeError(text, "empty address")
        try:
            response = requests.get(
                self._search_endpoint(),
                params={"q": text, "format": "jsonv2", "limit": 1},
                headers={"User-Agent": self.config.user_agent},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise GeocodeError(text, f"{type(exc).__name__}: {exc}") from exc
        return _first_coordinate(text, payload)


def _first_coordinate(address: str, payload: Any) -> Coordinate:
    if not isinstance(payload, list) or not payload:
        raise GeocodeError(address, "no result")
    first = payload[0] or {}
    try:
        return Coordinate(latitude=float(first["lat"]), longitude=float(first["lon"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise GeocodeError(address, f"malformed result: {exc}") from exc
