"""
Geocoding Service Module

This module resolves free-text place names to coordinates using the
OpenStreetMap Nominatim search API. Every request passes through a rate gate
(Nominatim allows at most one request per second) and results outside the
region bounding box are treated as misses.
"""

from typing import List, Optional, Sequence

import requests

from config import settings
from data.models import BoundingBox, Coordinates, CoordinateSource
from utils.exceptions import GeocodingError
from utils.helpers import retry, safe_get
from utils.logger import get_logger
from utils.rate_limit import RateGate

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class GeocodingService:
    """Service for place-name lookups against Nominatim."""

    def __init__(self,
                 rate_gate: Optional[RateGate] = None,
                 base_url: Optional[str] = None,
                 user_agent: Optional[str] = None,
                 country_code: Optional[str] = None,
                 bounds: Optional[BoundingBox] = None,
                 timeout: Optional[float] = None,
                 max_attempts: Optional[int] = None,
                 retry_delay: Optional[float] = None):
        """
        Initialize the geocoder.

        Args:
            rate_gate: Gate shared with other clients; a private one is created if omitted.
            base_url: Search endpoint, defaults to settings.GEOCODING_BASE_URL.
            user_agent: User-Agent header (required by Nominatim's usage policy).
            country_code: Restricts results to one country.
            bounds: Accepted region.
            timeout: Seconds per request.
            max_attempts: Attempts for transient failures.
            retry_delay: Initial delay between attempts.
        """
        self.rate_gate = rate_gate or RateGate(settings.GEOCODING_MIN_INTERVAL)
        self.base_url = base_url or settings.GEOCODING_BASE_URL
        self.user_agent = user_agent or settings.GEOCODING_USER_AGENT
        self.country_code = country_code or settings.REGION_COUNTRY_CODE
        self.bounds = bounds or settings.REGION_BOUNDS
        self.timeout = timeout or settings.GEOCODING_TIMEOUT
        self.max_attempts = max_attempts or settings.GEOCODING_MAX_ATTEMPTS
        self.retry_delay = settings.GEOCODING_RETRY_DELAY if retry_delay is None else retry_delay

    @property
    def min_interval(self) -> float:
        """Minimum spacing between requests, in seconds."""
        return self.rate_gate.min_interval

    def _request(self, place_name: str) -> list:
        """
        Issue one rate-gated search request.

        Raises:
            GeocodingError: For failures worth retrying (timeouts, 429, 5xx).
            requests.RequestException / ValueError: For anything else.
        """
        self.rate_gate.wait()

        try:
            response = requests.get(
                self.base_url,
                params={
                    'q': place_name,
                    'format': 'json',
                    'limit': 1,
                    'countrycodes': self.country_code
                },
                headers={'User-Agent': self.user_agent},
                timeout=self.timeout
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise GeocodingError(f"Transient network error: {e}") from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise GeocodingError(f"Nominatim returned HTTP {response.status_code}")

        response.raise_for_status()
        return response.json()

    def geocode(self, place_name: Optional[str]) -> Optional[Coordinates]:
        """
        Geocode a location name/address to coordinates.

        Args:
            place_name: Free-text place name, ideally with a city qualifier.

        Returns:
            Optional[Coordinates]: Coordinates tagged ``geocoded``, or None for
            empty input, no result, an out-of-region result, or any failure.
        """
        if not place_name or not place_name.strip():
            return None

        try:
            results = retry(
                lambda: self._request(place_name),
                max_attempts=self.max_attempts,
                delay=self.retry_delay,
                exceptions=(GeocodingError,)
            )
        except Exception as e:
            logger.error(f"Error geocoding \"{place_name}\": {e}")
            return None

        if not results:
            logger.info(f"No geocoding result for \"{place_name}\"")
            return None

        try:
            lat = float(safe_get(results, 0, 'lat'))
            lon = float(safe_get(results, 0, 'lon'))
        except (TypeError, ValueError):
            logger.warning(f"Malformed geocoding result for \"{place_name}\": {str(results)[:100]}")
            return None

        if not self.bounds.contains(lat, lon):
            logger.info(f"Coordinates outside {settings.REGION_NAME} bounds for \"{place_name}\": {lat}, {lon}")
            return None

        return Coordinates(
            lat=lat,
            lon=lon,
            source=CoordinateSource.GEOCODED,
            display_name=safe_get(results, 0, 'display_name')
        )

    def geocode_batch(self, place_names: Sequence[Optional[str]]) -> List[Optional[Coordinates]]:
        """
        Geocode several place names one after another.

        Args:
            place_names: Names to resolve; None or empty entries yield None.

        Returns:
            List[Optional[Coordinates]]: One entry per input, in input order.
        """
        total = sum(1 for name in place_names if name)
        logger.info(f"Geocoding {total} locations with Nominatim...")

        results = []
        for index, name in enumerate(place_names):
            if index > 0 and index % 5 == 0:
                logger.info(f"Geocoded {index}/{len(place_names)} locations...")
            results.append(self.geocode(name) if name else None)

        found = sum(1 for result in results if result is not None)
        logger.info(f"Successfully geocoded {found}/{total} locations")
        return results
