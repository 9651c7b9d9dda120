"""
Coordinate Parser Module

Pulls explicit coordinates out of post text without any network access.
Patterns are tried in a fixed priority order and every candidate must fall
inside the region bounding box; a candidate outside it falls through to the
next pattern.
"""

import math
import re
from functools import lru_cache
from typing import Callable, List, Optional, Pattern, Tuple

from config import settings
from data.models import BoundingBox, Coordinates, CoordinateSource

_NUMBER = r'(-?\d{1,3}(?:\.\d+)?)'

# "Coord: 12.94, 77.62" / "coords:12.94,77.62"
EXPLICIT_PATTERN = re.compile(r'\bcoords?\s*:\s*' + _NUMBER + r'\s*,\s*' + _NUMBER, re.IGNORECASE)

# maps.google.com/?q=lat,lon, google.com/maps/@lat,lon,17z, .../place/lat,lon, ?ll=lat,lon
MAP_URL_PATTERN = re.compile(
    r'(?:[?&](?:q|ll|query|center|destination)=|/@|/place/|maps\.app\.goo\.gl/)'
    + _NUMBER + r'\s*(?:,|%2C)\s*' + _NUMBER,
    re.IGNORECASE
)

# 12.944583°N, 77.620572°E (hemisphere letters optional)
DEGREE_PATTERN = re.compile(
    _NUMBER + r'\s*°\s*([NS])?\s*,?\s*' + _NUMBER + r'\s*°\s*([EW])?',
    re.IGNORECASE
)

# 📍 12.94, 77.62
PIN_PATTERN = re.compile(r'(?:\U0001F4CD|\U0001F4CC)\s*' + _NUMBER + r'\s*,\s*' + _NUMBER)

BARE_PAIR_MIN_DECIMALS = 4


def _integer_alternation(low: float, high: float) -> str:
    """Regex alternation of every integer part a decimal in [low, high] can be written with."""
    parts = set()
    for value in range(math.trunc(low), math.trunc(high) + 1):
        # -0.5 is written "-0.5", so zero needs a signed form when the range dips below it
        if value < 0 or (value == 0 and low < 0):
            parts.add('-' + str(abs(value)))
        if value >= 0 and high >= 0:
            parts.add(str(value))
    return '|'.join(re.escape(part) for part in sorted(parts, key=lambda part: (-len(part), part)))


@lru_cache(maxsize=8)
def bare_pair_pattern(bounds: BoundingBox) -> Pattern:
    """
    Build the bare-pair pattern for a bounding box.

    Only pairs whose integer parts lie in the box's latitude and longitude
    ranges and which carry at least four decimals qualify, so stray numbers
    in ordinary text are not mistaken for coordinates.
    """
    lat = _integer_alternation(bounds.min_lat, bounds.max_lat)
    lon = _integer_alternation(bounds.min_lon, bounds.max_lon)
    decimals = r'\.\d{%d,}' % BARE_PAIR_MIN_DECIMALS
    return re.compile(
        r'(?<![\d.\-])((?:' + lat + r')' + decimals + r')\s*,\s*((?:' + lon + r')' + decimals + r')(?![\d.])'
    )


def _pair(match) -> Tuple[float, float]:
    return float(match.group(1)), float(match.group(2))


def _degree_pair(match) -> Tuple[float, float]:
    lat, lat_hemisphere, lon, lon_hemisphere = match.groups()
    lat, lon = float(lat), float(lon)
    if lat_hemisphere and lat_hemisphere.upper() == 'S':
        lat = -abs(lat)
    if lon_hemisphere and lon_hemisphere.upper() == 'W':
        lon = -abs(lon)
    return lat, lon


def _patterns(bounds: BoundingBox) -> List[Tuple[str, Pattern, Callable, CoordinateSource]]:
    return [
        ('explicit', EXPLICIT_PATTERN, _pair, CoordinateSource.EXPLICIT),
        ('map_url', MAP_URL_PATTERN, _pair, CoordinateSource.REGEX),
        ('degrees', DEGREE_PATTERN, _degree_pair, CoordinateSource.REGEX),
        ('bare_pair', bare_pair_pattern(bounds), _pair, CoordinateSource.REGEX),
        ('pin', PIN_PATTERN, _pair, CoordinateSource.REGEX),
    ]


def find_coordinates(text: Optional[str],
                     bounds: Optional[BoundingBox] = None) -> Optional[Tuple[str, Coordinates]]:
    """
    Find the highest-priority in-bounds coordinate pair in a text.

    Args:
        text: Raw post text.
        bounds: Region to accept; defaults to settings.REGION_BOUNDS.

    Returns:
        Optional[Tuple[str, Coordinates]]: The matching pattern name and the
        parsed coordinates, or None if no pattern yields an in-bounds pair.
    """
    if not text:
        return None

    bounds = bounds or settings.REGION_BOUNDS

    for name, pattern, extract, source in _patterns(bounds):
        for match in pattern.finditer(text):
            lat, lon = extract(match)
            if bounds.contains(lat, lon):
                return name, Coordinates(lat=lat, lon=lon, source=source)

    return None


def parse_coordinates(text: Optional[str], bounds: Optional[BoundingBox] = None) -> Optional[Coordinates]:
    """
    Parse explicit coordinates from post text.

    Supports, in priority order:
    - "Coords: 12.944583, 77.620572"
    - Google Maps style URLs (?q=lat,lon, /@lat,lon)
    - "12.944583°N, 77.620572°E"
    - Plain high-precision pairs such as "12.944583, 77.620572"
    - "📍 12.944583, 77.620572"

    Returns:
        Optional[Coordinates]: Coordinates tagged ``explicit`` for the labelled
        form and ``regex`` otherwise, or None.
    """
    found = find_coordinates(text, bounds)
    return found[1] if found else None
