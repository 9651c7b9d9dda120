"""
Data Models for the Issue Mapper

This module contains the data classes and enums shared by the pipeline,
the store, and the ingestion service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ProcessingStatus(str, Enum):
    """Pipeline eligibility of a post."""
    PENDING = "pending"
    PROCESSED_NO_ISSUE = "processed_no_issue"
    PROCESSED_MAPPED = "processed_mapped"

    @property
    def is_terminal(self) -> bool:
        return self is not ProcessingStatus.PENDING


class CoordinateSource(str, Enum):
    """Which pipeline stage produced a coordinate."""
    EXPLICIT = "explicit"          # "Coords: lat, lon" label in the text
    REGEX = "regex"                # Any other pattern found in the text
    GEOCODED = "geocoded"          # AI-extracted place name resolved by the geocoder
    AI_VERIFIED = "ai_verified"    # Legacy rows only, read back as GEOCODED

    @classmethod
    def normalize(cls, value: Any) -> "CoordinateSource":
        source = cls(value) if value else cls.GEOCODED
        return cls.GEOCODED if source is cls.AI_VERIFIED else source


@dataclass(frozen=True)
class BoundingBox:
    """Inclusive latitude/longitude rectangle."""
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, lat: Optional[float], lon: Optional[float]) -> bool:
        if lat is None or lon is None:
            return False
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_lat, self.max_lat, self.min_lon, self.max_lon)


@dataclass
class Coordinates:
    """A resolved point plus its provenance."""
    lat: float
    lon: float
    source: CoordinateSource
    display_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON shape stored in ``locations.coordinates``."""
        data = {'lat': self.lat, 'lon': self.lon, 'source': self.source.value}
        if self.display_name:
            data['displayName'] = self.display_name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Coordinates":
        return cls(
            lat=float(data['lat']),
            lon=float(data['lon']),
            source=CoordinateSource.normalize(data.get('source')),
            display_name=data.get('displayName') or data.get('display_name')
        )


@dataclass
class Post:
    """A unit of ingested content."""
    id: str
    text: str
    created_at: datetime
    media_urls: List[str] = field(default_factory=list)
    processing_status: ProcessingStatus = ProcessingStatus.PENDING


@dataclass
class Location:
    """The resolved geographic claim for a post (at most one per post)."""
    post_id: str
    coordinates: Coordinates
    extracted_location: Optional[str] = None
    status: str = "verified"


@dataclass
class PostAnalysis:
    """Classifier verdict for one post.

    ``skipped`` means the daily quota was exhausted and nothing was asked.
    ``failed`` means the classifier degraded (bad response, retries used up)
    and the verdict must not be treated as final.
    """
    id: str
    is_issue: bool = False
    location: Optional[str] = None
    issue_type: Optional[str] = None
    confidence: float = 0.0
    skipped: bool = False
    failed: bool = False


@dataclass
class QuotaStatus:
    """Snapshot of the classifier's daily-quota state."""
    exhausted: bool
    reset_time: Optional[float] = None
    minutes_until_reset: Optional[int] = None
