"""
Service Protocol Definitions

This module defines typing.Protocol interfaces for the external-facing
services the Issue Processor depends on. These protocols enable loose
coupling, dependency injection, and easier testing.

Protocols defined:
- IssueClassifierProtocol: Interface for batch AI classification with quota state
- GeocoderProtocol: Interface for rate-limited place-name geocoding
- PostSourceProtocol: Interface for fetching raw posts from a social platform
"""

from typing import Any, Iterable, List, Mapping, Optional, Protocol, Union

from data.models import Coordinates, Post, PostAnalysis, QuotaStatus


class IssueClassifierProtocol(Protocol):
    """Protocol defining the interface for the AI classifier.

    Implementations should provide methods for:
    - Classifying a batch of posts with one upstream call
    - Reporting daily-quota state so callers can avoid wasted work
    """

    def classify_batch(self, posts: Iterable[Union[Post, Mapping[str, Any]]]) -> List[PostAnalysis]:
        """Classify posts, returning one analysis per input post.

        Args:
            posts: Posts or ``{id, text}`` mappings.

        Returns:
            Analyses keyed by the input ids. Never raises for upstream failures.
        """
        ...

    def get_quota_status(self) -> QuotaStatus:
        """Return whether the daily quota is exhausted and when it resets."""
        ...


class GeocoderProtocol(Protocol):
    """Protocol defining the interface for place-name geocoding."""

    min_interval: float

    def geocode(self, place_name: Optional[str]) -> Optional[Coordinates]:
        """Resolve a place name, returning None on any miss or failure."""
        ...


class PostSourceProtocol(Protocol):
    """Protocol defining the interface for upstream post ingestion."""

    def fetch_recent_posts(self, days: Optional[int] = None,
                           since_id: Optional[str] = None) -> List[Post]:
        """Fetch recent posts as pending Post records.

        Args:
            days: Look-back window used when no since_id is known.
            since_id: Only return posts newer than this id.

        Returns:
            Posts in the order the platform returned them.
        """
        ...
