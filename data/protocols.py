"""
Data Layer Protocol Definitions

This module defines typing.Protocol interfaces for data layer operations.
These protocols enable dependency injection for database operations,
making the pipeline testable without real database connections.

Protocols defined:
- PostStore: Interface the Issue Processor and ingestion use to read and write posts
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol

from data.models import Location, Post, ProcessingStatus


class PostStore(Protocol):
    """Protocol defining the persistence boundary of the pipeline.

    Implementations should provide methods for:
    - Fetching pending posts oldest-first
    - Recording a terminal decision (status plus optional Location) atomically
    - Idempotent ingestion of raw posts
    - Read-side aggregation for the API layer

    Write methods raise DatabaseError subclasses on failure; they never
    report failure through a return value.
    """

    def get_pending_posts(self, limit: int = 10) -> List[Post]:
        """Return up to ``limit`` pending posts ordered by created_at ascending."""
        ...

    def mark_post_as_processed(self, post_id: str, status: ProcessingStatus) -> None:
        """Set a post's processing status."""
        ...

    def save_locations(self, locations: Iterable[Location]) -> int:
        """Upsert Location rows keyed by post id.

        Returns:
            The number of rows written.
        """
        ...

    def record_result(self, post_id: str, status: ProcessingStatus,
                      location: Optional[Location] = None) -> None:
        """Write the status change and optional Location for one post in one transaction."""
        ...

    def save_posts(self, posts: Iterable[Post]) -> int:
        """Upsert raw posts without resetting an existing processing status.

        Returns:
            The number of posts written.
        """
        ...

    def get_all_posts(self) -> Dict[str, Any]:
        """Return every post split by whether it has a Location."""
        ...

    def get_locations(self) -> List[Dict[str, Any]]:
        """Return mapped posts joined with their Location, newest first."""
        ...
