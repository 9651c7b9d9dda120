"""
Shared Test Fixtures for the Issue Mapper

This module provides common fixtures used across all test modules.
Fixtures include an in-memory post store, mocks for the database connection,
the Gemini model and HTTP responses, and factories for test objects.
"""

import pytest
from unittest.mock import MagicMock, patch
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Iterable
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from data.models import Location, Post, ProcessingStatus
from utils.exceptions import QueryError
from utils.rate_limit import RateGate


# =============================================================================
# Store Fixtures
# =============================================================================

class InMemoryPostStore:
    """
    PostStore implementation backed by dictionaries.

    Mirrors DatabaseConnection's contract closely enough for pipeline tests:
    pending posts come back oldest first, locations are keyed by post id and
    record_result applies both writes or neither.
    """

    def __init__(self, posts: Optional[Iterable[Post]] = None):
        self.posts: Dict[str, Post] = {}
        self.locations: Dict[str, Location] = {}
        self.calls: List[tuple] = []
        self.fail_on_record: Optional[str] = None
        if posts:
            self.save_posts(posts)

    def get_pending_posts(self, limit: int = 10) -> List[Post]:
        pending = [p for p in self.posts.values() if p.processing_status == ProcessingStatus.PENDING]
        pending.sort(key=lambda p: (p.created_at, p.id))
        return pending[:limit]

    def mark_post_as_processed(self, post_id: str, status: ProcessingStatus) -> None:
        self.calls.append(('mark', post_id, status))
        self.posts[post_id].processing_status = ProcessingStatus(status)

    def save_locations(self, locations: Iterable[Location]) -> int:
        count = 0
        for location in locations:
            self.locations[location.post_id] = location
            count += 1
        return count

    def record_result(self, post_id: str, status: ProcessingStatus,
                      location: Optional[Location] = None) -> None:
        self.calls.append(('record', post_id, status, location))
        if post_id == self.fail_on_record or post_id not in self.posts:
            raise QueryError(f"Post {post_id} not found while recording result")
        if location is not None:
            self.locations[post_id] = location
        self.posts[post_id].processing_status = ProcessingStatus(status)

    def save_posts(self, posts: Iterable[Post]) -> int:
        count = 0
        for post in posts:
            existing = self.posts.get(post.id)
            if existing is not None:
                existing.media_urls = list(post.media_urls)
            else:
                self.posts[post.id] = Post(
                    id=post.id,
                    text=post.text,
                    created_at=post.created_at,
                    media_urls=list(post.media_urls),
                    processing_status=ProcessingStatus.PENDING
                )
            count += 1
        return count

    def get_all_posts(self) -> Dict[str, Any]:
        with_coords = [p for p in self.posts.values() if p.id in self.locations]
        missing = [p for p in self.posts.values() if p.id not in self.locations]
        return {
            'total_posts': len(self.posts),
            'posts_with_coords': len(with_coords),
            'posts_missing_coords': len(missing),
            'posts': {'with_coords': with_coords, 'missing_coords': missing}
        }

    def get_locations(self) -> List[Dict[str, Any]]:
        return [
            {'id': post_id, 'coordinates': location.coordinates.to_dict(),
             'extracted_location': location.extracted_location}
            for post_id, location in self.locations.items()
        ]

    def status_of(self, post_id: str) -> ProcessingStatus:
        return self.posts[post_id].processing_status


@pytest.fixture
def memory_store():
    """
    Empty in-memory PostStore.

    Usage:
        def test_pipeline(memory_store, post_factory):
            memory_store.save_posts([post_factory('1', 'text')])

    Returns:
        InMemoryPostStore: A fresh store.
    """
    return InMemoryPostStore()


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def mock_db_connection():
    """
    Mock pyodbc database connection and cursor.

    This fixture provides a mock database connection that simulates
    pyodbc behavior without requiring an actual database connection.

    Usage:
        def test_database(mock_db_connection):
            conn, cursor = mock_db_connection
            cursor.fetchall.return_value = [('row1',), ('row2',)]
            # ... test code

    Returns:
        tuple: A tuple of (mock_connection, mock_cursor).
    """
    mock_cursor = MagicMock()
    mock_cursor.description = None
    mock_cursor.fetchall.return_value = []
    mock_cursor.fetchone.return_value = None
    mock_cursor.rowcount = 1

    mock_conn = MagicMock()
    mock_conn.cursor.return_value = mock_cursor
    mock_conn.commit.return_value = None
    mock_conn.rollback.return_value = None
    mock_conn.close.return_value = None

    with patch('data.database.pyodbc.connect', return_value=mock_conn):
        yield mock_conn, mock_cursor


# =============================================================================
# Logging Fixtures
# =============================================================================

@pytest.fixture
def capture_logs():
    """
    Capture log messages from the application's loggers for assertion in tests.

    Returns:
        list: A list that will contain captured log records.
    """
    import logging

    class LogCapture(logging.Handler):
        def __init__(self):
            super().__init__()
            self.records = []

        def emit(self, record):
            self.records.append(record)

    handler = LogCapture()
    handler.setLevel(logging.DEBUG)

    app_logger = logging.getLogger("issue_mapper")
    app_logger.addHandler(handler)

    yield handler.records

    app_logger.removeHandler(handler)


# =============================================================================
# HTTP Response Fixtures
# =============================================================================

@pytest.fixture
def mock_http_response():
    """
    Factory fixture for creating mock HTTP responses.

    Usage:
        def test_http_request(mock_http_response):
            response = mock_http_response(status_code=200, json_data=[{'lat': '12.9'}])

    Returns:
        callable: A factory function for creating mock responses.
    """
    def _create_response(
        status_code: int = 200,
        json_data: Any = None,
        raise_for_status: bool = False
    ) -> MagicMock:
        """
        Create a mock HTTP response object.

        Args:
            status_code: HTTP status code (default 200).
            json_data: Value to return from response.json().
            raise_for_status: If True, raise_for_status() will raise an exception.

        Returns:
            MagicMock: A mock response object mimicking requests.Response.
        """
        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.ok = 200 <= status_code < 300

        # Configure json() method
        if json_data is not None:
            mock_response.json.return_value = json_data
        else:
            mock_response.json.side_effect = ValueError("No JSON data")

        # Configure raise_for_status
        if raise_for_status or status_code >= 400:
            from requests.exceptions import HTTPError
            mock_response.raise_for_status.side_effect = HTTPError(
                f"{status_code} Error",
                response=mock_response
            )
        else:
            mock_response.raise_for_status.return_value = None

        return mock_response

    return _create_response


@pytest.fixture
def nominatim_result():
    """Factory for a one-element Nominatim search result."""
    def _create(lat: float = 12.9352, lon: float = 77.6245,
                display_name: str = "Koramangala, Bengaluru, Karnataka, India") -> List[Dict[str, str]]:
        return [{'lat': str(lat), 'lon': str(lon), 'display_name': display_name}]

    return _create


# =============================================================================
# AI Fixtures
# =============================================================================

@pytest.fixture
def gemini_response():
    """
    Factory fixture for Gemini generate_content() responses.

    Usage:
        model.generate_content.return_value = gemini_response('[{"id": "1", ...}]')

    Returns:
        callable: A factory that wraps text in a response-like object.
    """
    def _create(text: str) -> MagicMock:
        response = MagicMock()
        response.text = text
        return response

    return _create


@pytest.fixture
def mock_gemini_model():
    """Mock GenerativeModel whose generate_content() is configured per test."""
    model = MagicMock()
    model.generate_content.return_value = MagicMock(text="[]")
    return model


@pytest.fixture
def ai_service(mock_gemini_model):
    """AIService using the mock model, with no spacing between calls."""
    from services.ai_service import AIService

    return AIService(model=mock_gemini_model, rate_gate=RateGate(0), quota_cooldown=3600)


# =============================================================================
# Data Model Factories
# =============================================================================

@pytest.fixture
def post_factory():
    """
    Factory fixture for creating Post test objects.

    Posts created without an explicit timestamp get increasing created_at
    values, so creation order is also processing order.

    Usage:
        def test_post(post_factory):
            post = post_factory('123', 'Broken footpath near Silk Board')

    Returns:
        callable: A factory function for creating Post objects.
    """
    base_time = datetime(2025, 1, 1, 8, 0, 0)
    counter = {'n': 0}

    def _create_post(
        post_id: str = None,
        text: str = 'Test post content for unit testing.',
        created_at: Optional[datetime] = None,
        media_urls: Optional[List[str]] = None,
        processing_status: ProcessingStatus = ProcessingStatus.PENDING
    ) -> Post:
        counter['n'] += 1
        if post_id is None:
            post_id = str(1000 + counter['n'])
        if created_at is None:
            created_at = base_time + timedelta(minutes=counter['n'])

        return Post(
            id=post_id,
            text=text,
            created_at=created_at,
            media_urls=media_urls or [],
            processing_status=processing_status
        )

    return _create_post
