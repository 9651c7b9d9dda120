"""
Database Module for the Issue Mapper

This module handles all database connections and operations for the pipeline.
It provides functions for connecting to PostgreSQL over ODBC, creating the
schema, ingesting posts, and recording the pipeline's per-post decisions.
"""

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import pyodbc

from config import settings
from data.models import Coordinates, Location, Post, ProcessingStatus
from utils.exceptions import ConnectionError as DatabaseConnectionError
from utils.exceptions import QueryError
from utils.logger import get_logger

logger = get_logger(__name__)

CREATE_POSTS_TABLE = """
CREATE TABLE IF NOT EXISTS posts (
    id VARCHAR(255) PRIMARY KEY,
    text TEXT,
    created_at TIMESTAMP,
    media_urls JSONB,
    processing_status VARCHAR(50) DEFAULT 'pending',
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

ADD_STATUS_COLUMN = """
ALTER TABLE posts ADD COLUMN IF NOT EXISTS processing_status VARCHAR(50) DEFAULT 'pending'
"""

CREATE_LOCATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS locations (
    id SERIAL PRIMARY KEY,
    post_id VARCHAR(255) UNIQUE REFERENCES posts(id) ON DELETE CASCADE,
    coordinates JSONB NOT NULL,
    extracted_location TEXT,
    status VARCHAR(50) DEFAULT 'verified',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

UPSERT_POST = """
INSERT INTO posts (id, text, created_at, media_urls, processing_status, updated_at)
VALUES (?, ?, ?, CAST(? AS JSONB), 'pending', NOW())
ON CONFLICT (id) DO UPDATE SET
    media_urls = EXCLUDED.media_urls,
    updated_at = NOW()
"""

UPSERT_LOCATION = """
INSERT INTO locations (post_id, coordinates, extracted_location, status, updated_at)
VALUES (?, CAST(? AS JSONB), ?, ?, NOW())
ON CONFLICT (post_id) DO UPDATE SET
    coordinates = EXCLUDED.coordinates,
    extracted_location = EXCLUDED.extracted_location,
    status = EXCLUDED.status,
    updated_at = NOW()
"""

UPDATE_STATUS = """
UPDATE posts
SET processing_status = ?, updated_at = NOW()
WHERE id = ?
"""


def _load_json(value: Any, default: Any) -> Any:
    """Decode a JSONB column, which the ODBC driver hands back as text."""
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed JSON column value: {str(value)[:50]}")
        return default


def _row_to_post(row: Dict[str, Any]) -> Post:
    return Post(
        id=str(row['id']),
        text=row.get('text') or "",
        created_at=row.get('created_at'),
        media_urls=_load_json(row.get('media_urls'), []),
        processing_status=ProcessingStatus(row.get('processing_status') or ProcessingStatus.PENDING.value)
    )


def _format_post(row: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a joined post/location row for the API layer."""
    coordinates = _load_json(row.get('coordinates'), None)
    if coordinates:
        coordinates = Coordinates.from_dict(coordinates).to_dict()

    return {
        'id': str(row['id']),
        'text': row.get('text'),
        'created_at': row.get('created_at'),
        'media_urls': _load_json(row.get('media_urls'), []),
        'processing_status': row.get('processing_status'),
        'coordinates': coordinates,
        'extracted_location': row.get('extracted_location'),
        'location_status': row.get('status'),
        'url': settings.POST_URL_TEMPLATE.format(username=settings.TWITTER_USERNAME, post_id=row['id'])
    }


class DatabaseConnection:
    """Database connection manager implementing the PostStore protocol."""

    def __init__(self, connection_string: Optional[str] = None):
        """Initialize the database connection."""
        self.connection_string = connection_string or settings.DB_CONNECTION_STRING
        self.conn = None
        pyodbc.pooling = False

    def connect(self) -> bool:
        """
        Establish a connection to the database.

        Returns:
            bool: True if connection was successful, False otherwise.
        """
        try:
            self.conn = pyodbc.connect(self.connection_string)
            self.conn.setdecoding(pyodbc.SQL_CHAR, encoding='utf-8')
            self.conn.setdecoding(pyodbc.SQL_WCHAR, encoding='utf-8')
            self.conn.setencoding(encoding='utf-8')
            logger.info("Successfully connected to database")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            self.conn = None
            return False

    def close(self) -> None:
        """Close the database connection."""
        try:
            if self.conn:
                self.conn.close()
                logger.info("Database connection closed")
        except Exception as e:
            logger.error(f"Error closing database connection: {e}")
        finally:
            self.conn = None

    def _ensure_connected(self) -> None:
        if not self.conn and not self.connect():
            raise DatabaseConnectionError("Could not connect to database")

    @contextmanager
    def transaction(self):
        """
        Yield a cursor whose statements commit together or not at all.

        Raises:
            QueryError: If any statement fails; the transaction is rolled back.
        """
        self._ensure_connected()
        cursor = self.conn.cursor()
        try:
            yield cursor
            self.conn.commit()
        except Exception as e:
            logger.error(f"Transaction failed, rolling back: {e}")
            try:
                self.conn.rollback()
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            if isinstance(e, QueryError):
                raise
            raise QueryError(str(e)) from e

    def execute_query(self, query: str, params: Optional[tuple] = None) -> List[Dict]:
        """
        Execute a SQL query and return the results.

        Args:
            query: The SQL query to execute.
            params: Query parameters (optional).

        Returns:
            List[Dict]: Query results as a list of dictionaries (empty for statements without results).

        Raises:
            QueryError: If the query fails.
        """
        with self.transaction() as cursor:
            if params:
                cursor.execute(query, params)
            else:
                cursor.execute(query)

            # Check if this is a SELECT query with results
            if cursor.description:
                columns = [column[0] for column in cursor.description]
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
            return []

    def init_db(self) -> None:
        """Create the posts and locations tables if they do not exist."""
        with self.transaction() as cursor:
            cursor.execute(CREATE_POSTS_TABLE)
            cursor.execute(ADD_STATUS_COLUMN)
            cursor.execute(CREATE_LOCATIONS_TABLE)
        logger.info("Database schema initialized")

    # =========================================================================
    # Ingestion
    # =========================================================================

    def save_posts(self, posts: Iterable[Post]) -> int:
        """
        Upsert raw posts. Existing rows keep their text and processing status;
        only the media URLs are refreshed.

        Args:
            posts: Posts to store.

        Returns:
            int: Number of posts written.
        """
        posts = list(posts)
        if not posts:
            return 0

        with self.transaction() as cursor:
            for post in posts:
                cursor.execute(UPSERT_POST, (
                    post.id,
                    post.text,
                    post.created_at,
                    json.dumps(post.media_urls or [])
                ))

        logger.info(f"Saved {len(posts)} posts")
        return len(posts)

    def get_latest_post_id(self) -> Optional[str]:
        """Return the id of the newest stored post, used as ``since_id`` for incremental fetches."""
        rows = self.execute_query("SELECT id FROM posts ORDER BY created_at DESC, id DESC LIMIT 1")
        return str(rows[0]['id']) if rows else None

    # =========================================================================
    # Pipeline
    # =========================================================================

    def get_pending_posts(self, limit: int = 10) -> List[Post]:
        """
        Get posts that still need processing, oldest first.

        Args:
            limit: Maximum number of posts to return.

        Returns:
            List[Post]: Pending posts.
        """
        rows = self.execute_query("""
            SELECT id, text, created_at, media_urls, processing_status
            FROM posts
            WHERE processing_status = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
        """, (ProcessingStatus.PENDING.value, limit))
        return [_row_to_post(row) for row in rows]

    def mark_post_as_processed(self, post_id: str, status: ProcessingStatus) -> None:
        """
        Mark a post as processed.

        Args:
            post_id: The post to update.
            status: The terminal status to record.
        """
        status = ProcessingStatus(status)
        with self.transaction() as cursor:
            cursor.execute(UPDATE_STATUS, (status.value, post_id))
        logger.debug(f"Post {post_id} marked {status.value}")

    def _upsert_location(self, cursor, location: Location) -> None:
        cursor.execute(UPSERT_LOCATION, (
            location.post_id,
            json.dumps(location.coordinates.to_dict()),
            location.extracted_location,
            location.status
        ))

    def save_locations(self, locations: Iterable[Location]) -> int:
        """
        Save computed locations, replacing any existing row for the same post.

        Args:
            locations: Locations to store.

        Returns:
            int: Number of rows written.
        """
        locations = list(locations)
        if not locations:
            return 0

        with self.transaction() as cursor:
            for location in locations:
                self._upsert_location(cursor, location)
        return len(locations)

    def record_result(self, post_id: str, status: ProcessingStatus,
                      location: Optional[Location] = None) -> None:
        """
        Record the pipeline's decision for one post in a single transaction.

        Args:
            post_id: The post that was processed.
            status: Its new terminal status.
            location: The Location to upsert when the post was mapped.

        Raises:
            QueryError: If either write fails or the post no longer exists.
        """
        status = ProcessingStatus(status)
        with self.transaction() as cursor:
            if location is not None:
                self._upsert_location(cursor, location)
            cursor.execute(UPDATE_STATUS, (status.value, post_id))
            if cursor.rowcount == 0:
                raise QueryError(f"Post {post_id} not found while recording result")

    # =========================================================================
    # Read side
    # =========================================================================

    def get_locations(self) -> List[Dict[str, Any]]:
        """Get all mapped posts joined with their location, newest first."""
        rows = self.execute_query("""
            SELECT p.*, l.coordinates, l.extracted_location, l.status
            FROM locations l
            JOIN posts p ON l.post_id = p.id
            ORDER BY p.created_at DESC
        """)
        return [_format_post(row) for row in rows]

    def get_all_posts(self) -> Dict[str, Any]:
        """Get all posts, with location info where available."""
        rows = self.execute_query("""
            SELECT p.*, l.coordinates, l.extracted_location, l.status
            FROM posts p
            LEFT JOIN locations l ON p.id = l.post_id
            ORDER BY p.created_at DESC
        """)

        posts = [_format_post(row) for row in rows]
        with_coords = [p for p in posts if p['coordinates']]
        missing_coords = [p for p in posts if not p['coordinates']]

        return {
            'total_posts': len(posts),
            'posts_with_coords': len(with_coords),
            'posts_missing_coords': len(missing_coords),
            'posts': {
                'with_coords': with_coords,
                'missing_coords': missing_coords
            }
        }

    def get_processing_stats(self) -> Dict[str, Any]:
        """
        Count posts per processing status.

        Returns:
            Dict: Counts for each status plus ``total`` and ``progress_percent``.
        """
        self._ensure_connected()
        try:
            df = pd.read_sql(
                "SELECT processing_status, COUNT(*) AS count FROM posts GROUP BY processing_status",
                self.conn
            )
        except Exception as e:
            logger.error(f"Error retrieving processing stats: {e}")
            raise QueryError(str(e)) from e

        stats = {status.value: 0 for status in ProcessingStatus}
        total = 0
        if not df.empty:
            df['processing_status'] = df['processing_status'].fillna(ProcessingStatus.PENDING.value)
            counts = df.groupby('processing_status')['count'].sum()
            for status, count in counts.items():
                stats[status] = int(count)
            total = int(counts.sum())

        stats['total'] = total
        processed = stats[ProcessingStatus.PROCESSED_NO_ISSUE.value] + stats[ProcessingStatus.PROCESSED_MAPPED.value]
        stats['progress_percent'] = round(processed / stats['total'] * 100) if stats['total'] else 100
        stats['generated_at'] = datetime.now()
        return stats
