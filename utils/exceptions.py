"""
Custom Exception Classes for the Issue Mapper

This module defines custom exceptions for better error handling and
categorization of failures across the ingestion-to-mapping pipeline.
"""


class IssueMapperError(Exception):
    """Base exception for all Issue Mapper errors."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(IssueMapperError):
    """Raised when configuration validation fails or required settings are missing."""
    pass


# =============================================================================
# AI Service Errors
# =============================================================================

class AIServiceError(IssueMapperError):
    """Base exception for AI classifier errors."""
    pass


class RateLimitError(AIServiceError):
    """Raised when the model rejects a call because of a per-minute rate limit."""

    def __init__(self, message: str, retry_after: float = None):
        super().__init__(message)
        self.retry_after = retry_after


class QuotaExhaustedError(AIServiceError):
    """Raised when the daily model quota is used up."""
    pass


class ResponseParseError(AIServiceError):
    """Raised when the model response holds no usable JSON array."""
    pass


# =============================================================================
# Geocoding Errors
# =============================================================================

class GeocodingError(IssueMapperError):
    """Raised for transient geocoding failures that are worth retrying."""
    pass


# =============================================================================
# Ingestion Errors
# =============================================================================

class IngestionError(IssueMapperError):
    """Raised when posts cannot be fetched from the upstream platform."""
    pass


# =============================================================================
# Database Errors
# =============================================================================

class DatabaseError(IssueMapperError):
    """Base exception for database-related errors."""
    pass


class ConnectionError(DatabaseError):
    """Raised when database connection fails."""
    pass


class QueryError(DatabaseError):
    """Raised when a database query fails."""
    pass
