"""
Configuration Validation for the Issue Mapper

This module contains configuration validation logic.
Kept apart from settings.py so importing settings never raises.
"""

from utils.exceptions import ConfigurationError


def validate_settings(require_twitter: bool = False) -> bool:
    """
    Validate that all required settings are properly configured.

    Args:
        require_twitter: Also require Twitter credentials (needed for ingestion runs).

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    # Import settings here to avoid circular imports
    from config import settings

    errors = []

    # Required environment variables
    required_vars = [
        ("GOOGLE_AI_API_KEY", settings.GOOGLE_AI_API_KEY),
        ("DB_SERVER", settings.DB_SERVER),
        ("DB_NAME", settings.DB_NAME),
        ("DB_USER", settings.DB_USER),
        ("DB_PASSWORD", settings.DB_PASSWORD)
    ]
    if require_twitter:
        required_vars.append(("TWITTER_BEARER_TOKEN", settings.TWITTER_BEARER_TOKEN))

    for var_name, var_value in required_vars:
        if not var_value:
            errors.append(f"Missing required environment variable: {var_name}")

    # Verify database connection string was built successfully
    if not settings.DB_CONNECTION_STRING:
        errors.append("Database connection string could not be built. Check DB_SERVER, DB_NAME, DB_USER, DB_PASSWORD.")

    # Validate numeric settings are within reasonable bounds
    numeric_validations = [
        ("PROCESSING_BATCH_SIZE", settings.PROCESSING_BATCH_SIZE, 1, 50),
        ("AI_MAX_RETRIES", settings.AI_MAX_RETRIES, 0, 10),
        ("GEOCODING_MAX_ATTEMPTS", settings.GEOCODING_MAX_ATTEMPTS, 1, 10),
        ("INGEST_MAX_RESULTS", settings.INGEST_MAX_RESULTS, 5, 100),
    ]

    for name, value, min_val, max_val in numeric_validations:
        if value < min_val or value > max_val:
            errors.append(f"{name} must be between {min_val} and {max_val}, got {value}")

    # Nominatim rejects clients that call more than once per second
    if settings.GEOCODING_MIN_INTERVAL < 1.0:
        errors.append(f"GEOCODING_MIN_INTERVAL must be at least 1.0, got {settings.GEOCODING_MIN_INTERVAL}")

    # Validate timing values are positive
    timing_settings = [
        ("AI_MIN_INTERVAL", settings.AI_MIN_INTERVAL),
        ("AI_QUOTA_COOLDOWN", settings.AI_QUOTA_COOLDOWN),
        ("GEOCODING_TIMEOUT", settings.GEOCODING_TIMEOUT),
        ("PROCESSING_INTERVAL_SECONDS", settings.PROCESSING_INTERVAL_SECONDS),
    ]

    for name, value in timing_settings:
        if value <= 0:
            errors.append(f"{name} must be positive, got {value}")

    bounds = settings.REGION_BOUNDS
    if bounds.min_lat >= bounds.max_lat or bounds.min_lon >= bounds.max_lon:
        errors.append(f"REGION_BOUNDS is empty: {bounds.as_tuple()}")

    # Raise all errors at once
    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)

    return True
