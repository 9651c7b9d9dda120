"""
Configuration Settings for the Issue Mapper

This module centralizes all configuration settings for the footpath issue
mapping pipeline, including environment variables, API keys, region
constants, and rate-limit tuning.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from data.models import BoundingBox

# Determine the application root directory
APP_ROOT = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
load_dotenv(dotenv_path=os.path.join(APP_ROOT, '.env'))

# API Keys and Authentication
GOOGLE_AI_API_KEY = os.getenv("GOOGLE_AI_API_KEY") or os.getenv("GEMINI_API_KEY")

# Twitter API Authentication (read-only, app-only bearer token is enough)
TWITTER_BEARER_TOKEN = os.getenv("TWITTER_BEARER_TOKEN")
TWITTER_USERNAME = os.getenv("TWITTER_USERNAME", "caleb_friesen")

# Database Settings
DB_DRIVER = os.getenv("DB_DRIVER", "PostgreSQL Unicode")
DB_SERVER = os.getenv("DB_SERVER", "")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "")
DB_USER = os.getenv("DB_USER", "")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_SSLMODE = os.getenv("DB_SSLMODE", "prefer")

# Build connection string safely (validation happens in validate_settings())
DB_CONNECTION_STRING = (
    f"DRIVER={{{DB_DRIVER}}}; "
    f"SERVER={DB_SERVER}; "
    f"PORT={DB_PORT}; "
    f"DATABASE={DB_NAME}; "
    f"UID={DB_USER}; "
    f"PWD={DB_PASSWORD}; "
    f"SSLmode={DB_SSLMODE};"
) if all([DB_SERVER, DB_NAME, DB_USER, DB_PASSWORD]) else ""

# =============================================================================
# Region Settings
# =============================================================================

REGION_NAME = "Bangalore"
REGION_ALIASES = ["bangalore", "bengaluru"]   # Lowercase name variants
REGION_COUNTRY_CODE = "in"                     # ISO 3166-1 code for geocoder scoping
REGION_BOUNDS = BoundingBox(min_lat=12.7, max_lat=13.3, min_lon=77.3, max_lon=77.9)

# =============================================================================
# AI Classifier Settings
# =============================================================================

DEFAULT_AI_MODELS = [
    'gemma-3-27b-it',           # Generous free-tier quota
    'gemini-2.0-flash-lite',
    'gemini-2.0-flash',
    'gemini-2.5-flash-lite'
]

AI_MIN_INTERVAL = 5.0                # Seconds between batch calls
AI_MAX_RETRIES = 3                   # Retries after a per-minute rate limit
AI_RETRY_INCREMENT = 10.0            # Backoff per attempt when no delay is suggested
AI_RETRY_BUFFER = 1.0                # Added to a server-suggested retry delay
AI_QUOTA_COOLDOWN = 60 * 60          # Seconds to pause after daily quota exhaustion
AI_POST_TEXT_LIMIT = 1000            # Max characters of a post sent to the model

# =============================================================================
# Geocoding Settings
# =============================================================================

GEOCODING_BASE_URL = "https://nominatim.openstreetmap.org/search"
GEOCODING_USER_AGENT = os.getenv("GEOCODING_USER_AGENT", "BangaloreFootpathMap/1.0")
GEOCODING_MIN_INTERVAL = 1.1         # Nominatim policy: max 1 request per second
GEOCODING_TIMEOUT = 5                # Seconds per request
GEOCODING_MAX_ATTEMPTS = 3           # Attempts for transient failures
GEOCODING_RETRY_DELAY = 2.0          # Initial delay between attempts

# =============================================================================
# Pipeline Settings
# =============================================================================

PROCESSING_BATCH_SIZE = 10           # Pending posts per cycle (one AI call)
PROCESSING_INTERVAL_SECONDS = 60     # Delay between scheduled cycles
LOCATION_STATUS_VERIFIED = "verified"

# =============================================================================
# Ingestion Settings
# =============================================================================

INGEST_LOOKBACK_DAYS = 60            # How far back to fetch on a fresh database
INGEST_MAX_RESULTS = 100             # Twitter API max results per page
INGEST_MAX_PAGES = 10                # Hard cap on timeline pages per fetch
POST_URL_TEMPLATE = "https://twitter.com/{username}/status/{post_id}"


def get_config_summary() -> dict:
    """
    Returns a summary of current configuration (without sensitive values).
    Useful for logging startup state.
    """
    return {
        "ai": {
            "configured": bool(GOOGLE_AI_API_KEY),
            "preferred_models": DEFAULT_AI_MODELS[:2],
            "min_interval": AI_MIN_INTERVAL,
        },
        "twitter": {
            "configured": bool(TWITTER_BEARER_TOKEN),
            "username": TWITTER_USERNAME,
        },
        "database": {
            "server": DB_SERVER[:20] + "..." if DB_SERVER and len(DB_SERVER) > 20 else DB_SERVER,
            "database": DB_NAME,
        },
        "region": {
            "name": REGION_NAME,
            "bounds": REGION_BOUNDS.as_tuple(),
        },
        "pipeline": {
            "batch_size": PROCESSING_BATCH_SIZE,
            "interval_seconds": PROCESSING_INTERVAL_SECONDS,
        }
    }
