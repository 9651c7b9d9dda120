"""
AI Service Module

This module classifies posts using Google's Gemini API.
Posts are sent in batches: one prompt lists every post and the model answers
with a JSON array saying whether each post reports a footpath issue and where.
The service owns its own rate gate, retry policy, and daily-quota state.
"""

import json
import math
import re
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel, ValidationError, field_validator

from config import settings
from data.models import Post, PostAnalysis, QuotaStatus
from utils.exceptions import QuotaExhaustedError, RateLimitError, ResponseParseError
from utils.helpers import normalize_whitespace, truncate_text
from utils.logger import get_logger
from utils.rate_limit import RateGate

logger = get_logger(__name__)

# Daily quota is gone; retrying within the hour is pointless
DAILY_QUOTA_MARKERS = ('limit: 0', 'PerDay', 'exceeded your current quota')

# Per-minute limits; worth a retry after a short pause
RATE_LIMIT_MARKERS = ('429', 'quota', 'rate limit', 'resource has been exhausted')

# "Please retry in 7.934181993s" / "retryDelay": "7s"
RETRY_DELAY_PATTERN = re.compile(r'retry\w*\W*?(?:in\s+)?(\d+(?:\.\d+)?)\s*s\b', re.IGNORECASE)

NO_LOCATION_TOKENS = {'none', 'null', 'n/a', 'na', 'unknown', 'not specified'}


class RawAnalysis(BaseModel):
    """One element of the model's JSON array, validated before use."""
    id: str
    is_issue: bool = False
    issue_type: Optional[str] = None
    location: Optional[str] = None
    confidence: float = 0.0

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        if v is None or isinstance(v, (dict, list)):
            raise ValueError("id must be a scalar")
        return str(v).strip()

    @field_validator('is_issue', mode='before')
    @classmethod
    def default_is_issue(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator('issue_type', 'location', mode='before')
    @classmethod
    def coerce_text(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, (dict, list)):
            return None
        return str(v)

    @field_validator('confidence', mode='before')
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if value > 1.0 and value <= 100.0:
            value = value / 100.0
        return min(max(value, 0.0), 1.0)


def extract_json_array(text: str) -> List[Any]:
    """
    Return the first well-formed JSON array embedded in ``text``.

    Models often wrap the array in prose or code fences, so every '[' is
    tried as a starting point until one decodes to a list.

    Raises:
        ResponseParseError: If no array can be decoded.
    """
    if not text:
        raise ResponseParseError("Empty response")

    decoder = json.JSONDecoder()
    for match in re.finditer(r'\[', text):
        try:
            value, _ = decoder.raw_decode(text, match.start())
        except ValueError:
            continue
        if isinstance(value, list):
            return value

    raise ResponseParseError("No JSON array found in response")


def sanitize_location(location: Optional[str],
                      region_name: Optional[str] = None,
                      aliases: Optional[Iterable[str]] = None) -> Optional[str]:
    """
    Clean an extracted location so the geocoder gets usable, region-scoped input.

    Args:
        location: Location string from the model.
        region_name: Canonical region qualifier, defaults to settings.REGION_NAME.
        aliases: Lowercase region name variants, defaults to settings.REGION_ALIASES.

    Returns:
        Optional[str]: None when the location is empty, a "none" token, or just
        the region itself; otherwise the location, qualified with the region
        name if it does not already mention it.
    """
    if location is None:
        return None

    region_name = region_name or settings.REGION_NAME
    aliases = [alias.lower() for alias in (aliases or settings.REGION_ALIASES)]
    if region_name.lower() not in aliases:
        aliases.append(region_name.lower())

    cleaned = normalize_whitespace(location).strip(' ,.;')
    lowered = cleaned.lower()

    if not cleaned or lowered in NO_LOCATION_TOKENS or lowered in aliases:
        return None

    if not any(alias in lowered for alias in aliases):
        cleaned = f"{cleaned}, {region_name}"

    return cleaned


def parse_retry_delay(error_message: str, buffer: Optional[float] = None) -> Optional[float]:
    """
    Parse a server-suggested retry delay out of an error message.

    Returns:
        Optional[float]: Seconds to wait (rounded up, plus a buffer), or None.
    """
    match = RETRY_DELAY_PATTERN.search(error_message or "")
    if not match:
        return None
    buffer = settings.AI_RETRY_BUFFER if buffer is None else buffer
    return math.ceil(float(match.group(1))) + buffer


def is_daily_quota_error(error_message: str) -> bool:
    """Check if an error indicates daily quota exhaustion rather than a per-minute limit."""
    return any(marker in (error_message or "") for marker in DAILY_QUOTA_MARKERS)


def is_rate_limit_error(error: Exception) -> bool:
    """Check if an error is a transient rate limit."""
    if isinstance(error, google_exceptions.ResourceExhausted):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


class AIService:
    """Service for batch issue classification with Google's Gemini API."""

    def __init__(self,
                 model: Any = None,
                 api_key: Optional[str] = None,
                 rate_gate: Optional[RateGate] = None,
                 max_retries: Optional[int] = None,
                 retry_increment: Optional[float] = None,
                 quota_cooldown: Optional[float] = None):
        """
        Initialize the AI service with the Gemini API.

        Configures the API key and selects an appropriate model based on
        availability, unless a model object is injected.

        Args:
            model: Object exposing ``generate_content(prompt)``; skips model discovery.
            api_key: Gemini API key, defaults to settings.GOOGLE_AI_API_KEY.
            rate_gate: Minimum spacing between batch calls.
            max_retries: Retries after a per-minute rate limit.
            retry_increment: Backoff per attempt when the error suggests no delay.
            quota_cooldown: Seconds to pause after daily quota exhaustion.
        """
        self.rate_gate = rate_gate or RateGate(settings.AI_MIN_INTERVAL)
        self.max_retries = settings.AI_MAX_RETRIES if max_retries is None else max_retries
        self.retry_increment = settings.AI_RETRY_INCREMENT if retry_increment is None else retry_increment
        self.quota_cooldown = settings.AI_QUOTA_COOLDOWN if quota_cooldown is None else quota_cooldown

        # Quota tracking
        self.quota_exhausted = False
        self.quota_reset_time = None

        if model is not None:
            self.model = model
            return

        api_key = api_key or settings.GOOGLE_AI_API_KEY
        if not api_key:
            raise ValueError("Missing required GOOGLE_AI_API_KEY")

        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name=self._select_model())

    def _select_model(self) -> str:
        """Pick the first preferred model the API key can use."""
        try:
            available_models = [m.name for m in genai.list_models()]
        except Exception as e:
            logger.error(f"Error initializing Gemini AI: {e}")
            raise

        model_name = None
        for preferred in settings.DEFAULT_AI_MODELS:
            for available in available_models:
                if preferred in available:
                    model_name = available
                    break
            if model_name:
                break

        if not model_name and available_models:
            # If none of our preferred models are available, just use the first one
            model_name = available_models[0]

        if not model_name:
            raise ValueError("No Gemini models available")

        logger.info(f"Selected AI model: {model_name}")
        return model_name

    # =========================================================================
    # Quota state
    # =========================================================================

    def is_quota_exhausted(self) -> bool:
        """
        Check if calls should be skipped because the daily quota is used up.
        Clears the flag once the reset time has passed.
        """
        if not self.quota_exhausted:
            return False

        if self.quota_reset_time is not None and time.time() >= self.quota_reset_time:
            logger.info("Quota reset time reached, resuming classification")
            self.quota_exhausted = False
            self.quota_reset_time = None
            return False

        return True

    def minutes_until_reset(self) -> Optional[int]:
        if not self.quota_exhausted or self.quota_reset_time is None:
            return None
        return max(0, math.ceil((self.quota_reset_time - time.time()) / 60))

    def get_quota_status(self) -> QuotaStatus:
        """Get current quota state for monitoring."""
        exhausted = self.is_quota_exhausted()
        return QuotaStatus(
            exhausted=exhausted,
            reset_time=self.quota_reset_time,
            minutes_until_reset=self.minutes_until_reset()
        )

    def _mark_quota_exhausted(self) -> None:
        self.quota_exhausted = True
        self.quota_reset_time = time.time() + self.quota_cooldown
        logger.warning(f"Daily API quota exhausted. Pausing classification for {self.quota_cooldown / 60:.0f} minutes.")

    # =========================================================================
    # Classification
    # =========================================================================

    @staticmethod
    def _as_item(post: Union[Post, Mapping[str, Any]]) -> Tuple[str, str]:
        if isinstance(post, Post):
            return str(post.id), post.text or ""
        return str(post['id']), post.get('text') or ""

    def build_prompt(self, items: List[Tuple[str, str]]) -> str:
        """Build one prompt enumerating every post in the batch."""
        post_list = "\n\n".join(
            f"ID: {post_id}\nTweet: \"{normalize_whitespace(text)[:settings.AI_POST_TEXT_LIMIT].replace(chr(34), chr(39))}\""
            for post_id, text in items
        )

        return f"""You are an AI assistant for the "{settings.REGION_NAME} Footpath Map" project.
Analyze the following tweets to determine if they report pedestrian infrastructure issues
(broken footpath, pothole, encroachment, missing kerb, blocked walkway, etc.) in {settings.REGION_NAME}.

INPUT TWEETS:
{post_list}

INSTRUCTIONS:
1. For EACH tweet, determine if it is a valid issue.
2. Extract the most specific location mentioned (road, junction, landmark, area), or null.
3. Output a JSON ARRAY with exactly one object per tweet, using the tweet's ID.

OUTPUT FORMAT (JSON ONLY - no other text, just the JSON array):
[
  {{
    "id": "tweet_id",
    "is_issue": boolean,
    "issue_type": "string" | null,
    "location": "string" | null,
    "confidence": number
  }}
]"""

    def _call_model(self, prompt: str) -> str:
        """
        Send one prompt to the model.

        Raises:
            QuotaExhaustedError: If the daily quota is used up.
            RateLimitError: If a per-minute limit was hit; ``retry_after`` holds
                the server-suggested delay when the error carries one.
        """
        self.rate_gate.wait()
        try:
            response = self.model.generate_content(prompt)
        except Exception as e:
            error_msg = str(e)
            if is_daily_quota_error(error_msg):
                raise QuotaExhaustedError(error_msg) from e
            if is_rate_limit_error(e):
                raise RateLimitError(error_msg, retry_after=parse_retry_delay(error_msg)) from e
            raise
        return response.text

    def parse_response(self, response_text: str) -> Dict[str, RawAnalysis]:
        """
        Validate the model's JSON array and key it by post id.

        Items that fail validation are dropped with a warning.

        Raises:
            ResponseParseError: If the response contains no JSON array.
        """
        analyses = {}
        for item in extract_json_array(response_text):
            try:
                analysis = RawAnalysis.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Dropping invalid analysis item {truncate_text(str(item), 80)}: {e.error_count()} errors")
                continue
            analyses.setdefault(analysis.id, analysis)
        return analyses

    @staticmethod
    def _marked(items: List[Tuple[str, str]], **flags) -> List[PostAnalysis]:
        return [PostAnalysis(id=post_id, **flags) for post_id, _ in items]

    def classify_batch(self, posts: Iterable[Union[Post, Mapping[str, Any]]]) -> List[PostAnalysis]:
        """
        Classify a batch of posts with a single model call.

        Args:
            posts: Posts (or ``{id, text}`` mappings) to classify.

        Returns:
            List[PostAnalysis]: One analysis per input post, in input order.
            Every analysis is ``skipped`` when the daily quota is exhausted and
            ``failed`` when the batch could not be classified.
        """
        items = [self._as_item(post) for post in posts]
        if not items:
            return []

        if self.is_quota_exhausted():
            logger.info(f"Daily quota exhausted. Will retry in ~{self.minutes_until_reset()} minutes.")
            return self._marked(items, skipped=True)

        prompt = self.build_prompt(items)
        attempt = 0

        while True:
            try:
                logger.info(f"Sending batch of {len(items)} posts to Gemini...")
                response_text = self._call_model(prompt)
                break
            except QuotaExhaustedError:
                self._mark_quota_exhausted()
                return self._marked(items, skipped=True)
            except RateLimitError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Rate limit persisted after {self.max_retries} retries: {truncate_text(str(e), 200)}")
                    return self._marked(items, failed=True)
                attempt += 1
                retry_delay = e.retry_after or attempt * self.retry_increment
                logger.warning(f"Rate limited (attempt {attempt}/{self.max_retries}). Retrying in {retry_delay:.0f}s...")
                time.sleep(retry_delay)
            except Exception as e:
                logger.error(f"AI batch analysis error: {truncate_text(str(e), 200)}")
                return self._marked(items, failed=True)

        try:
            analyses = self.parse_response(response_text)
        except ResponseParseError as e:
            logger.error(f"Failed to parse AI response ({e}): {truncate_text(response_text, 100)}")
            return self._marked(items, failed=True)

        logger.info(f"AI analysis successful for {len(analyses)}/{len(items)} posts")

        results = []
        for post_id, _ in items:
            analysis = analyses.get(post_id)
            if analysis is None:
                results.append(PostAnalysis(id=post_id))
                continue

            results.append(PostAnalysis(
                id=post_id,
                is_issue=analysis.is_issue,
                location=sanitize_location(analysis.location),
                issue_type=analysis.issue_type,
                confidence=analysis.confidence
            ))
        return results

    def classify_post(self, text: str, post_id: str = "single") -> PostAnalysis:
        """
        Classify a single post.

        Args:
            text: Post text.
            post_id: Identifier used inside the prompt.

        Returns:
            PostAnalysis: The post's analysis.
        """
        return self.classify_batch([{'id': post_id, 'text': text}])[0]
