"""
Twitter Service Module

This module handles ingestion from the Twitter/X API.
It fetches the tracked account's recent tweets, including their media
attachments, and turns them into pending Post records for the pipeline.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import tweepy

from config import settings
from data.models import Post, ProcessingStatus
from utils.exceptions import IngestionError
from utils.logger import get_logger

logger = get_logger(__name__)


class TwitterService:
    """Service for reading a single account's timeline from Twitter/X."""

    def __init__(self,
                 bearer_token: Optional[str] = None,
                 username: Optional[str] = None,
                 client: Optional[Any] = None):
        """
        Initialize the Twitter service with API authentication.

        Args:
            bearer_token: App-only bearer token, defaults to settings.TWITTER_BEARER_TOKEN.
            username: Account whose timeline is ingested, defaults to settings.TWITTER_USERNAME.
            client: Pre-built tweepy.Client (used by tests).
        """
        self.bearer_token = bearer_token or settings.TWITTER_BEARER_TOKEN
        self.username = username or settings.TWITTER_USERNAME
        self.client = client

        if self.client is None:
            self._setup_twitter()

    def _setup_twitter(self) -> bool:
        """
        Set up Twitter API v2 authentication using Tweepy.

        Returns:
            bool: True if a client was created, False otherwise.
        """
        if not self.bearer_token:
            logger.error("No Twitter bearer token configured. Ingestion is disabled.")
            return False

        # OAuth 2.0 Bearer Token (app-only auth) is enough to read public timelines
        self.client = tweepy.Client(bearer_token=self.bearer_token, wait_on_rate_limit=True)
        logger.info("Twitter client initialized with bearer token")
        return True

    def _get_user_id(self) -> str:
        response = self.client.get_user(username=self.username)
        if not response or not response.data:
            raise IngestionError(f"User @{self.username} not found")
        return response.data.id

    @staticmethod
    def get_media_urls(tweet: Any, media_by_key: Dict[str, Any]) -> List[str]:
        """
        Get media URLs from a tweet, in attachment order.

        Photos contribute their URL and videos their preview image.

        Args:
            tweet: A tweepy Tweet.
            media_by_key: Media objects from the response includes, keyed by media_key.

        Returns:
            List[str]: Media URLs (possibly empty).
        """
        attachments = getattr(tweet, 'attachments', None) or {}
        media_urls = []

        for media_key in attachments.get('media_keys', []):
            media = media_by_key.get(media_key)
            if media is None:
                continue
            if media.type == 'photo' and getattr(media, 'url', None):
                media_urls.append(media.url)
            elif media.type in ('video', 'animated_gif') and getattr(media, 'preview_image_url', None):
                media_urls.append(media.preview_image_url)

        return media_urls

    def to_post(self, tweet: Any, media_by_key: Dict[str, Any]) -> Post:
        """Convert a tweepy Tweet into a pending Post."""
        return Post(
            id=str(tweet.id),
            text=tweet.text,
            created_at=tweet.created_at,
            media_urls=self.get_media_urls(tweet, media_by_key),
            processing_status=ProcessingStatus.PENDING
        )

    def fetch_recent_posts(self, days: Optional[int] = None,
                           since_id: Optional[str] = None) -> List[Post]:
        """
        Fetch recent tweets from the tracked account.

        Args:
            days: Look-back window, defaults to settings.INGEST_LOOKBACK_DAYS.
                  Ignored when since_id is given.
            since_id: Only fetch tweets newer than this id.

        Returns:
            List[Post]: Pending posts, newest first as returned by the API.

        Raises:
            IngestionError: If the client is missing or the API call fails.
        """
        if not self.client:
            raise IngestionError("Twitter client not initialized")

        request = {
            'max_results': settings.INGEST_MAX_RESULTS,
            'tweet_fields': ['created_at', 'attachments'],
            'media_fields': ['url', 'preview_image_url', 'type'],
            'expansions': ['attachments.media_keys']
        }
        if since_id:
            request['since_id'] = since_id
        else:
            days = days or settings.INGEST_LOOKBACK_DAYS
            request['start_time'] = datetime.now(timezone.utc) - timedelta(days=days)

        try:
            user_id = self._get_user_id()
            posts = []

            for response in tweepy.Paginator(self.client.get_users_tweets, user_id,
                                             limit=settings.INGEST_MAX_PAGES, **request):
                if not response.data:
                    continue

                includes = response.includes or {}
                media_by_key = {media.media_key: media for media in includes.get('media', [])}
                posts.extend(self.to_post(tweet, media_by_key) for tweet in response.data)

        except IngestionError:
            raise
        except tweepy.TweepyException as e:
            logger.error(f"Error fetching tweets for @{self.username}: {e}")
            raise IngestionError(str(e)) from e

        logger.info(f"Fetched {len(posts)} tweets from @{self.username}")
        return posts
