"""
Issue Processor Module

This module runs the pipeline cycle that turns pending posts into mapped
locations. It ties together the coordinate parser, the AI classifier, the
geocoder, and the store, and owns the single-flight guard, the quota-aware
pause, and the per-post commit policy.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from config import settings
from data.models import Coordinates, Location, Post, PostAnalysis, ProcessingStatus
from data.protocols import PostStore
from services.coordinate_parser import parse_coordinates
from services.protocols import GeocoderProtocol, IssueClassifierProtocol
from utils.helpers import truncate_text
from utils.logger import get_logger

logger = get_logger(__name__)

REASON_ALREADY_PROCESSING = "already_processing"
REASON_QUOTA_EXHAUSTED = "quota_exhausted"
REASON_QUOTA_EXHAUSTED_MID_CYCLE = "quota_exhausted_mid_cycle"
REASON_NO_PENDING = "no_pending"
REASON_ERROR = "error"


@dataclass
class CycleResult:
    """Outcome of one ``process_queue`` call."""
    skipped: bool
    reason: Optional[str] = None
    processed: int = 0
    mapped: int = 0
    degraded: int = 0
    minutes_until_reset: Optional[int] = None


@dataclass
class ProcessorStatus:
    """Monitoring snapshot consumed by the API/UI layer."""
    is_processing: bool
    last_processed_count: int
    last_cycle_time: Optional[datetime]
    ai_quota_exhausted: bool
    ai_quota_reset_minutes: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isProcessing': self.is_processing,
            'lastProcessedCount': self.last_processed_count,
            'lastCycleTime': self.last_cycle_time.isoformat() if self.last_cycle_time else None,
            'aiQuotaExhausted': self.ai_quota_exhausted,
            'aiQuotaResetMinutes': self.ai_quota_reset_minutes,
        }


class IssueProcessor:
    """
    Orchestrates one processing cycle at a time.

    A cycle moves ``idle -> running -> idle``; when the classifier reports an
    exhausted quota the cycle returns early without touching the store.
    """

    def __init__(self,
                 store: PostStore,
                 classifier: IssueClassifierProtocol,
                 geocoder: GeocoderProtocol,
                 batch_size: Optional[int] = None):
        """
        Initialize the processor.

        Args:
            store: Persistence boundary.
            classifier: Batch AI classifier.
            geocoder: Place-name geocoder.
            batch_size: Pending posts fetched per cycle, defaults to settings.PROCESSING_BATCH_SIZE.
        """
        self.store = store
        self.classifier = classifier
        self.geocoder = geocoder
        self.batch_size = batch_size or settings.PROCESSING_BATCH_SIZE

        self._lock = threading.Lock()
        self.is_processing = False
        self.last_processed_count = 0
        self.last_cycle_time = None

    def process_queue(self) -> CycleResult:
        """
        Run one processing cycle.

        Returns:
            CycleResult: Whether the cycle was skipped and why, plus how many
            posts reached a terminal status and how many were mapped.
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Issue processing already in progress. Skipping.")
            return CycleResult(skipped=True, reason=REASON_ALREADY_PROCESSING)

        self.is_processing = True
        try:
            quota = self.classifier.get_quota_status()
            if quota.exhausted:
                logger.info(f"AI quota exhausted. Skipping cycle (~{quota.minutes_until_reset} minutes until reset).")
                return CycleResult(skipped=True, reason=REASON_QUOTA_EXHAUSTED,
                                   minutes_until_reset=quota.minutes_until_reset)

            logger.info("Starting batch issue processing...")
            return self._run_cycle()

        except Exception as e:
            logger.error(f"Error in issue processor: {e}", exc_info=True)
            return CycleResult(skipped=False, reason=REASON_ERROR)

        finally:
            self.is_processing = False
            self._lock.release()

    def _run_cycle(self) -> CycleResult:
        pending_posts = self.store.get_pending_posts(self.batch_size)
        if not pending_posts:
            logger.debug("No pending posts to process")
            return CycleResult(skipped=False, reason=REASON_NO_PENDING)

        logger.info(f"Found {len(pending_posts)} pending posts")

        # Fast path: coordinates written in the text need neither AI nor geocoding
        parsed = {post.id: parse_coordinates(post.text) for post in pending_posts}
        to_classify = [post for post in pending_posts if parsed[post.id] is None]

        analyses: Dict[str, PostAnalysis] = {}
        if to_classify:
            results = self.classifier.classify_batch(to_classify)
            if results and results[0].skipped:
                logger.warning("AI quota exhausted mid-cycle. Leaving posts pending.")
                quota = self.classifier.get_quota_status()
                return CycleResult(skipped=True, reason=REASON_QUOTA_EXHAUSTED_MID_CYCLE,
                                   minutes_until_reset=quota.minutes_until_reset)
            analyses = {analysis.id: analysis for analysis in results}

        result = CycleResult(skipped=False)

        # Fetch order; each post commits on its own
        for post in pending_posts:
            analysis = analyses.get(post.id)
            status = self._finalize_post(post, parsed[post.id], analysis)
            result.processed += 1
            if parsed[post.id] is None and (analysis is None or analysis.failed):
                result.degraded += 1
            if status is ProcessingStatus.PROCESSED_MAPPED:
                result.mapped += 1

        self.last_processed_count = result.processed
        self.last_cycle_time = datetime.now()

        logger.info(f"Batch cycle complete: {result.processed} processed, {result.mapped} mapped, "
                    f"{result.degraded} without a usable analysis")
        return result

    def _finalize_post(self, post: Post, coordinates: Optional[Coordinates],
                       analysis: Optional[PostAnalysis]) -> ProcessingStatus:
        """
        Decide and record the outcome for one post.

        Returns:
            ProcessingStatus: The terminal status recorded.
        """
        if coordinates is not None:
            logger.info(f"Explicit coordinates in post {post.id}: {coordinates.lat}, {coordinates.lon}")
            location = Location(post_id=post.id, coordinates=coordinates,
                                status=settings.LOCATION_STATUS_VERIFIED)
            self.store.record_result(post.id, ProcessingStatus.PROCESSED_MAPPED, location)
            return ProcessingStatus.PROCESSED_MAPPED

        if analysis is None or analysis.failed:
            logger.warning(f"No usable analysis for post {post.id}. Recording it as no issue.")
            self.store.record_result(post.id, ProcessingStatus.PROCESSED_NO_ISSUE)
            return ProcessingStatus.PROCESSED_NO_ISSUE

        if not (analysis.is_issue and analysis.location):
            self.store.record_result(post.id, ProcessingStatus.PROCESSED_NO_ISSUE)
            return ProcessingStatus.PROCESSED_NO_ISSUE

        logger.info(f"AI issue at \"{analysis.location}\" (post {post.id}: {truncate_text(post.text, 60)})")
        coordinates = self.geocoder.geocode(analysis.location)

        if coordinates is None:
            logger.info(f"Geocoding failed for \"{analysis.location}\"")
            self.store.record_result(post.id, ProcessingStatus.PROCESSED_NO_ISSUE)
            return ProcessingStatus.PROCESSED_NO_ISSUE

        logger.info(f"Geocoded: {coordinates.lat}, {coordinates.lon}")
        location = Location(post_id=post.id, coordinates=coordinates,
                            extracted_location=analysis.location,
                            status=settings.LOCATION_STATUS_VERIFIED)
        self.store.record_result(post.id, ProcessingStatus.PROCESSED_MAPPED, location)

        # Nominatim allows one request per second
        time.sleep(self.geocoder.min_interval)
        return ProcessingStatus.PROCESSED_MAPPED

    def get_status(self) -> ProcessorStatus:
        """Get the processor's monitoring snapshot."""
        quota = self.classifier.get_quota_status()
        return ProcessorStatus(
            is_processing=self.is_processing,
            last_processed_count=self.last_processed_count,
            last_cycle_time=self.last_cycle_time,
            ai_quota_exhausted=quota.exhausted,
            ai_quota_reset_minutes=quota.minutes_until_reset
        )
