"""
Tests for the Issue Processor

Tests the processing cycle end to end against an in-memory store: the
coordinate fast path, classification and geocoding, quota handling,
single-flight protection and error containment.
"""

import threading
import pytest
from unittest.mock import MagicMock, patch
from google.api_core.exceptions import ResourceExhausted
import json
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from data.models import (
    Coordinates, CoordinateSource, PostAnalysis, ProcessingStatus, QuotaStatus
)
from services.issue_processor import (
    IssueProcessor, REASON_ALREADY_PROCESSING, REASON_ERROR, REASON_NO_PENDING,
    REASON_QUOTA_EXHAUSTED, REASON_QUOTA_EXHAUSTED_MID_CYCLE
)


@pytest.fixture
def classifier():
    """Mock classifier with quota available that answers 'no issue' for every post."""
    mock = MagicMock()
    mock.get_quota_status.return_value = QuotaStatus(exhausted=False)
    mock.classify_batch.side_effect = lambda posts: [PostAnalysis(id=p.id) for p in posts]
    return mock


@pytest.fixture
def geocoder():
    """Mock geocoder with no spacing between lookups."""
    mock = MagicMock()
    mock.min_interval = 0
    mock.geocode.return_value = None
    return mock


@pytest.fixture
def processor(memory_store, classifier, geocoder):
    return IssueProcessor(memory_store, classifier, geocoder, batch_size=10)


def analyses(*items):
    """Helper to make classify_batch return fixed analyses."""
    return lambda posts: list(items)


class TestEndToEnd:
    """Full cycles over a small batch of pending posts."""

    def test_explicit_coordinates_skip_ai_and_geocoding(self, processor, memory_store, classifier, geocoder,
                                                        post_factory):
        memory_store.save_posts([
            post_factory('1', 'Footpath dug up. Coord: 12.95, 77.60'),
            post_factory('2', 'Nice sunset'),
            post_factory('3', 'Traffic is bad')
        ])

        result = processor.process_queue()

        assert result.skipped is False
        assert result.processed == 3
        assert result.mapped == 1

        sent_ids = [p.id for p in classifier.classify_batch.call_args[0][0]]
        assert sent_ids == ['2', '3']
        geocoder.geocode.assert_not_called()

        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_MAPPED
        location = memory_store.locations['1']
        assert location.coordinates.source == CoordinateSource.EXPLICIT
        assert (location.coordinates.lat, location.coordinates.lon) == (12.95, 77.60)
        assert location.extracted_location is None

    def test_no_ai_call_when_every_post_has_coordinates(self, processor, memory_store, classifier, post_factory):
        memory_store.save_posts([post_factory('1', 'https://maps.google.com/?q=12.9716,77.5946')])

        result = processor.process_queue()

        classifier.classify_batch.assert_not_called()
        assert result.mapped == 1
        assert memory_store.locations['1'].coordinates.source == CoordinateSource.REGEX

    def test_issue_is_geocoded_and_mapped(self, processor, memory_store, classifier, geocoder, post_factory):
        memory_store.save_posts([post_factory('1', 'Broken slabs all along MG Road')])
        classifier.classify_batch.side_effect = analyses(
            PostAnalysis(id='1', is_issue=True, location='MG Road, Bangalore', confidence=0.9)
        )
        geocoder.geocode.return_value = Coordinates(12.97, 77.61, CoordinateSource.GEOCODED, "MG Road")

        with patch('services.issue_processor.time.sleep') as mock_sleep:
            result = processor.process_queue()

        geocoder.geocode.assert_called_once_with('MG Road, Bangalore')
        mock_sleep.assert_called_once_with(0)
        assert result.processed == 1
        assert result.mapped == 1
        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_MAPPED

        location = memory_store.locations['1']
        assert location.coordinates.source == CoordinateSource.GEOCODED
        assert (location.coordinates.lat, location.coordinates.lon) == (12.97, 77.61)
        assert location.extracted_location == 'MG Road, Bangalore'
        assert location.status == 'verified'

    def test_non_issue_has_no_location(self, processor, memory_store, geocoder, post_factory):
        memory_store.save_posts([post_factory('1', 'Great filter coffee in Basavanagudi')])

        result = processor.process_queue()

        assert result.processed == 1
        assert result.mapped == 0
        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_NO_ISSUE
        assert '1' not in memory_store.locations
        geocoder.geocode.assert_not_called()

    def test_issue_without_location_is_no_issue(self, processor, memory_store, classifier, geocoder, post_factory):
        memory_store.save_posts([post_factory('1', 'Footpaths in this city are terrible')])
        classifier.classify_batch.side_effect = analyses(PostAnalysis(id='1', is_issue=True, location=None))

        processor.process_queue()

        geocoder.geocode.assert_not_called()
        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_NO_ISSUE

    def test_geocoding_miss_is_no_issue(self, processor, memory_store, classifier, geocoder, post_factory):
        memory_store.save_posts([post_factory('1', 'Pothole on Nowhere Lane')])
        classifier.classify_batch.side_effect = analyses(
            PostAnalysis(id='1', is_issue=True, location='Nowhere Lane, Bangalore')
        )

        result = processor.process_queue()

        assert result.mapped == 0
        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_NO_ISSUE
        assert '1' not in memory_store.locations

    def test_rate_limited_classifier_recovers(self, memory_store, geocoder, ai_service, mock_gemini_model,
                                              gemini_response, post_factory):
        """Two 429s then a success: the cycle completes with the third answer."""
        memory_store.save_posts([post_factory('1', 'Footpath caved in at Church Street')])
        mock_gemini_model.generate_content.side_effect = [
            ResourceExhausted("Resource has been exhausted"),
            ResourceExhausted("Resource has been exhausted"),
            gemini_response(json.dumps([{"id": "1", "is_issue": True, "location": "Church Street"}]))
        ]
        geocoder.geocode.return_value = Coordinates(12.975, 77.605, CoordinateSource.GEOCODED)
        processor = IssueProcessor(memory_store, ai_service, geocoder)

        with patch('services.ai_service.time.sleep') as mock_sleep:
            result = processor.process_queue()

        assert mock_sleep.call_count == 3   # two backoffs plus the geocoder spacing
        assert [c.args[0] for c in mock_sleep.call_args_list[:2]] == [10.0, 20.0]
        geocoder.geocode.assert_called_once_with('Church Street, Bangalore')
        assert result.mapped == 1
        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_MAPPED

    def test_posts_processed_oldest_first(self, processor, memory_store, post_factory):
        from datetime import datetime
        memory_store.save_posts([
            post_factory('new', 'b', created_at=datetime(2025, 3, 1)),
            post_factory('old', 'a', created_at=datetime(2025, 1, 1))
        ])

        processor.process_queue()

        recorded = [call[1] for call in memory_store.calls if call[0] == 'record']
        assert recorded == ['old', 'new']

    def test_batch_size_limits_posts_per_cycle(self, memory_store, classifier, geocoder, post_factory):
        memory_store.save_posts([post_factory() for _ in range(5)])
        processor = IssueProcessor(memory_store, classifier, geocoder, batch_size=2)

        result = processor.process_queue()

        assert result.processed == 2
        assert len(memory_store.get_pending_posts(10)) == 3

    def test_second_cycle_finds_nothing(self, processor, memory_store, post_factory):
        """Finalized posts never re-enter the queue."""
        memory_store.save_posts([post_factory('1', 'hello')])

        processor.process_queue()
        result = processor.process_queue()

        assert result.reason == REASON_NO_PENDING
        assert result.processed == 0


class TestDegradedAnalysis:
    """Posts whose analysis failed are closed as no issue so the queue keeps moving."""

    def test_failed_analysis_recorded_as_no_issue(self, processor, memory_store, classifier, geocoder,
                                                  post_factory):
        memory_store.save_posts([
            post_factory('1', 'Coords: 12.95, 77.60'),
            post_factory('2', 'something'),
            post_factory('3', 'something else')
        ])
        classifier.classify_batch.side_effect = lambda posts: [PostAnalysis(id=p.id, failed=True) for p in posts]

        result = processor.process_queue()

        assert result.processed == 3
        assert result.mapped == 1
        assert result.degraded == 2
        assert memory_store.status_of('2') == ProcessingStatus.PROCESSED_NO_ISSUE
        assert memory_store.status_of('3') == ProcessingStatus.PROCESSED_NO_ISSUE
        geocoder.geocode.assert_not_called()

    def test_missing_analysis_recorded_as_no_issue(self, processor, memory_store, classifier, post_factory):
        memory_store.save_posts([post_factory('1', 'text')])
        classifier.classify_batch.side_effect = analyses()

        result = processor.process_queue()

        assert result.degraded == 1
        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_NO_ISSUE

    def test_failing_batch_does_not_block_newer_posts(self, memory_store, classifier, geocoder, post_factory):
        """A full batch of posts the classifier always fails on is cleared in one cycle."""
        from datetime import datetime, timedelta
        start = datetime(2025, 1, 1)
        memory_store.save_posts([
            post_factory(str(i), 'unreadable', created_at=start + timedelta(minutes=i)) for i in range(10)
        ])
        memory_store.save_posts([
            post_factory('99', 'Footpath broken near Trinity Circle', created_at=start + timedelta(days=1))
        ])

        def classify(posts):
            return [PostAnalysis(id=p.id, failed=True) if p.id != '99'
                    else PostAnalysis(id='99', is_issue=True, location='Trinity Circle, Bangalore')
                    for p in posts]

        classifier.classify_batch.side_effect = classify
        geocoder.geocode.return_value = Coordinates(12.973, 77.617, CoordinateSource.GEOCODED)
        processor = IssueProcessor(memory_store, classifier, geocoder, batch_size=10)

        first = processor.process_queue()
        second = processor.process_queue()

        assert first.degraded == 10
        assert [p.id for p in classifier.classify_batch.call_args_list[1][0][0]] == ['99']
        assert second.mapped == 1
        assert memory_store.status_of('99') == ProcessingStatus.PROCESSED_MAPPED
        assert memory_store.get_pending_posts(10) == []


class TestQuotaHandling:
    """Quota exhaustion pauses work without touching the store."""

    def test_quota_exhausted_before_cycle(self, memory_store, classifier, geocoder, post_factory):
        memory_store.save_posts([post_factory('1', 'text')])
        classifier.get_quota_status.return_value = QuotaStatus(exhausted=True, minutes_until_reset=42)
        store = MagicMock(wraps=memory_store)
        processor = IssueProcessor(store, classifier, geocoder)

        result = processor.process_queue()

        assert result.skipped is True
        assert result.reason == REASON_QUOTA_EXHAUSTED
        assert result.minutes_until_reset == 42
        store.get_pending_posts.assert_not_called()
        classifier.classify_batch.assert_not_called()

    def test_quota_exhausted_mid_cycle(self, processor, memory_store, classifier, post_factory):
        memory_store.save_posts([
            post_factory('1', 'Coords: 12.95, 77.60'),
            post_factory('2', 'text')
        ])
        classifier.classify_batch.side_effect = lambda posts: [PostAnalysis(id=p.id, skipped=True) for p in posts]
        classifier.get_quota_status.side_effect = [
            QuotaStatus(exhausted=False),
            QuotaStatus(exhausted=True, minutes_until_reset=60)
        ]

        result = processor.process_queue()

        assert result.skipped is True
        assert result.reason == REASON_QUOTA_EXHAUSTED_MID_CYCLE
        assert result.minutes_until_reset == 60
        # Nothing written, not even the post that had coordinates
        assert memory_store.calls == []
        assert memory_store.status_of('1') == ProcessingStatus.PENDING


class TestSingleFlight:
    """Only one cycle runs at a time."""

    def test_concurrent_call_is_skipped(self, memory_store, classifier, geocoder, post_factory):
        memory_store.save_posts([post_factory('1', 'text')])
        started = threading.Event()
        release = threading.Event()

        def slow_classify(posts):
            started.set()
            release.wait(5)
            return [PostAnalysis(id=p.id) for p in posts]

        classifier.classify_batch.side_effect = slow_classify
        store = MagicMock(wraps=memory_store)
        processor = IssueProcessor(store, classifier, geocoder)

        results = []
        worker = threading.Thread(target=lambda: results.append(processor.process_queue()))
        worker.start()
        assert started.wait(5)

        assert processor.get_status().is_processing is True
        second = processor.process_queue()

        release.set()
        worker.join(5)

        assert second.skipped is True
        assert second.reason == REASON_ALREADY_PROCESSING
        assert store.get_pending_posts.call_count == 1
        assert results[0].processed == 1
        assert processor.is_processing is False


class TestErrorContainment:
    """Store failures end the cycle but never escape process_queue."""

    def test_store_error_ends_cycle_and_releases_lock(self, processor, memory_store, post_factory, capture_logs):
        memory_store.save_posts([
            post_factory('1', 'Coords: 12.95, 77.60'),
            post_factory('2', 'Coords: 12.96, 77.61'),
            post_factory('3', 'Coords: 12.97, 77.62')
        ])
        memory_store.fail_on_record = '2'

        result = processor.process_queue()

        assert result.skipped is False
        assert result.reason == REASON_ERROR
        # Committed posts keep their status; later posts stay pending
        assert memory_store.status_of('1') == ProcessingStatus.PROCESSED_MAPPED
        assert memory_store.status_of('3') == ProcessingStatus.PENDING
        assert any(record.exc_info for record in capture_logs if record.levelname == 'ERROR')

        memory_store.fail_on_record = None
        retry = processor.process_queue()
        assert retry.reason is None
        assert retry.processed == 2

    def test_classifier_exception_contained(self, processor, memory_store, classifier, post_factory):
        memory_store.save_posts([post_factory('1', 'text')])
        classifier.classify_batch.side_effect = RuntimeError("boom")

        result = processor.process_queue()

        assert result.reason == REASON_ERROR
        assert processor.is_processing is False


class TestStatus:
    """Tests for the monitoring snapshot."""

    def test_initial_status(self, processor):
        status = processor.get_status().to_dict()

        assert status == {
            'isProcessing': False,
            'lastProcessedCount': 0,
            'lastCycleTime': None,
            'aiQuotaExhausted': False,
            'aiQuotaResetMinutes': None
        }

    def test_status_after_cycle(self, processor, memory_store, classifier, post_factory):
        memory_store.save_posts([post_factory('1', 'a'), post_factory('2', 'b')])
        processor.process_queue()
        classifier.get_quota_status.return_value = QuotaStatus(exhausted=True, minutes_until_reset=15)

        status = processor.get_status().to_dict()

        assert status['lastProcessedCount'] == 2
        assert status['lastCycleTime'] is not None
        assert status['aiQuotaExhausted'] is True
        assert status['aiQuotaResetMinutes'] == 15
