"""
Issue Mapper Application

This is the main entry point for the Issue Mapper application.
It ingests recent posts from Twitter/X, runs the processing cycle that
classifies them and geocodes reported footpath issues, and stores the
resulting map locations.
"""

import sys
import json
import time
import argparse
import logging
from typing import Optional

from config import settings
from config.validators import validate_settings
from utils.logger import get_logger, setup_file_logging
from utils.exceptions import IssueMapperError, IngestionError, DatabaseError
from data.database import DatabaseConnection
from services.ai_service import AIService
from services.geocoding_service import GeocodingService
from services.issue_processor import IssueProcessor, CycleResult, REASON_ERROR, REASON_NO_PENDING
from services.protocols import PostSourceProtocol
from services.twitter_service import TwitterService

# Set up logging
logger = get_logger(__name__)


def create_processor(store: DatabaseConnection) -> IssueProcessor:
    """Build an IssueProcessor wired to the live AI and geocoding clients."""
    return IssueProcessor(store, AIService(), GeocodingService())


class IssueMapper:
    """
    Main application class for the Issue Mapper.

    This class wires the store, the ingestion source, and the processor
    together and drives them for the command-line runner.
    """

    def __init__(self,
                 store: Optional[DatabaseConnection] = None,
                 processor: Optional[IssueProcessor] = None,
                 twitter_service: Optional[PostSourceProtocol] = None):
        """Initialize the Issue Mapper application."""
        self.store = store or DatabaseConnection()
        self.processor = processor or create_processor(self.store)
        self.twitter_service = twitter_service

    def ingest(self) -> int:
        """
        Fetch new posts and store them as pending.

        Returns:
            int: Number of posts saved.
        """
        if self.twitter_service is None:
            self.twitter_service = TwitterService()

        since_id = self.store.get_latest_post_id()
        if since_id:
            logger.info(f"Fetching posts newer than {since_id}")
        else:
            logger.info(f"No stored posts, fetching the last {settings.INGEST_LOOKBACK_DAYS} days")

        posts = self.twitter_service.fetch_recent_posts(since_id=since_id)
        return self.store.save_posts(posts)

    def run_cycle(self) -> bool:
        """
        Run one processing cycle.

        Returns:
            bool: True if the cycle ran cleanly, False if it was skipped or failed.
        """
        result = self.processor.process_queue()
        self._log_result(result)
        if result.reason == REASON_NO_PENDING:
            return True
        return not result.skipped and result.reason != REASON_ERROR

    def run_loop(self, interval: float, max_cycles: Optional[int] = None) -> bool:
        """
        Run processing cycles until interrupted.

        Args:
            interval: Seconds to wait between cycles.
            max_cycles: Stop after this many cycles (None runs forever).

        Returns:
            bool: True if the last cycle ran cleanly.
        """
        logger.info(f"Processing every {interval} seconds. Press Ctrl+C to stop.")
        cycles = 0
        success = True
        try:
            while max_cycles is None or cycles < max_cycles:
                success = self.run_cycle()
                cycles += 1
                if max_cycles is None or cycles < max_cycles:
                    time.sleep(interval)
        except KeyboardInterrupt:
            logger.info("Stopping processing loop")
        return success

    def report_status(self) -> dict:
        """Collect the processor snapshot and the store's per-status counts."""
        report = {
            'processor': self.processor.get_status().to_dict(),
            'stats': self.store.get_processing_stats()
        }
        logger.info(f"Status: {json.dumps(report, default=str)}")
        return report

    @staticmethod
    def _log_result(result: CycleResult) -> None:
        if result.skipped:
            message = f"Cycle skipped ({result.reason})"
            if result.minutes_until_reset is not None:
                message += f", AI quota resets in ~{result.minutes_until_reset} minutes"
            logger.warning(message)
        elif result.reason == REASON_ERROR:
            logger.error("Cycle ended with an error")
        elif result.reason != REASON_NO_PENDING:
            logger.info(f"Cycle processed {result.processed} posts, mapped {result.mapped}, "
                        f"{result.degraded} without a usable analysis")


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Issue Mapper Application')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--once', action='store_true', help='Run a single processing cycle (default)')
    mode.add_argument('--loop', action='store_true', help='Run processing cycles until interrupted')
    parser.add_argument('--interval', type=float, default=settings.PROCESSING_INTERVAL_SECONDS,
                        help='Seconds between cycles in loop mode')
    parser.add_argument('--fetch', action='store_true', help='Ingest new posts before processing')
    parser.add_argument('--status', action='store_true', help='Report processing status and exit')
    parser.add_argument('--init-db', action='store_true', help='Create database tables before running')
    parser.add_argument('--log-file', type=str, default='issue_mapper.log', help='Log file path')
    parser.add_argument('--log-level', type=str, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='INFO', help='Logging level')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for the application."""
    # Parse command line arguments
    args = parse_arguments(argv)

    # Set up logging
    log_level = getattr(logging, args.log_level)
    setup_file_logging(args.log_file, log_level)

    # Log application start
    logger.info("Starting Issue Mapper application")
    logger.info(f"Configuration: {settings.get_config_summary()}")

    mapper = None
    try:
        validate_settings(require_twitter=args.fetch)
        mapper = IssueMapper()

        if args.init_db:
            mapper.store.init_db()

        if args.status:
            mapper.report_status()
            success = True
        else:
            success = True
            if args.fetch:
                try:
                    saved = mapper.ingest()
                    logger.info(f"Ingested {saved} posts")
                except IngestionError as e:
                    logger.error(f"Ingestion failed: {e}")
                    success = False

            if args.loop:
                success = mapper.run_loop(args.interval) and success
            else:
                success = mapper.run_cycle() and success

        # Report status
        if success:
            logger.info("Issue Mapper completed successfully")
            exit_code = 0
        else:
            logger.warning("Issue Mapper completed with warnings or errors")
            exit_code = 1

    except DatabaseError as e:
        logger.error(f"Database error: {e}", exc_info=True)
        exit_code = 2
    except IssueMapperError as e:
        logger.error(f"Issue Mapper error: {e}", exc_info=True)
        exit_code = 2
    except Exception as e:
        logger.error(f"Unhandled exception in Issue Mapper: {e}", exc_info=True)
        exit_code = 2
    finally:
        if mapper is not None:
            mapper.store.close()

    # Log application end
    logger.info(f"Issue Mapper application finished with exit code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
