#!/usr/bin/env python3
"""
Feed sync service entrypoint.

Modes:
  run          start the database, the worker pool and the scheduler; run until interrupted
  sync-once    enqueue stale feeds and process the queue once
  sync-feed    queue and process a single feed now
  archive      run the auto-archive sweep for every user once
  apply-rules  re-apply a feed's filter rules to its unread articles
  retry        reset a broken feed and queue it for sync
  status       print feed health, queue counts and configuration
"""

import argparse
import asyncio
import json
import signal
import sys
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Dict

from archive import auto_archive_for_all_users
from config import config, get_logger
from filter_rules import apply_filter_rules_to_existing_articles
from health import retry_feed
from jobs import force_enqueue_feed_sync
from models import DatabaseQueue
from scheduler import create_scheduler, enqueue_stale_feeds
from telemetry import init_telemetry, trace_span
from utils import format_duration
from worker import SyncWorkerPool

# Module-specific logger
logger = get_logger("main")


class FeedSyncService:
    """Owns the process-wide database queue, worker pool and scheduler."""

    def __init__(self, db_path: str = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.workers = SyncWorkerPool(self.db)
        self.scheduler = create_scheduler(self.db)

    async def run_forever(self) -> None:
        """Start every component and block until cancelled or signalled."""
        await self.db.start()
        await self.workers.start()
        self.scheduler.start()

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        logger.info("Feed sync service running")
        try:
            await stop.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.workers.stop()
        await self.db.stop()
        logger.info("Feed sync service stopped")

    @trace_span("sync_once", tracer_name="main")
    async def sync_once(self) -> int:
        started = monotonic()
        await self.db.start()
        try:
            enqueued = await enqueue_stale_feeds(self.db)
            processed = await self.workers.drain()
        finally:
            await self.workers.fetcher.close()
            await self.db.stop()
        logger.info(f"Sync pass finished in {format_duration(monotonic() - started)}: "
                    f"{enqueued} feeds enqueued, {processed} jobs processed")
        return processed

    async def sync_feed(self, feed_id: int) -> bool:
        await self.db.start()
        try:
            feed = await self.db.execute('get_feed', feed_id=feed_id)
            if feed is None:
                logger.error(f"Feed {feed_id} not found")
                return False
            await force_enqueue_feed_sync(self.db, feed['user_id'], feed_id)
            await self.workers.drain()
            health = await self.db.execute('get_feed_health', feed_id=feed_id)
            logger.info(f"Feed {feed_id} sync status: {health['sync_status']}")
            return health['sync_status'] != 'broken'
        finally:
            await self.workers.fetcher.close()
            await self.db.stop()

    async def archive(self) -> int:
        await self.db.start()
        try:
            results = await auto_archive_for_all_users(self.db)
            return sum(r.marked_count for r in results.values())
        finally:
            await self.db.stop()

    async def apply_rules(self, feed_id: int) -> Dict[str, int]:
        await self.db.start()
        try:
            return await apply_filter_rules_to_existing_articles(self.db, feed_id)
        finally:
            await self.db.stop()

    async def retry(self, feed_id: int) -> bool:
        await self.db.start()
        try:
            return await retry_feed(self.db, feed_id)
        finally:
            await self.db.stop()

    async def check_status(self) -> Dict[str, Any]:
        await self.db.start()
        try:
            return {
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'feeds': await self.db.execute('count_feeds_by_status'),
                'jobs': await self.db.execute('count_jobs_by_status'),
                'schedule': self.scheduler.get_schedule_status(),
                'config': config.get_config_summary(),
            }
        finally:
            await self.db.stop()


def print_status(status: Dict[str, Any]) -> None:
    feeds = status['feeds']
    jobs = status['jobs']
    print(f"\nFeed sync status at {status['timestamp']}")
    print(f"  Feeds: {feeds['ok']} ok, {feeds['failing']} failing, {feeds['broken']} broken")
    print(f"  Jobs:  {jobs['queued']} queued, {jobs['running']} running, "
          f"{jobs['succeeded']} succeeded, {jobs['failed']} failed")
    for task in status['schedule']['tasks']:
        print(f"  Schedule {task['name']}: {task['cron']} ({status['schedule']['timezone']})")
    print("  Config: " + json.dumps(status['config'], sort_keys=True))


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed sync service')
    parser.add_argument('mode', choices=['run', 'sync-once', 'sync-feed', 'archive', 'apply-rules', 'retry', 'status'],
                        help='Operation mode')
    parser.add_argument('feed_id', nargs='?', type=int,
                        help='Feed id (sync-feed, apply-rules and retry modes)')
    parser.add_argument('--database', type=str,
                        help='SQLite database path (defaults to DATABASE_PATH)')
    args = parser.parse_args()

    if args.mode in ('sync-feed', 'apply-rules', 'retry') and args.feed_id is None:
        parser.error(f"{args.mode} requires a feed_id")

    init_telemetry("feed-sync")
    service = FeedSyncService(args.database)

    try:
        if args.mode == 'run':
            asyncio.run(service.run_forever())
        elif args.mode == 'sync-once':
            asyncio.run(service.sync_once())
        elif args.mode == 'sync-feed':
            sys.exit(0 if asyncio.run(service.sync_feed(args.feed_id)) else 1)
        elif args.mode == 'archive':
            archived = asyncio.run(service.archive())
            print(f"Archived {archived} articles")
        elif args.mode == 'apply-rules':
            result = asyncio.run(service.apply_rules(args.feed_id))
            print(f"Processed {result['articles_processed']} unread articles, "
                  f"marked {result['articles_marked_as_read']} as read")
        elif args.mode == 'retry':
            sys.exit(0 if asyncio.run(service.retry(args.feed_id)) else 1)
        elif args.mode == 'status':
            print_status(asyncio.run(service.check_status()))
    except KeyboardInterrupt:
        logger.info("Feed sync service shutting down")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
