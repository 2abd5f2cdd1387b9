#!/usr/bin/env python3
"""
Sync worker pool.

A fixed number of asyncio workers share one HTTP session and one
DatabaseQueue. Each worker claims a job, runs one feed end to end, and marks
the job complete or failed. Jobs for different feeds run concurrently.
"""

import asyncio
from typing import Any, Dict, List, Optional
from uuid import uuid4

from aiohttp import ClientSession

from config import config, get_logger
from errors import StorageError
from fetcher import FeedFetcher
from jobs import retry_at_for_attempt
from sync import sync_feed
from telemetry import trace_span
from utils import now_ts

# Module-specific logger
logger = get_logger("worker")


class SyncWorkerPool:
    """Consumes feed sync jobs with bounded concurrency."""

    def __init__(self, db, fetcher: Optional[FeedFetcher] = None, concurrency: Optional[int] = None,
                 poll_interval: Optional[float] = None):
        self.db = db
        self.fetcher = fetcher or FeedFetcher()
        # An injected fetcher belongs to the caller and outlives stop()
        self._owns_fetcher = fetcher is None
        self.concurrency = concurrency or config.WORKER_CONCURRENCY
        self.poll_interval = poll_interval if poll_interval is not None else config.WORKER_POLL_INTERVAL
        self.instance_id = uuid4().hex[:8]
        self.session: Optional[ClientSession] = None
        self._tasks: List[asyncio.Task] = []
        self.running = False

    async def start(self) -> None:
        """Start the workers. Calling it again while running does nothing."""
        if self.running:
            return
        self.running = True
        self.session = ClientSession()
        self._tasks = [
            asyncio.create_task(self._run(f"worker-{self.instance_id}-{n}"))
            for n in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} sync workers")

    async def stop(self) -> None:
        """Cancel the workers and release the HTTP session and, when owned, the fetcher.

        The pool can be started again afterwards.
        """
        if not self.running:
            return
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.session:
            await self.session.close()
            self.session = None
        if self._owns_fetcher:
            await self.fetcher.close()
        logger.info("Sync workers stopped")

    async def _run(self, worker_id: str) -> None:
        while self.running:
            try:
                claimed = await self.run_next_job(worker_id, self.session)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {worker_id} error: {e}")
                claimed = False
            if not claimed:
                await asyncio.sleep(self.poll_interval)

    async def run_next_job(self, worker_id: str, session: ClientSession) -> bool:
        """Claim and process one job. Returns False when no job was available."""
        job = await self.db.execute(
            'claim_next_job',
            worker_id=worker_id,
            now=now_ts(),
            lock_timeout=config.JOB_LOCK_TIMEOUT,
        )
        if job is None:
            return False
        await self.process_job(job, session)
        return True

    @trace_span(
        "worker.process_job",
        tracer_name="worker",
        attr_from_args=lambda self, job, session: {
            "job.key": job.get('job_key'),
            "job.attempt": job.get('attempts'),
        },
    )
    async def process_job(self, job: Dict[str, Any], session: ClientSession) -> None:
        payload = job['payload']
        try:
            result = await sync_feed(self.db, self.fetcher, session, payload['user_id'], payload['feed_id'])
        except StorageError as e:
            retry_at = retry_at_for_attempt(job['attempts'])
            status = await self.db.execute('fail_job', job_id=job['id'], error=str(e), retry_at=retry_at)
            if status == 'queued':
                logger.warning(f"Job {job['job_key']} attempt {job['attempts']} failed, retrying at {retry_at}: {e}")
            else:
                logger.error(f"Job {job['job_key']} failed permanently after {job['attempts']} attempts: {e}")
            return
        except Exception as e:
            # Unexpected errors fail the job without retry and never stop the worker
            logger.exception(f"Unexpected error in job {job['job_key']}: {e}")
            await self.db.execute('fail_job', job_id=job['id'], error=f"{type(e).__name__}: {e}", retry_at=None)
            return

        await self.db.execute('complete_job', job_id=job['id'])
        logger.debug(f"Job {job['job_key']} completed: {result.status} (+{result.created})")

    async def drain(self) -> int:
        """Process jobs until none is available now. Returns the number processed."""
        own_session = self.session is None
        session = self.session or ClientSession()
        processed = 0

        async def _drain_one(worker_id: str) -> None:
            nonlocal processed
            while await self.run_next_job(worker_id, session):
                processed += 1

        try:
            await asyncio.gather(*(
                _drain_one(f"drain-{self.instance_id}-{n}") for n in range(self.concurrency)
            ))
        finally:
            if own_session:
                await session.close()
        return processed
