"""In-process scrape job queue with delayed dispatch and retries."""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from pricewatch.config import settings
from pricewatch.ingest.base import ScrapeJob, ScrapeOutcome
from pricewatch.ingest.browser_pool import PagePool
from pricewatch.ingest.executor import ScrapeExecutor
from pricewatch.ingest.rate_limiter import RateLimiter
from pricewatch.metrics import queue_retries_total, record_job_finished, update_queue_depth
from pricewatch.worker.pipeline import ScrapePipeline

logger = logging.getLogger(__name__)


@dataclass
class QueueStats:
    """Snapshot of queue counters."""

    waiting: int = 0  # Ready to run now
    delayed: int = 0  # Waiting for their not-before time
    active: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0


class JobQueue:
    """
    Priority job queue drained by a fixed pool of asyncio workers.

    Jobs sit in a delayed heap until their not-before time, then move to a
    ready heap ordered by priority (higher first) and insertion order.
    Only one job per tracked item runs at a time; a duplicate that comes up
    while its item is in flight is pushed back one spacing interval.
    """

    def __init__(
        self,
        executor: ScrapeExecutor,
        pipeline: ScrapePipeline,
        pool: Optional[PagePool] = None,
        rate_limiter: Optional[RateLimiter] = None,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
    ):
        self.executor = executor
        self.pipeline = pipeline
        self.pool = pool
        self.rate_limiter = rate_limiter or RateLimiter()
        self.concurrency = concurrency or settings.queue_concurrency
        self.max_attempts = max_attempts or settings.max_attempts
        self.backoff_base_seconds = (
            settings.backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )

        self._delayed: list[tuple[float, int, ScrapeJob]] = []
        self._ready: list[tuple[int, int, ScrapeJob]] = []
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._in_flight: set[int] = set()
        self._workers: list[asyncio.Task] = []
        self._wake_tasks: set[asyncio.Task] = set()
        self._running = False

        self._active = 0
        self._completed = 0
        self._failed = 0
        self._retried = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def backoff_seconds(self, attempt: int) -> float:
        """Retry delay after the given (1-based) failed attempt."""
        return self.backoff_base_seconds * (2 ** (attempt - 1))

    def _push_delayed(self, job: ScrapeJob, delay_seconds: float) -> None:
        not_before = time.monotonic() + max(delay_seconds, 0.0)
        heapq.heappush(self._delayed, (not_before, next(self._seq), job))

    def _promote_due(self) -> Optional[float]:
        """Move due delayed jobs to the ready heap; return seconds until the next one."""
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (-job.priority, seq, job))
        if self._delayed:
            return max(self._delayed[0][0] - now, 0.0)
        return None

    def _wake(self) -> None:
        if self._cond.locked():
            self._cond.notify_all()
            return

        async def _notify():
            async with self._cond:
                self._cond.notify_all()

        try:
            task = asyncio.get_running_loop().create_task(_notify())
        except RuntimeError:
            return  # No loop yet; workers check the heaps when they start
        self._wake_tasks.add(task)
        task.add_done_callback(self._wake_tasks.discard)

    def enqueue(self, job: ScrapeJob, delay_ms: Optional[int] = None) -> None:
        """
        Add a job to the queue.

        Args:
            job: Job to run
            delay_ms: Delay before the job may run. Defaults to the
                marketplace spacing, ceil(60000 / requests_per_minute).
        """
        if delay_ms is None:
            delay_ms = self.rate_limiter.delay_ms_for(job.marketplace)
        self._push_delayed(job, delay_ms / 1000)
        logger.debug(f"Enqueued {job.name} (priority {job.priority}, delay {delay_ms}ms)")
        self._wake()
        self._update_depth()

    def enqueue_batch(self, jobs: Iterable[ScrapeJob]) -> int:
        """Enqueue many jobs; returns the number enqueued."""
        count = 0
        for job in jobs:
            delay_ms = self.rate_limiter.delay_ms_for(job.marketplace)
            self._push_delayed(job, delay_ms / 1000)
            count += 1
        if count:
            logger.info(f"Enqueued batch of {count} scrape jobs")
            self._wake()
            self._update_depth()
        return count

    async def start(self, concurrency: Optional[int] = None) -> None:
        """
        Start the page pool and the worker tasks.

        Raises:
            PoolUnavailableError: If the page pool cannot start
        """
        if self._running:
            return

        if self.pool is not None:
            await self.pool.start()

        if concurrency:
            self.concurrency = concurrency
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(f"worker-{i}"))
            for i in range(self.concurrency)
        ]
        logger.info(f"Job queue started with {self.concurrency} workers")

    async def stop(self) -> None:
        """Stop pulling jobs, let in-flight jobs finish, then close the pool."""
        if not self._running:
            return

        self._running = False
        async with self._cond:
            self._cond.notify_all()

        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self.pool is not None:
            await self.pool.close()
        logger.info("Job queue stopped")

    async def join(self, poll_interval: float = 0.01) -> None:
        """Wait until no job is waiting, delayed or active."""
        while self._ready or self._delayed or self._active:
            await asyncio.sleep(poll_interval)

    async def _next_job(self) -> Optional[ScrapeJob]:
        async with self._cond:
            while self._running:
                self._promote_due()

                while self._ready:
                    _, _, job = heapq.heappop(self._ready)
                    if job.item_id in self._in_flight:
                        spacing = self.rate_limiter.interval_for(job.marketplace)
                        self._push_delayed(job, spacing)
                        logger.debug(f"{job.name} already in flight, deferring {spacing:.1f}s")
                        continue
                    self._in_flight.add(job.item_id)
                    self._active += 1
                    return job

                # Deferred duplicates may have changed the next wake-up time
                timeout = self._promote_due()
                if self._ready:
                    continue
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout)
                except asyncio.TimeoutError:
                    pass
            return None

    async def _worker(self, name: str) -> None:
        logger.debug(f"{name} started")
        while self._running:
            job = await self._next_job()
            if job is None:
                break
            self._update_depth()
            try:
                await self._process(job)
            except Exception as e:
                logger.error(f"{name} failed processing {job.name}: {e}", exc_info=True)
            finally:
                self._in_flight.discard(job.item_id)
                self._active -= 1
                self._update_depth()
        logger.debug(f"{name} stopped")

    async def _run(self, job: ScrapeJob) -> ScrapeOutcome:
        try:
            await self.rate_limiter.acquire(job.marketplace)
            outcome = await self.executor.execute(job.url, job.marketplace)
            if outcome.success:
                await self.pipeline.record_success(job.item_id, outcome.snapshot)
            return outcome
        except Exception as e:
            logger.error(f"Error running {job.name}: {e}", exc_info=True)
            return ScrapeOutcome.failed(str(e), error_type=type(e).__name__, retryable=True)

    async def _process(self, job: ScrapeJob) -> None:
        attempt = job.attempt + 1
        outcome = await self._run(job)

        if outcome.success:
            self._completed += 1
            record_job_finished(job.marketplace, True)
            return

        if outcome.retryable and attempt < self.max_attempts:
            delay = self.backoff_seconds(attempt)
            retry = replace(job, attempt=attempt)
            async with self._cond:
                self._push_delayed(retry, delay)
                self._cond.notify_all()
            self._retried += 1
            queue_retries_total.labels(marketplace=job.marketplace).inc()
            logger.info(
                f"Retrying {job.name} in {delay:.1f}s (attempt {attempt}/{self.max_attempts}): "
                f"{outcome.error_type}"
            )
            return

        self._failed += 1
        record_job_finished(job.marketplace, False)
        logger.warning(
            f"{job.name} failed after {attempt} attempt(s): {outcome.error_type}: {outcome.error}"
        )
        try:
            await self.pipeline.record_failure(job.item_id, outcome.error or outcome.error_type or "")
        except Exception as e:
            logger.error(f"Failed to record failure for item {job.item_id}: {e}", exc_info=True)

    def stats(self) -> QueueStats:
        return QueueStats(
            waiting=len(self._ready),
            delayed=len(self._delayed),
            active=self._active,
            completed=self._completed,
            failed=self._failed,
            retried=self._retried,
        )

    def _update_depth(self) -> None:
        update_queue_depth(len(self._ready), len(self._delayed), self._active)
