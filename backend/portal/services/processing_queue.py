"""
In-process priority queue drained by a bounded pool of asyncio workers.

Lower priority numbers run first; within a priority, jobs run in the order
they were enqueued. A job id that is already queued, running or waiting for a
retry is not accepted a second time.
"""
import asyncio
import itertools
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from portal.errors import QueueUnavailable

logger = logging.getLogger(__name__)

HIGH = 0
NORMAL = 10


@dataclass
class ProcessingJob:
    file_id: str
    file_path: str
    file_name: str
    job_id: str
    manually_edited: bool = False
    priority: int = NORMAL
    attempts: int = 0
    last_error: str | None = None


JobHandler = Callable[[ProcessingJob], Awaitable[object]]
ExhaustedHandler = Callable[[ProcessingJob, Exception], Awaitable[None]]


class ProcessingQueue:
    def __init__(
        self,
        handler: JobHandler,
        on_exhausted: ExhaustedHandler | None = None,
        concurrency: int = 2,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        job_timeout: float | None = None,
    ):
        self.handler = handler
        self.on_exhausted = on_exhausted
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.job_timeout = job_timeout

        self._queue: asyncio.PriorityQueue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._workers: list[asyncio.Task] = []
        self._retries: set[asyncio.Task] = set()
        self.running = False
        self.stats = {"completed": 0, "failed": 0, "retried": 0}

    async def start(self):
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.PriorityQueue()
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.concurrency)]
        self.running = True
        logger.info("Processing queue started with %d workers", self.concurrency)

    async def stop(self):
        self.running = False
        tasks = [*self._workers, *self._retries]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        self._retries.clear()
        with self._lock:
            self._active.clear()
        logger.info("Processing queue stopped")

    def enqueue(self, job: ProcessingJob, priority: int = NORMAL) -> bool:
        """Queue a job. Returns False when the same job id is already in flight.

        Safe to call from the event loop or from a worker thread.
        """
        if not self.running:
            raise QueueUnavailable("Processing queue is not running")
        with self._lock:
            if job.job_id in self._active:
                logger.info("Job %s already in flight, not queued again", job.job_id)
                return False
            self._active.add(job.job_id)

        job.priority = priority
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            self._put(job)
        else:
            self._loop.call_soon_threadsafe(self._put, job)
        logger.info("Queued job %s for %s (priority %d)", job.job_id, job.file_name, priority)
        return True

    def in_flight(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def join(self):
        """Wait until every queued job, and every scheduled retry, has finished."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    def _put(self, job: ProcessingJob):
        self._queue.put_nowait((job.priority, next(self._counter), job))

    def _release(self, job: ProcessingJob):
        with self._lock:
            self._active.discard(job.job_id)

    async def _worker(self, index: int):
        while True:
            _, _, job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: ProcessingJob):
        job.attempts += 1
        try:
            if self.job_timeout:
                await asyncio.wait_for(self.handler(job), timeout=self.job_timeout)
            else:
                await self.handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.last_error = str(exc) or exc.__class__.__name__
            if job.attempts < self.max_attempts:
                self._schedule_retry(job)
                return
            self.stats["failed"] += 1
            self._release(job)
            logger.error(
                "Job %s failed after %d attempts: %s", job.job_id, job.attempts, job.last_error
            )
            if self.on_exhausted is not None:
                try:
                    await self.on_exhausted(job, exc)
                except Exception:
                    logger.exception("Could not record failure of job %s", job.job_id)
            return

        self.stats["completed"] += 1
        self._release(job)

    def _schedule_retry(self, job: ProcessingJob):
        delay = self.backoff_seconds * (2 ** (job.attempts - 1))
        self.stats["retried"] += 1
        logger.warning(
            "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
            job.job_id, job.attempts, self.max_attempts, job.last_error, delay,
        )
        task = asyncio.create_task(self._retry_later(job, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _retry_later(self, job: ProcessingJob, delay: float):
        await asyncio.sleep(delay)
        self._put(job)
