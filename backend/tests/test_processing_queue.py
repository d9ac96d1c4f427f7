import asyncio

import pytest

from portal.errors import QueueUnavailable
from portal.services.processing_queue import HIGH, NORMAL, ProcessingJob, ProcessingQueue


def _job(name, job_id=None):
    return ProcessingJob(file_id=name, file_path=f"/tmp/{name}", file_name=name, job_id=job_id or name)


class TestProcessingQueue:
    def test_high_priority_runs_first_and_fifo_within_tier(self):
        order = []

        async def handler(job):
            order.append(job.file_id)

        async def scenario():
            queue = ProcessingQueue(handler, concurrency=1)
            await queue.start()
            queue.enqueue(_job("n1"), NORMAL)
            queue.enqueue(_job("n2"), NORMAL)
            queue.enqueue(_job("h1"), HIGH)
            queue.enqueue(_job("h2"), HIGH)
            await queue.join()
            await queue.stop()

        asyncio.run(scenario())
        assert order == ["h1", "h2", "n1", "n2"]

    def test_duplicate_job_id_is_skipped(self):
        seen = []

        async def handler(job):
            seen.append(job.job_id)

        async def scenario():
            queue = ProcessingQueue(handler, concurrency=1)
            await queue.start()
            assert queue.enqueue(_job("a", "hash-1")) is True
            assert queue.enqueue(_job("b", "hash-1")) is False
            await queue.join()
            # Released once finished
            assert queue.enqueue(_job("c", "hash-1")) is True
            await queue.join()
            await queue.stop()

        asyncio.run(scenario())
        assert seen == ["hash-1", "hash-1"]

    def test_retry_then_success(self):
        attempts = []

        async def handler(job):
            attempts.append(job.attempts)
            if job.attempts < 3:
                raise RuntimeError("flaky")

        async def scenario():
            queue = ProcessingQueue(handler, max_attempts=3, backoff_seconds=0.01)
            await queue.start()
            queue.enqueue(_job("f"))
            await queue.join()
            await queue.stop()
            return queue.stats

        stats = asyncio.run(scenario())
        assert attempts == [1, 2, 3]
        assert stats == {"completed": 1, "failed": 0, "retried": 2}

    def test_exhausted_job_reports_last_error(self):
        exhausted = []

        async def handler(job):
            raise ValueError(f"bad attempt {job.attempts}")

        async def on_exhausted(job, exc):
            exhausted.append((job.file_id, job.attempts, job.last_error, type(exc)))

        async def scenario():
            queue = ProcessingQueue(handler, on_exhausted=on_exhausted, max_attempts=3, backoff_seconds=0.01)
            await queue.start()
            queue.enqueue(_job("f"))
            await queue.join()
            await queue.stop()

        asyncio.run(scenario())
        assert exhausted == [("f", 3, "bad attempt 3", ValueError)]

    def test_timeout_counts_as_failed_attempt(self):
        exhausted = []

        async def handler(job):
            await asyncio.sleep(1)

        async def on_exhausted(job, exc):
            exhausted.append(job.attempts)

        async def scenario():
            queue = ProcessingQueue(
                handler, on_exhausted=on_exhausted, max_attempts=2, backoff_seconds=0.01, job_timeout=0.05
            )
            await queue.start()
            queue.enqueue(_job("slow"))
            await queue.join()
            await queue.stop()

        asyncio.run(scenario())
        assert exhausted == [2]

    def test_enqueue_when_stopped(self):
        async def handler(job):
            return None

        queue = ProcessingQueue(handler)
        with pytest.raises(QueueUnavailable):
            queue.enqueue(_job("x"))
