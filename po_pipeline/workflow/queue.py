"""In-process job queue with retry and dead-letter handling.

Jobs are delivered at least once. A failed job is re-enqueued after an
exponential backoff while its error is retryable and attempts remain;
otherwise it is written to ``dlq:{job_id}`` for manual inspection.
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..core.exceptions import is_retryable
from ..core.models import DeadLetterRecord, ExtractionJob
from ..core.rate_limit import backoff_delay
from .store import SQLiteStateStore, dead_letter_key

logger = logging.getLogger(__name__)

JobHandler = Callable[[ExtractionJob], Awaitable[Any]]


class RetryPolicy(BaseModel):
    """Delivery attempts and backoff between them."""
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next delivery after ``attempts_made`` failures."""
        return backoff_delay(max(0, attempts_made - 1), self.base_delay, self.max_delay, self.jitter)

    def should_retry(self, error: BaseException, attempts_made: int) -> bool:
        return is_retryable(error) and attempts_made < self.max_attempts


class JobQueue:
    """Priority queue of extraction jobs served by a pool of workers.

    Lower ``priority`` values are served first; equal priorities keep
    insertion order.
    """

    def __init__(
        self,
        handler: JobHandler,
        store: SQLiteStateStore,
        policy: Optional[RetryPolicy] = None,
        worker_concurrency: int = 2
    ):
        if worker_concurrency < 1:
            raise ValueError("worker_concurrency must be at least 1")

        self.handler = handler
        self.store = store
        self.policy = policy or RetryPolicy()
        self.worker_concurrency = worker_concurrency

        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._delayed: Set[asyncio.Task] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self.results: Dict[str, Any] = {}
        self.dead_letters: List[DeadLetterRecord] = []
        self.deliveries = 0

    async def enqueue(self, job: ExtractionJob, delay: float = 0.0) -> None:
        """Add ``job``; with ``delay`` it becomes visible only after that many seconds."""
        self._outstanding += 1
        self._idle.clear()

        if delay > 0:
            task = asyncio.create_task(self._put_later(job, delay))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            return

        await self._queue.put((job.priority, next(self._sequence), job))
        logger.debug(f"[QUEUE] Enqueued {job.job_id} (attempts made: {job.attempts_made})")

    async def _put_later(self, job: ExtractionJob, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put((job.priority, next(self._sequence), job))
        logger.debug(f"[QUEUE] Released {job.job_id} after {delay:.2f}s")

    async def run_until_empty(self) -> Dict[str, Any]:
        """Serve jobs until nothing is queued, delayed or running.

        Returns:
            Results of successful jobs keyed by job id
        """
        workers = [
            asyncio.create_task(self._worker(worker_id))
            for worker_id in range(self.worker_concurrency)
        ]
        try:
            await self._idle.wait()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        logger.info(
            f"[QUEUE] Drained: {len(self.results)} succeeded, {len(self.dead_letters)} dead-lettered, "
            f"{self.deliveries} deliveries"
        )
        return self.results

    async def _worker(self, worker_id: int) -> None:
        while True:
            _, _, job = await self._queue.get()
            try:
                await self._process(job, worker_id)
            finally:
                self._queue.task_done()
                self._outstanding -= 1
                if self._outstanding == 0:
                    self._idle.set()

    async def _process(self, job: ExtractionJob, worker_id: int) -> None:
        self.deliveries += 1
        attempts = job.attempts_made + 1
        logger.info(f"[QUEUE] Worker {worker_id} processing {job.job_id} (attempt {attempts}/{self.policy.max_attempts})")

        try:
            self.results[job.job_id] = await self.handler(job)
        except Exception as e:
            if self.policy.should_retry(e, attempts):
                delay = self.policy.delay_for(attempts)
                logger.warning(
                    f"[QUEUE] {job.job_id} failed with {type(e).__name__}: {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await self.enqueue(job.model_copy(update={"attempts_made": attempts}), delay)
            else:
                await self._dead_letter(job, e, attempts)

    async def _dead_letter(self, job: ExtractionJob, error: Exception, attempts: int) -> None:
        record = DeadLetterRecord(
            job=job.model_copy(update={"attempts_made": attempts}),
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            attempts=attempts,
            retryable=is_retryable(error),
        )
        self.dead_letters.append(record)
        logger.error(
            f"[QUEUE] {job.job_id} dead-lettered after {attempts} attempt(s): "
            f"{record.error_type}: {record.error}"
        )

        try:
            await self.store.set(dead_letter_key(job.job_id), record.model_dump(mode="json"))
        except Exception as write_error:
            logger.error(f"[QUEUE] Could not persist dead letter for {job.job_id}: {write_error}")

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "queued": self._queue.qsize(),
            "delayed": len(self._delayed),
            "outstanding": self._outstanding,
            "succeeded": len(self.results),
            "dead_lettered": len(self.dead_letters),
            "deliveries": self.deliveries,
        }
