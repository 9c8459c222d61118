"""Crawl scheduler: a bounded pool of asyncio workers draining the frontier.

Lifecycle: ``idle -> running -> completed | aborted``. A run completes when
the frontier is empty, no page is in flight and no retry is pending, or when
a cap stops dispatch. It is aborted when the abort signal is set or the
browser session pool stays exhausted.

Retries are re-queued by a timer task after the backoff delay, so waiting
never occupies a worker slot.
"""

import asyncio
from collections import deque
from typing import Protocol

import logfire

from pagecrawl.models.crawl_models import RetryPolicy
from pagecrawl.models.outcome_models import FrontierEntry, PageOutcome
from pagecrawl.models.result_models import RunStatus
from pagecrawl.services.errors import CrawlError, PoolExhaustionError
from pagecrawl.services.frontier import Frontier


class PageProcessor(Protocol):
    async def process(self, entry: FrontierEntry) -> PageOutcome:
        ...


class RunReporter(Protocol):
    """Receives scheduling decisions; owns run counters and caps."""

    def can_dispatch(self, retry: bool) -> bool:
        """Whether another page may be dispatched (caps not reached)."""
        ...

    def page_started(self, entry: FrontierEntry) -> None:
        ...

    def page_retrying(self, entry: FrontierEntry, error: BaseException, delay: float) -> None:
        ...

    def page_finished(self, outcome: PageOutcome, links_enqueued: int) -> None:
        """Called once per page with its terminal outcome (success or failure)."""
        ...


class CrawlScheduler:
    """Dispatch frontier entries to up to ``max_concurrency`` workers."""

    def __init__(
        self,
        frontier: Frontier,
        processor: PageProcessor,
        reporter: RunReporter,
        *,
        retry_policy: RetryPolicy,
        max_concurrency: int,
        abort_event: asyncio.Event | None = None,
    ):
        """Initialize the scheduler.

        Args:
            frontier: Seeded frontier shared by all workers.
            processor: Processes one entry (normally a PageWorker).
            reporter: Cap checks and progress callbacks (the Run Controller).
            retry_policy: Retry bound and backoff.
            max_concurrency: Number of worker tasks.
            abort_event: External abort signal.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._frontier = frontier
        self._processor = processor
        self._reporter = reporter
        self._retry_policy = retry_policy
        self._max_concurrency = max_concurrency
        self._abort_event = abort_event or asyncio.Event()
        self._abort_reason: str | None = None
        self._status = RunStatus.IDLE

        self._cond: asyncio.Condition | None = None
        self._retry_ready: deque[FrontierEntry] = deque()
        self._retry_tasks: set[asyncio.Task] = set()
        self._pending_retries = 0
        self._in_flight = 0

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def abort_reason(self) -> str | None:
        return self._abort_reason

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def leftover_retries(self) -> int:
        """Retries that were scheduled but never dispatched."""
        return len(self._retry_ready) + self._pending_retries

    def abort(self, reason: str = "Aborted") -> None:
        """Stop dispatching new work. In-flight pages finish or time out."""
        if self._abort_reason is None:
            self._abort_reason = reason
        self._abort_event.set()

    async def run(self) -> RunStatus:
        """Run until the frontier drains, a cap is hit, or the run is aborted.

        Returns:
            COMPLETED or ABORTED.
        """
        if self._status != RunStatus.IDLE:
            raise RuntimeError(f"Scheduler already {self._status.value}")
        self._status = RunStatus.RUNNING
        self._cond = asyncio.Condition()

        watcher = asyncio.create_task(self._watch_abort())
        workers = [
            asyncio.create_task(self._worker(i)) for i in range(self._max_concurrency)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            watcher.cancel()
            for task in self._retry_tasks:
                task.cancel()
            await asyncio.gather(watcher, *self._retry_tasks, return_exceptions=True)

        if self._abort_event.is_set():
            if self._abort_reason is None:
                self._abort_reason = "Aborted"
            self._status = RunStatus.ABORTED
        else:
            self._status = RunStatus.COMPLETED
        return self._status

    async def _watch_abort(self) -> None:
        await self._abort_event.wait()
        async with self._cond:
            self._cond.notify_all()

    async def _worker(self, worker_id: int) -> None:
        while True:
            entry = await self._next_entry()
            if entry is None:
                return

            try:
                outcome = await self._processor.process(entry)
            except PoolExhaustionError as e:
                self._handle_pool_exhaustion(entry, e)
            except Exception as e:
                logfire.exception(
                    "Unexpected error processing page",
                    url=entry.url,
                    worker_id=worker_id,
                )
                error = e if isinstance(e, CrawlError) else CrawlError(f"{type(e).__name__}: {e}")
                self._reporter.page_finished(
                    PageOutcome(entry=entry, error=error, retryable=False), 0
                )
            else:
                self._handle_outcome(entry, outcome)
            finally:
                async with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    async def _next_entry(self) -> FrontierEntry | None:
        async with self._cond:
            while True:
                if self._abort_event.is_set():
                    return None

                if self._retry_ready and self._reporter.can_dispatch(retry=True):
                    return self._dispatch(self._retry_ready.popleft())

                if self._reporter.can_dispatch(retry=False):
                    entry = self._frontier.pop()
                    if entry is not None:
                        return self._dispatch(entry)

                if self._in_flight == 0 and self._pending_retries == 0:
                    # Drained, or a cap stopped dispatch with nothing left running.
                    self._cond.notify_all()
                    return None

                await self._cond.wait()

    def _dispatch(self, entry: FrontierEntry) -> FrontierEntry:
        self._in_flight += 1
        self._reporter.page_started(entry)
        return entry

    def _handle_outcome(self, entry: FrontierEntry, outcome: PageOutcome) -> None:
        enqueued = 0
        for url in outcome.links:
            if self._frontier.push(url, entry.depth + 1) is not None:
                enqueued += 1

        attempts_made = entry.attempt + 1
        if outcome.failed and outcome.retryable and self._retry_policy.should_retry(attempts_made):
            self._schedule_retry(entry, outcome.error)
            return

        self._reporter.page_finished(outcome, enqueued)

    def _handle_pool_exhaustion(self, entry: FrontierEntry, error: PoolExhaustionError) -> None:
        if self._retry_policy.should_retry(entry.attempt + 1):
            self._schedule_retry(entry, error)
            return

        self._reporter.page_finished(PageOutcome(entry=entry, error=error, retryable=True), 0)
        logfire.error("Browser session pool exhausted, aborting run", url=entry.url, error=str(error))
        self.abort(f"Browser session pool exhausted: {error}")

    def _schedule_retry(self, entry: FrontierEntry, error: BaseException) -> None:
        delay = self._retry_policy.delay_for(entry.attempt + 1)
        self._reporter.page_retrying(entry, error, delay)
        self._pending_retries += 1
        task = asyncio.create_task(self._requeue_after(entry.next_attempt(), delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_after(self, entry: FrontierEntry, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            async with self._cond:
                self._pending_retries -= 1
                if not self._abort_event.is_set():
                    self._retry_ready.append(entry)
                self._cond.notify_all()
