"""Cadence/retry scheduler for the price pipeline."""

import asyncio
import logging
from typing import Optional

from .errors import PipelineBusyError, PublishError, UpstreamError
from .health import HealthTracker
from .publisher import PricePublisher
from .types import PublishedPrice, SchedulerState, SchedulerStats

logger = logging.getLogger(__name__)


class PriceScheduler:
    """
    Runs fetch+publish on a fixed cadence with a single retry timer.

    State machine:
        IDLE -> RUNNING -> IDLE            (success)
                        -> RETRY_PENDING   (failure, one timer armed)
        RETRY_PENDING -> RUNNING           (retry fires, or a cadence tick)
        any -> STOPPED                     (stop(); in-flight run completes)

    Guarantees:
    - At most one pipeline run at a time; ticks during a run are skipped
      and manual runs (run_now) are rejected
    - At most one retry timer armed, however many runs fail before it fires
    - Cadence and retry delay are independent
    """

    def __init__(
        self,
        publisher: PricePublisher,
        interval_seconds: float = 60.0,
        retry_delay_seconds: float = 30.0,
        health: Optional[HealthTracker] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            publisher: Pipeline to drive
            interval_seconds: Cadence between ticks
            retry_delay_seconds: Delay before retrying a failed run
            health: Optional tracker updated after every run
        """
        self.publisher = publisher
        self.interval_seconds = interval_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.health = health

        self.stats = SchedulerStats()

        self._state = SchedulerState.IDLE
        self._stopped = False
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._retry_at: Optional[float] = None
        self._tasks: set[asyncio.Task] = set()
        self._wake = asyncio.Event()
        # Clear while a run is in flight, whoever started it
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def retry_due_in(self) -> Optional[float]:
        """Seconds until the pending retry fires, or None."""
        if self._retry_at is None:
            return None
        return max(0.0, self._retry_at - asyncio.get_running_loop().time())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _arm_retry(self) -> None:
        loop = asyncio.get_running_loop()
        self._retry_at = loop.time() + self.retry_delay_seconds
        self._retry_handle = loop.call_later(self.retry_delay_seconds, self._on_retry_timer)
        self.stats.retries_scheduled += 1
        logger.info(f"Will retry in {self.retry_delay_seconds:g}s")

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
            self._retry_at = None

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        self._retry_at = None

        if self._stopped:
            return

        self.stats.retries_fired += 1
        if self._state is SchedulerState.RUNNING:
            # The in-flight run re-arms on failure
            logger.info("Retry fired during a run in progress; not starting another")
            return

        logger.info("Retrying price update")
        self._spawn(self.fetch_and_publish())

    def _after_run(self, published: Optional[PublishedPrice], error: Optional[str]) -> None:
        if published is not None:
            self.stats.successes += 1
            if self.health:
                self.health.record_success(published.tx_id)
            self._cancel_retry()
            self._state = SchedulerState.STOPPED if self._stopped else SchedulerState.IDLE
            return

        self.stats.failures += 1
        self.stats.last_error = error
        if self.health:
            self.health.record_failure(error or "run interrupted")

        if self._stopped:
            self._state = SchedulerState.STOPPED
            return

        if self._retry_handle is None:
            self._arm_retry()
        else:
            logger.info("Retry already scheduled")
        self._state = SchedulerState.RETRY_PENDING

    def _begin_run(self) -> None:
        self._state = SchedulerState.RUNNING
        self._idle.clear()
        self.stats.runs += 1

    async def _run_pipeline(self) -> PublishedPrice:
        """Execute one run; the caller has already entered RUNNING."""
        published: Optional[PublishedPrice] = None
        error: Optional[str] = None
        try:
            published = await self.publisher.run_once()
            return published
        except (UpstreamError, PublishError) as e:
            error = str(e)
            logger.error(f"Failed to fetch and publish price: {e}")
            raise
        except Exception as e:
            error = repr(e)
            logger.error(f"Unexpected pipeline error: {e}", exc_info=True)
            raise
        finally:
            self._after_run(published, error)
            self._idle.set()

    async def fetch_and_publish(self) -> bool:
        """
        Run the pipeline once, unless a run is already in flight.

        Returns:
            True on success; False on failure (a retry is then pending)
            or when the run was skipped
        """
        if self._stopped:
            logger.info("Scheduler stopped; not running pipeline")
            return False

        if self._state is SchedulerState.RUNNING:
            self.stats.skipped_ticks += 1
            logger.info("Skipping fetch - already in progress")
            return False

        self._begin_run()
        try:
            await self._run_pipeline()
        except Exception:
            # Logged and recorded by _run_pipeline
            return False
        return True

    async def run_now(self) -> PublishedPrice:
        """
        Run the pipeline once on request, under the same single-flight rule.

        A failure here is handled like any other failed run, so it may arm
        the retry timer.

        Returns:
            The published record and its transaction id

        Raises:
            PipelineBusyError: if a run is in flight or the scheduler stopped
            UpstreamError, PublishError: if the run fails
        """
        if self._stopped:
            raise PipelineBusyError("Price scheduler is stopped")

        if self._state is SchedulerState.RUNNING:
            logger.info("Manual run rejected - already in progress")
            raise PipelineBusyError("Price update already in progress")

        self._begin_run()
        return await self._run_pipeline()

    async def tick(self) -> bool:
        """Cadence tick."""
        logger.debug("Cadence tick")
        return await self.fetch_and_publish()

    async def _sleep_until_next_tick(self, shutdown_event: Optional[asyncio.Event]) -> None:
        waiters = [asyncio.create_task(self._wake.wait())]
        if shutdown_event is not None:
            waiters.append(asyncio.create_task(shutdown_event.wait()))

        _, pending = await asyncio.wait(
            waiters,
            timeout=self.interval_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """
        Drive the cadence until shutdown.

        The first run starts immediately.

        Raises:
            ConfigurationError: if the publisher is not configured; no run
                is attempted in that case
        """
        self.publisher.ensure_configured()

        logger.info(
            f"Price scheduler started: every {self.interval_seconds:g}s, "
            f"retry after {self.retry_delay_seconds:g}s"
        )

        while not self._stopped:
            if shutdown_event and shutdown_event.is_set():
                break

            self._spawn(self.tick())
            await self._sleep_until_next_tick(shutdown_event)

        await self.stop()

    async def stop(self) -> None:
        """
        Stop the cadence and cancel any pending retry.

        An in-flight run is awaited, not cancelled. Idempotent.
        """
        if not self._stopped:
            self._stopped = True
            self._wake.set()
            self._cancel_retry()
            logger.info("Stopping price scheduler...")

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._idle.wait()

        self._state = SchedulerState.STOPPED
        logger.info("Price scheduler stopped")
