"""Usage reconciliation background worker.

Each streamed response charged at the estimate schedules one job once the
body has been sent. The job first writes the response id onto the
estimated event, then settles it: straight from the usage the stream
reported inline when there is one, otherwise from the usage report after
a delay. Jobs are detached asyncio tasks: the response never waits on
them, and their failures are logged, never surfaced to the client.

Jobs live only in memory, so a periodic sweep replays estimated events
that carry a response id but were never settled. The ledger's
idempotency guard makes a replay of an already-settled job a no-op.

Each step opens its own session; the request session is gone by the
time the job runs.
"""

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aiproxy.core.config import Settings, settings
from aiproxy.providers.base import TokenUsage
from aiproxy.services.usage_ledger import ReconciliationOutcome, UsageLedger
from aiproxy.services.usage_report import UsageReportClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationJob:
    """One estimated charge awaiting actual usage.

    Attributes:
        event_id: The estimated UsageEvent.
        chat_id: Conversation key for the report lookup.
        message_id: Backend generation id for the report lookup.
        usage: Usage the stream reported inline; skips the report lookup.
    """

    event_id: uuid.UUID
    chat_id: str
    message_id: str
    usage: TokenUsage | None = None


class ReconciliationWorker:
    """Runs reconciliation jobs off the request path.

    Lifecycle:
    - start() enables scheduling and starts the recovery sweep.
    - schedule() spawns a task for one job.
    - sweep() replays unsettled estimates once.
    - stop() cancels outstanding jobs and the sweep, and waits for them.
    - run_job() executes a job inline (for testing).

    Args:
        session_factory: Async session factory for DB access.
        report_client: Usage report client.
        app_settings: Settings for delay, attempts, sweep and the enable flag.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        report_client: UsageReportClient,
        app_settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._report_client = report_client
        self._settings = app_settings or settings
        self._tasks: set[asyncio.Task[ReconciliationOutcome]] = set()
        self._in_flight: set[uuid.UUID] = set()
        self._sweeper: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Number of jobs still in flight."""
        return len(self._tasks)

    def start(self) -> None:
        """Enable scheduling. No-op if already running."""
        if self._running:
            logger.warning("Reconciliation worker already running")
            return
        self._running = True
        interval = self._settings.reconciliation_sweep_interval_seconds
        if self._settings.reconciliation_enabled and interval > 0:
            self._sweeper = asyncio.create_task(self._sweep_forever(interval))
        logger.info(
            "Reconciliation worker started (delay=%.1fs, attempts=%d, sweep=%.0fs)",
            self._settings.reconciliation_delay_seconds,
            self._settings.reconciliation_max_attempts,
            interval,
        )

    async def stop(self) -> None:
        """Cancel outstanding jobs and the sweep, then wait for them."""
        self._running = False
        tasks: list[asyncio.Task[Any]] = list(self._tasks)
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._in_flight.clear()
        await self._report_client.aclose()
        logger.info("Reconciliation worker stopped (%d tasks cancelled)", len(tasks))

    def schedule(self, job: ReconciliationJob) -> None:
        """Spawn a detached task for a job.

        Dropped with a log line when the worker is stopped or reconciliation
        is disabled; the estimate then stands until a sweep picks it up.
        """
        if not self._running or not self._settings.reconciliation_enabled:
            logger.info("Reconciliation disabled, estimate stands for event %s", job.event_id)
            return
        self._spawn(job, self._run_scheduled(job))

    async def run_job(self, job: ReconciliationJob) -> ReconciliationOutcome:
        """Reconcile a job, polling the usage report while it lags.

        Returns:
            The final outcome. REPORT_UNAVAILABLE when every attempt came
            back empty.
        """
        if job.usage is not None:
            return await self._reconcile(job, job.usage)

        attempts = max(self._settings.reconciliation_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            actual = await self._report_client.fetch(job.chat_id, job.message_id)
            if actual is not None:
                return await self._reconcile(job, actual)
            if attempt < attempts:
                await asyncio.sleep(self._settings.reconciliation_delay_seconds)

        logger.warning(
            "No usage report for event %s after %d attempts, estimate stands",
            job.event_id,
            attempts,
        )
        return ReconciliationOutcome.REPORT_UNAVAILABLE

    async def sweep(self, now: datetime | None = None) -> int:
        """Schedule every unsettled estimate old enough to have been lost.

        Returns:
            Number of jobs scheduled.
        """
        now = now or datetime.now(UTC)
        async with self._session_factory() as db:
            events = await UsageLedger(db, app_settings=self._settings).unsettled_estimates(
                created_after=now
                - timedelta(seconds=self._settings.reconciliation_sweep_max_age_seconds),
                created_before=now
                - timedelta(seconds=self._settings.reconciliation_delay_seconds),
                limit=self._settings.reconciliation_sweep_batch_size,
            )

        scheduled = 0
        for event in events:
            if event.id in self._in_flight or event.message_id is None:
                continue
            job = ReconciliationJob(
                event_id=event.id,
                chat_id=event.chat_id or "",
                message_id=event.message_id,
            )
            self._spawn(job, self._run_logged(job))
            scheduled += 1
        if scheduled:
            logger.info("Reconciliation sweep replayed %d estimated events", scheduled)
        return scheduled

    def _spawn(
        self, job: ReconciliationJob, work: Coroutine[Any, Any, ReconciliationOutcome]
    ) -> None:
        task = asyncio.create_task(work)
        self._tasks.add(task)
        self._in_flight.add(job.event_id)

        def _done(finished: asyncio.Task[ReconciliationOutcome]) -> None:
            self._tasks.discard(finished)
            self._in_flight.discard(job.event_id)

        task.add_done_callback(_done)

    async def _reconcile(
        self, job: ReconciliationJob, actual: TokenUsage
    ) -> ReconciliationOutcome:
        async with self._session_factory() as db:
            ledger = UsageLedger(db, app_settings=self._settings)
            return await ledger.reconcile(job.event_id, actual, message_id=job.message_id)

    async def _record_message_id(self, job: ReconciliationJob) -> None:
        async with self._session_factory() as db:
            ledger = UsageLedger(db, app_settings=self._settings)
            await ledger.record_stream_message_id(job.event_id, job.message_id)

    async def _run_scheduled(self, job: ReconciliationJob) -> ReconciliationOutcome:
        try:
            await self._record_message_id(job)
        except Exception:  # noqa: BLE001
            logger.exception("Could not record message id for event %s", job.event_id)
        if job.usage is None:
            await asyncio.sleep(self._settings.reconciliation_delay_seconds)
        return await self._run_logged(job)

    async def _run_logged(self, job: ReconciliationJob) -> ReconciliationOutcome:
        try:
            outcome = await self.run_job(job)
        except asyncio.CancelledError:
            logger.debug("Reconciliation of event %s cancelled", job.event_id)
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Error reconciling usage event %s", job.event_id)
            return ReconciliationOutcome.REPORT_UNAVAILABLE
        logger.info("Reconciliation of event %s: %s", job.event_id, outcome.value)
        return outcome

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("Reconciliation sweep failed")
            await asyncio.sleep(interval)
