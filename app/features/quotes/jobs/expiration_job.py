"""
Quote Expiration Background Job - time-driven quote transitions.

Every tick (default every 2 hours):
1. Expire sent quotes whose validity has passed (quote + request -> expired)
2. Warn customers once about quotes expiring within the warning window

Design:
- Never raises to its caller; every failure is logged and counted
- Each quote is evaluated in isolation with bounded concurrency
- All writes are conditional, so re-running a tick (even concurrently)
  produces no further transitions and no duplicate notifications
- One tick at a time; stop() lets an in-flight tick finish

Usage:
    scheduler = build_quote_expiration_scheduler()
    scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
from datetime import datetime, timedelta

from app.config import settings
from app.db.pool import db_pool
from app.features.quotes.domain import InvalidTransition, PersistenceFailure, QuoteResponse
from app.features.quotes.repository import (
    PostgresNotificationRepository,
    PostgresQuoteRepository,
    QuoteStore,
)
from app.features.quotes.services import (
    DispatchResult,
    NotificationDispatcher,
    QuoteLifecycleService,
    ResendDeliveryGateway,
)
from app.infrastructure.observability.logging import get_logger, job_log_context, log_job_run

logger = get_logger(__name__)

JOB_NAME = "quote_expiration"


class SweepMetrics:
    """Metrics tracking for one sweep tick."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for a new tick."""
        self.start_time = datetime.utcnow()
        self.quotes_scanned = 0
        self.quotes_expired = 0
        self.warnings_sent = 0
        self.skipped_no_deadline = 0
        self.unchanged = 0
        self.conflicts = 0
        self.dispatch_failures = 0
        self.persistence_failures = 0
        self.invalid_transitions = 0
        self.processing_errors = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_expired(self, quote_id: int, dispatch: DispatchResult):
        self.quotes_expired += 1
        self._record_dispatch(quote_id, dispatch)

    def record_warning(self, quote_id: int, dispatch: DispatchResult):
        self.warnings_sent += 1
        self._record_dispatch(quote_id, dispatch)

    def record_conflict(self, quote_id: int, action: str):
        """A conditional write lost to a concurrent change; nothing was done."""
        self.conflicts += 1
        logger.info("Quote changed concurrently, skipped", quote_id=quote_id, action=action)

    def record_persistence_failure(self, quote_id: int, error: str):
        self.persistence_failures += 1
        self._record_error(quote_id, error, "persistence")
        logger.warning("Quote store failure, will retry next tick", quote_id=quote_id, error=error)

    def record_invalid_transition(self, quote_id: int, error: str):
        self.invalid_transitions += 1
        self._record_error(quote_id, error, "invalid_transition")
        logger.warning("Invalid quote transition skipped", quote_id=quote_id, error=error)

    def record_processing_error(self, quote_id: int | None, error: str):
        self.processing_errors += 1
        self._record_error(quote_id, error, "processing")
        logger.error("Quote expiration processing error", quote_id=quote_id, error=error)

    def _record_dispatch(self, quote_id: int, dispatch: DispatchResult):
        if not dispatch.success:
            self.dispatch_failures += 1
            self._record_error(quote_id, dispatch.error or "dispatch failed", "dispatch")

    def _record_error(self, quote_id: int | None, error: str, error_type: str):
        self.errors.append(
            {
                "quote_id": quote_id,
                "error": error,
                "error_type": error_type,
                "timestamp": datetime.utcnow().isoformat(),
            }
        )

    def finalize(self):
        """Finalize metrics and calculate totals."""
        self.total_duration_seconds = (datetime.utcnow() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert metrics to dictionary for logging."""
        return {
            "job_run": JOB_NAME,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "quotes_scanned": self.quotes_scanned,
            "quotes_expired": self.quotes_expired,
            "warnings_sent": self.warnings_sent,
            "skipped_no_deadline": self.skipped_no_deadline,
            "unchanged": self.unchanged,
            "conflicts": self.conflicts,
            "dispatch_failures": self.dispatch_failures,
            "persistence_failures": self.persistence_failures,
            "invalid_transitions": self.invalid_transitions,
            "processing_errors": self.processing_errors,
            "errors_count": len(self.errors),
        }


class QuoteExpirationJob:
    """
    One sweep over all sent quotes.

    Re-entrant calls while a tick is running are skipped, not queued.
    """

    def __init__(
        self,
        lifecycle: QuoteLifecycleService,
        store: QuoteStore,
        *,
        warning_window: timedelta | None = None,
        max_concurrency: int | None = None,
    ):
        sweep_config = settings.get_quote_sweep_config()
        self.lifecycle = lifecycle
        self.store = store
        self.warning_window = warning_window or timedelta(
            seconds=sweep_config["warning_window_seconds"]
        )
        self.max_concurrency = max_concurrency or sweep_config["max_concurrency"]
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = SweepMetrics()

    async def run_once(self) -> dict:
        """
        Run a single sweep tick.

        Returns:
            Dict: tick metrics, or a skip marker if a tick is already running
        """
        if self.is_running:
            logger.warning("Quote expiration job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running", "job_run": JOB_NAME}

        self.is_running = True
        self.job_metrics.reset()
        now = self.lifecycle.now()

        try:
            with job_log_context(JOB_NAME, sweep_now=now.isoformat()):
                return await self._sweep(now)
        finally:
            self.is_running = False

    async def _sweep(self, now: datetime) -> dict:
        logger.info(
            "Starting quote expiration sweep",
            warning_window_hours=self.warning_window.total_seconds() / 3600,
        )

        try:
            active_quotes = await self.store.list_active_quote_responses()
        except Exception as e:
            self.job_metrics.record_processing_error(None, f"Failed to list active quotes: {e}")
            active_quotes = []

        self.job_metrics.quotes_scanned = len(active_quotes)

        if active_quotes:
            semaphore = asyncio.Semaphore(self.max_concurrency)
            await asyncio.gather(
                *(self._evaluate_with_semaphore(semaphore, quote, now) for quote in active_quotes)
            )

        self.job_metrics.finalize()
        self.last_run_time = datetime.utcnow()

        metrics = self.job_metrics.to_dict()
        log_job_run(JOB_NAME, metrics)
        return metrics

    async def _evaluate_with_semaphore(
        self, semaphore: asyncio.Semaphore, quote: QuoteResponse, now: datetime
    ) -> None:
        async with semaphore:
            await self._evaluate(quote, now)

    async def _evaluate(self, quote: QuoteResponse, now: datetime) -> None:
        """Evaluate one quote. Never raises."""
        try:
            if quote.valid_until is None:
                self.job_metrics.skipped_no_deadline += 1
                return

            if quote.valid_until <= now:
                dispatch = await self.lifecycle.expire_quote(quote)
                if dispatch is None:
                    self.job_metrics.record_conflict(quote.id, "expire")
                else:
                    self.job_metrics.record_expired(quote.id, dispatch)
                return

            if quote.valid_until <= now + self.warning_window and quote.warning_sent_at is None:
                dispatch = await self.lifecycle.send_expiration_warning(quote, now)
                if dispatch is None:
                    self.job_metrics.record_conflict(quote.id, "warn")
                else:
                    self.job_metrics.record_warning(quote.id, dispatch)
                return

            self.job_metrics.unchanged += 1

        except PersistenceFailure as e:
            self.job_metrics.record_persistence_failure(quote.id, str(e))
        except InvalidTransition as e:
            self.job_metrics.record_invalid_transition(quote.id, str(e))
        except Exception as e:
            self.job_metrics.record_processing_error(quote.id, f"{type(e).__name__}: {e}")

    def get_job_status(self) -> dict:
        return {
            "job_name": JOB_NAME,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "warning_window_hours": self.warning_window.total_seconds() / 3600,
            "max_concurrency": self.max_concurrency,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


class QuoteExpirationScheduler:
    """
    Owns the periodic loop around a QuoteExpirationJob.

    Ticks run serially: the loop awaits each tick before waiting for the
    next interval. stop() blocks new ticks and waits for the current one.
    """

    def __init__(self, job: QuoteExpirationJob, interval_seconds: float | None = None):
        self.job = job
        self.interval_seconds = interval_seconds or settings.get_quote_sweep_config()["interval_seconds"]
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop; first tick runs immediately."""
        if self.is_running:
            logger.warning("Quote expiration scheduler already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"{JOB_NAME}_scheduler")

    async def stop(self) -> None:
        """Prevent further ticks and wait for an in-flight tick to finish."""
        self._stop_event.set()

        if self._task is None:
            return

        try:
            await self._task
        finally:
            self._task = None
            logger.info("Quote expiration scheduler stopped")

    async def _run_loop(self) -> None:
        logger.info("Quote expiration scheduler STARTED", interval_seconds=self.interval_seconds)

        while not self._stop_event.is_set():
            try:
                await self.job.run_once()
            except Exception as e:
                logger.error("Error in quote expiration scheduler", error=str(e), error_type=type(e).__name__)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue

    def health_check(self) -> dict:
        """Healthy while running and not overdue (no run for twice the interval)."""
        last_run = self.job.last_run_time
        overdue_threshold = timedelta(seconds=self.interval_seconds * 2)
        is_overdue = last_run is not None and (datetime.utcnow() - last_run) > overdue_threshold

        status = {
            "healthy": self.is_running and not is_overdue,
            "service": f"{JOB_NAME}_job",
            "scheduler_running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "is_overdue": is_overdue,
            **self.job.get_job_status(),
        }
        if is_overdue:
            status["warning"] = (
                f"Job overdue by {(datetime.utcnow() - last_run).total_seconds() / 60:.1f} minutes"
            )
        return status


# ==========================================================================
# WIRING
# ==========================================================================


def build_quote_expiration_job() -> QuoteExpirationJob:
    """Wire the job against PostgreSQL and, when configured, Resend."""
    store = PostgresQuoteRepository()
    sink = PostgresNotificationRepository()

    gateway = None
    if settings.RESEND_API_KEY:
        gateway = ResendDeliveryGateway()
    else:
        logger.warning("RESEND_API_KEY not set, notifications will be stored without email delivery")

    dispatcher = NotificationDispatcher(store, sink, gateway)
    lifecycle = QuoteLifecycleService(store, dispatcher)
    return QuoteExpirationJob(lifecycle, store)


def build_quote_expiration_scheduler() -> QuoteExpirationScheduler:
    return QuoteExpirationScheduler(build_quote_expiration_job())


async def run_quote_expiration_once() -> None:
    """Worker entry point: a single sweep, then exit."""
    await db_pool.initialize()
    try:
        await build_quote_expiration_job().run_once()
    finally:
        await db_pool.close()


async def start_quote_expiration_scheduler() -> None:
    """
    Worker entry point: run the scheduler until the process is cancelled.
    """
    await db_pool.initialize()
    scheduler = build_quote_expiration_scheduler()
    scheduler.start()

    try:
        # Park until cancelled; the scheduler task does the work
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Quote expiration worker cancelled")
        raise
    finally:
        await scheduler.stop()
        await db_pool.close()
