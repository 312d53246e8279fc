"""
Scheduler controller: keeps live timers in step with the schedule store and
runs a schedule when its timer fires.

Thread model:
- one reconciliation thread that re-reads the store every tick
- one waiting thread per live timer (owned by the TimerRegistry)
- a shared ThreadPoolExecutor running the executions
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import psutil

from colored_logger import get_colored_logger

from .cron_parser import CronParser, TimeZoneLike, resolve_timezone
from .errors import InvalidCronExpression, QueueError, RepositoryError, ScheduleNotFound
from .models import (
    JobPayload,
    RunOutcome,
    RunStatus,
    ScheduleDefinition,
    ScheduleFilters,
    TriggerSource,
)
from .repository import ScheduleRepository
from .timer_registry import TimerRegistry
from .work_queue import SCRAPER_QUEUE, WorkQueue
from .work_source import WorkItemSource

logger = get_colored_logger(__name__)


class ControllerState(Enum):
    """Lifecycle state of the controller."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class ReconcileReport:
    """What one reconciliation pass changed."""

    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    invalid: List[str] = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": list(self.added),
            "updated": list(self.updated),
            "removed": list(self.removed),
            "unchanged": list(self.unchanged),
            "invalid": list(self.invalid),
            "skipped": self.skipped,
            "error": self.error,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class SchedulerController:
    """
    Orchestrates reconciliation, timer fires and run bookkeeping.

    Features:
    - Single-flight reconciliation against the schedule repository
    - At most one in-flight execution per schedule name
    - Bounded work selection and per-item job submission
    - Outcome persisted after every execution attempt
    - Graceful shutdown that lets started executions finish
    """

    def __init__(
        self,
        repository: ScheduleRepository,
        work_source: WorkItemSource,
        work_queue: WorkQueue,
        timezone: TimeZoneLike = "Europe/Berlin",
        reconcile_interval_seconds: float = 300,
        max_items_per_run: int = 1000,
        queue_name: str = SCRAPER_QUEUE,
        max_workers: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
        parser: Optional[CronParser] = None,
        timer_max_wait_seconds: float = 60.0,
    ):
        """
        Initialize the controller. Nothing runs until start().

        Args:
            repository: Schedule store
            work_source: POI store answering the selection query
            work_queue: Queue receiving one job per selected POI
            timezone: Zone whose civil calendar drives every schedule
            reconcile_interval_seconds: Period of the reconciliation tick
            max_items_per_run: Upper bound on POIs selected per execution
            queue_name: Queue the jobs are submitted to
            max_workers: Size of the execution pool
            clock: Returns the current aware datetime (injectable for tests)
            parser: Cron parser instance
            timer_max_wait_seconds: Longest single timer sleep before the clock
                is re-read
        """
        if reconcile_interval_seconds <= 0:
            raise ValueError("reconcile_interval_seconds must be positive")
        if max_items_per_run <= 0:
            raise ValueError("max_items_per_run must be positive")
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")

        self.repository = repository
        self.work_source = work_source
        self.work_queue = work_queue
        self.timezone = resolve_timezone(timezone)
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self.max_items_per_run = max_items_per_run
        self.queue_name = queue_name
        self.max_workers = max_workers
        self.parser = parser or CronParser()
        self._clock = clock or (lambda: datetime.now(self.timezone))

        self.registry = TimerRegistry(
            timezone=self.timezone,
            clock=self._clock,
            parser=self.parser,
            max_wait_seconds=timer_max_wait_seconds,
        )

        self._state = ControllerState.STOPPED
        self._state_lock = threading.RLock()
        self._shutdown_event = threading.Event()
        self._reconcile_thread: Optional[threading.Thread] = None
        self._reconcile_lock = threading.Lock()
        # Bumped by every stop(); a pass that started earlier must not arm timers
        self._stop_epoch = 0
        self._pool: Optional[ThreadPoolExecutor] = None

        # Names with an execution in flight
        self._running: set = set()
        self._running_changed = threading.Condition(threading.Lock())

        self._last_reconcile: Optional[ReconcileReport] = None
        self._last_outcomes: Dict[str, RunOutcome] = {}

        logger.info(
            "Scheduler controller initialized (timezone %s, reconcile every %ss, "
            "%d items per run, queue '%s', %d workers)",
            self.timezone,
            reconcile_interval_seconds,
            max_items_per_run,
            queue_name,
            max_workers,
        )

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def start(self) -> None:
        """Create the pool, reconcile once and arm the reconciliation tick."""
        with self._state_lock:
            if self._state != ControllerState.STOPPED:
                logger.warning("Scheduler controller is already %s", self._state.value)
                return

            self._state = ControllerState.STARTING
            self._shutdown_event = threading.Event()
            self._pool = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="ScheduleExec"
            )
            self.registry.set_executor(self._pool)
            self._reconcile_thread = threading.Thread(
                target=self._reconcile_loop,
                args=(self._shutdown_event,),
                name="ScheduleReconciler",
                daemon=True,
            )
            self._state = ControllerState.RUNNING
            self._reconcile_thread.start()

        logger.notice("Scheduler controller started")
        self.reconcile()

    def stop(self, wait: bool = False, timeout_seconds: float = 30) -> None:
        """
        Stop the tick and all timers. Started executions are never interrupted.

        Args:
            wait: Block until in-flight executions finish
            timeout_seconds: Upper bound on each wait
        """
        with self._state_lock:
            if self._state in (ControllerState.STOPPED, ControllerState.STOPPING):
                logger.info("Scheduler controller is not running")
                return

            logger.info("Stopping scheduler controller...")
            self._state = ControllerState.STOPPING
            self._stop_epoch += 1
            self._shutdown_event.set()
            pool = self._pool
            reconcile_thread = self._reconcile_thread

        if (
            reconcile_thread
            and reconcile_thread.is_alive()
            and reconcile_thread is not threading.current_thread()
        ):
            reconcile_thread.join(timeout=timeout_seconds)
            if reconcile_thread.is_alive():
                logger.warning(
                    "Reconciliation thread did not stop within %ss", timeout_seconds
                )

        cancelled = self.registry.stop_all()

        if pool is not None:
            pool.shutdown(wait=False)
        if wait:
            self._wait_for_running(timeout_seconds)

        with self._state_lock:
            self._pool = None
            self._reconcile_thread = None
            self._state = ControllerState.STOPPED

        logger.notice("Scheduler controller stopped (%d timers cancelled)", cancelled)

    def close(self) -> None:
        """Stop, drop any remaining timers and close the collaborators."""
        self.stop()
        self.registry.stop_all()
        for resource in (self.work_queue, self.work_source, self.repository):
            close = getattr(resource, "close", None)
            if close is not None:
                close()

    def _wait_for_running(self, timeout_seconds: float) -> None:
        with self._running_changed:
            if self._running:
                logger.info(
                    "Waiting for %d running executions to complete...", len(self._running)
                )
            finished = self._running_changed.wait_for(
                lambda: not self._running, timeout=timeout_seconds
            )
            if not finished:
                logger.warning(
                    "%d executions still running after %ss: %s",
                    len(self._running),
                    timeout_seconds,
                    ", ".join(sorted(self._running)),
                )

    def _reconcile_loop(self, shutdown_event: threading.Event) -> None:
        """Periodic reconciliation tick."""
        logger.debug("Reconciliation loop started")

        while not shutdown_event.wait(timeout=self.reconcile_interval_seconds):
            try:
                self.reconcile()
            except Exception:
                logger.exception("Unexpected error during reconciliation")

        logger.debug("Reconciliation loop ended")

    def reconcile(self) -> ReconcileReport:
        """
        Bring the live timers in line with the active schedules in the store.

        A pass that starts while another is running is skipped. A store that
        cannot be read leaves every live timer armed.
        """
        if not self._reconcile_lock.acquire(blocking=False):
            logger.warning("Reconciliation already in progress, skipping this pass")
            return ReconcileReport(skipped=True, finished_at=self._clock())

        try:
            report = self._reconcile_pass()
        finally:
            self._reconcile_lock.release()

        self._last_reconcile = report
        return report

    def _reconcile_pass(self) -> ReconcileReport:
        report = ReconcileReport()
        with self._state_lock:
            epoch = self._stop_epoch

        try:
            definitions = self.repository.list_active()
        except RepositoryError as e:
            logger.error(
                "Failed to load schedules, keeping %d live timers: %s", len(self.registry), e
            )
            report.error = str(e)
            report.finished_at = self._clock()
            return report
        except Exception as e:
            logger.exception("Unexpected error loading schedules, keeping live timers")
            report.error = str(e) or type(e).__name__
            report.finished_at = self._clock()
            return report

        active = {d.name: d for d in definitions if d.is_active}

        for name in self.registry.names():
            if name not in active and self.registry.remove(name):
                report.removed.append(name)

        for name, definition in active.items():
            # Held across the upsert so stop() cannot clear timers in between.
            with self._state_lock:
                if self._stop_epoch != epoch:
                    logger.info("Controller stopped during reconciliation, not arming timers")
                    report.skipped = True
                    break

                was_armed = self.registry.has(name)
                try:
                    armed = self.registry.upsert(
                        name, definition.cron_expression, self._make_callback(definition)
                    )
                except InvalidCronExpression as e:
                    logger.error("Schedule '%s' not armed: %s", name, e)
                    report.invalid.append(name)
                    # The stored definition no longer describes the armed timer.
                    self.registry.remove(name)
                    continue

            if not was_armed:
                report.added.append(name)
            elif armed:
                report.updated.append(name)
            else:
                report.unchanged.append(name)

        report.finished_at = self._clock()
        if report.changed or report.invalid:
            logger.info(
                "Reconciled schedules: %d added, %d updated, %d removed, %d unchanged, %d invalid",
                len(report.added),
                len(report.updated),
                len(report.removed),
                len(report.unchanged),
                len(report.invalid),
            )
        else:
            logger.debug("Reconciled schedules: %d unchanged", len(report.unchanged))
        return report

    def _make_callback(self, definition: ScheduleDefinition) -> Callable[[datetime], None]:
        name = definition.name
        filters = definition.filters
        priority = definition.priority
        cron_expression = definition.cron_expression

        def on_fire(fired_at: datetime) -> None:
            self.execute_schedule(
                name,
                filters,
                priority,
                fired_at=fired_at,
                trigger=TriggerSource.TIMER,
                cron_expression=cron_expression,
            )

        return on_fire

    def execute_schedule(
        self,
        name: str,
        filters: Optional[ScheduleFilters] = None,
        priority: int = 5,
        fired_at: Optional[datetime] = None,
        trigger: Union[TriggerSource, str] = TriggerSource.TIMER,
        cron_expression: Optional[str] = None,
    ) -> Optional[RunOutcome]:
        """
        Run one schedule: select work, submit jobs, record the outcome.

        Args:
            name: Schedule name
            filters: Work-selection criteria
            priority: Job priority passed to the queue
            fired_at: Scheduled instant of a timer fire
            trigger: What caused this execution
            cron_expression: Expression used for next_run_at; defaults to the
                live timer's expression

        Returns:
            The recorded outcome, or None if the schedule was already running
        """
        trigger = TriggerSource(trigger)

        with self._running_changed:
            if name in self._running:
                logger.warning(
                    "Schedule '%s' is still running, dropping %s fire", name, trigger.value
                )
                return None
            self._running.add(name)

        try:
            return self._run_schedule(
                name, filters or ScheduleFilters(), priority, fired_at, trigger, cron_expression
            )
        finally:
            with self._running_changed:
                self._running.discard(name)
                self._running_changed.notify_all()

    def _run_schedule(
        self,
        name: str,
        filters: ScheduleFilters,
        priority: int,
        fired_at: Optional[datetime],
        trigger: TriggerSource,
        cron_expression: Optional[str],
    ) -> RunOutcome:
        started = time.monotonic()
        ran_at = self._clock()
        logger.info("Executing schedule '%s' (%s)", name, trigger.value)

        outcome = RunOutcome(name=name, ran_at=ran_at, status=RunStatus.SUCCESS, trigger=trigger)

        try:
            items = self.work_source.select(filters, self.max_items_per_run)
        except RepositoryError as e:
            logger.error("Work selection failed for schedule '%s': %s", name, e)
            outcome.status = RunStatus.ERROR
            outcome.reason = str(e)
        except Exception as e:
            logger.exception("Unexpected error selecting work for schedule '%s'", name)
            outcome.status = RunStatus.ERROR
            outcome.reason = str(e) or type(e).__name__
        else:
            outcome.item_count = len(items)
            for item in items:
                if not item.website:
                    continue
                payload = JobPayload(poi_id=item.id, url=item.website, schedule_name=name)
                try:
                    self.work_queue.submit(self.queue_name, payload, priority)
                    outcome.submitted_count += 1
                except QueueError as e:
                    outcome.failed_count += 1
                    logger.warning(
                        "Failed to enqueue POI %s for schedule '%s': %s", item.id, name, e
                    )

        outcome.next_run_at = self._next_run_after(name, cron_expression, fired_at)
        outcome.duration_seconds = time.monotonic() - started

        try:
            self.repository.record_outcome(name, outcome)
        except RepositoryError as e:
            logger.error("Failed to record outcome for schedule '%s': %s", name, e)

        self._last_outcomes[name] = outcome

        next_text = outcome.next_run_at.isoformat() if outcome.next_run_at else "unknown"
        if outcome.status == RunStatus.SUCCESS:
            logger.success(
                "Schedule '%s' completed: %d items, %d submitted, %d failed, next run %s",
                name,
                outcome.item_count,
                outcome.submitted_count,
                outcome.failed_count,
                next_text,
            )
        else:
            logger.failure("Schedule '%s' failed: %s", name, outcome.reason)
        return outcome

    def _next_run_after(
        self, name: str, cron_expression: Optional[str], fired_at: Optional[datetime]
    ) -> Optional[datetime]:
        if cron_expression is None:
            timer = self.registry.get(name)
            if timer is None:
                return None
            cron_expression = timer.cron_expression

        now = self._clock()
        reference = now
        if fired_at is not None and fired_at.timestamp() > now.timestamp():
            reference = fired_at

        try:
            parsed = self.parser.parse(cron_expression)
            return self.parser.next_execution(parsed, reference, self.timezone)
        except InvalidCronExpression as e:
            logger.warning("Cannot compute next run for schedule '%s': %s", name, e)
            return None

    def trigger_schedule(self, name: str) -> Optional[RunOutcome]:
        """
        Run a stored schedule now, on the calling thread.

        Raises:
            ScheduleNotFound: If the schedule is missing or inactive
            RepositoryError: If the store cannot be read
        """
        definition = self.repository.get_by_name(name)
        if definition is None or not definition.is_active:
            raise ScheduleNotFound(name)

        logger.info("Manual trigger for schedule '%s'", name)
        return self.execute_schedule(
            definition.name,
            definition.filters,
            definition.priority,
            trigger=TriggerSource.MANUAL,
            cron_expression=definition.cron_expression,
        )

    def get_status(self) -> Dict[str, Any]:
        """Get controller status information."""
        with self._running_changed:
            running = sorted(self._running)

        return {
            "state": self.state.value,
            "timezone": str(self.timezone),
            "reconcile_interval_seconds": self.reconcile_interval_seconds,
            "max_items_per_run": self.max_items_per_run,
            "queue_name": self.queue_name,
            "max_workers": self.max_workers,
            "timers": [
                {
                    "name": info.name,
                    "cron_expression": info.cron_expression,
                    "next_fire_at": info.next_fire_at.isoformat(),
                    "fire_count": info.fire_count,
                }
                for info in self.registry.snapshot()
            ],
            "running": running,
            "last_reconcile": (
                self._last_reconcile.to_dict() if self._last_reconcile else None
            ),
            "last_outcomes": {
                name: outcome.to_dict() for name, outcome in sorted(self._last_outcomes.items())
            },
            "resource_usage": self._resource_usage(),
        }

    @staticmethod
    def _resource_usage() -> Dict[str, Any]:
        """Memory, CPU and thread figures for this process."""
        usage: Dict[str, Any] = {"active_threads": threading.active_count()}
        try:
            process = psutil.Process()
            usage["memory_mb"] = int(process.memory_info().rss / 1024 / 1024)
            usage["cpu_percent"] = process.cpu_percent(interval=0.1)
        except psutil.Error as e:
            logger.debug("Resource usage unavailable: %s", e)
            usage["memory_mb"] = 0
            usage["cpu_percent"] = 0.0
        return usage
