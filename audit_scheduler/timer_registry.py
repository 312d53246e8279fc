"""
Timer registry: exactly one live, cancellable timer per schedule name.

A timer is a daemon thread that sleeps until the next cron instant, hands the
callback to the shared executor and then recomputes its next instant. Cron
intervals are not uniform, so there is no fixed period to repeat.
"""

import threading
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from colored_logger import get_colored_logger

from .cron_parser import CronExpression, CronParser, TimeZoneLike, resolve_timezone
from .errors import InvalidCronExpression

logger = get_colored_logger(__name__)

FireCallback = Callable[[datetime], None]
Clock = Callable[[], datetime]


@dataclass(frozen=True)
class TimerInfo:
    """Read-only view of a live timer."""

    name: str
    cron_expression: str
    next_fire_at: datetime
    fire_count: int


class LiveTimer:
    """One armed schedule waiting for its next fire instant."""

    def __init__(
        self,
        name: str,
        cron_expr: CronExpression,
        callback: FireCallback,
        parser: CronParser,
        timezone: TimeZoneLike,
        clock: Clock,
        dispatch: Callable[["LiveTimer", FireCallback, datetime], None],
        max_wait_seconds: float = 60.0,
    ):
        self.name = name
        self.cron_expression = cron_expr.original_expression
        self._cron = cron_expr
        self._callback = callback
        self._parser = parser
        self._timezone = timezone
        self._clock = clock
        self._dispatch = dispatch
        self._max_wait_seconds = max_wait_seconds
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self.fire_count = 0

        # Computed eagerly so an expression that never fires fails the upsert.
        self.next_fire_at = parser.next_execution(cron_expr, clock(), timezone)

        self._thread = threading.Thread(
            target=self._run, name=f"timer-{name}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Prevent any further fire. A dispatched callback keeps running."""
        with self._lock:
            self._cancelled.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def replace_callback(self, callback: FireCallback) -> None:
        with self._lock:
            self._callback = callback

    def info(self) -> TimerInfo:
        with self._lock:
            return TimerInfo(
                name=self.name,
                cron_expression=self.cron_expression,
                next_fire_at=self.next_fire_at,
                fire_count=self.fire_count,
            )

    def _run(self) -> None:
        """Sleep, fire, rearm until cancelled."""
        while not self._cancelled.is_set():
            with self._lock:
                fire_at = self.next_fire_at
            now = self._clock()
            remaining = fire_at.timestamp() - now.timestamp()

            # Waits are chunked so wall-clock adjustments are picked up.
            if remaining > 0:
                if self._cancelled.wait(timeout=min(remaining, self._max_wait_seconds)):
                    break
                continue

            if not self._fire(fire_at):
                break

            reference = fire_at if fire_at.timestamp() >= now.timestamp() else now
            try:
                next_fire = self._parser.next_execution(
                    self._cron, reference, self._timezone
                )
            except InvalidCronExpression as e:
                logger.error("Timer '%s' cannot be rearmed: %s", self.name, e)
                break

            with self._lock:
                self.next_fire_at = next_fire
            logger.trace("Timer '%s' rearmed for %s", self.name, next_fire.isoformat())

        logger.debug("Timer '%s' stopped", self.name)

    def _fire(self, fire_at: datetime) -> bool:
        with self._lock:
            if self._cancelled.is_set():
                return False
            callback = self._callback
            self.fire_count += 1

        logger.info("Timer '%s' fired for %s", self.name, fire_at.isoformat())
        try:
            self._dispatch(self, callback, fire_at)
        except RuntimeError as e:
            # Executor already shut down: the registry is stopping.
            logger.warning("Timer '%s' fire not dispatched: %s", self.name, e)
        return True


class TimerRegistry:
    """
    Thread-safe map from schedule name to its live timer.

    The registry is the single source of truth for whether a schedule is
    currently scheduled; callers never touch the map directly.
    """

    def __init__(
        self,
        timezone: TimeZoneLike = "Europe/Berlin",
        executor: Optional[Executor] = None,
        clock: Optional[Clock] = None,
        parser: Optional[CronParser] = None,
        max_wait_seconds: float = 60.0,
    ):
        """
        Args:
            timezone: Zone whose civil calendar drives every timer
            executor: Pool that runs fired callbacks; without one, callbacks
                run on the timer's own thread
            clock: Returns the current aware datetime (injectable for tests)
            parser: Cron parser instance
            max_wait_seconds: Longest single sleep before re-reading the clock
        """
        self.timezone = resolve_timezone(timezone)
        self._executor = executor
        self._clock = clock or (lambda: datetime.now(self.timezone))
        self._parser = parser or CronParser()
        self._max_wait_seconds = max_wait_seconds
        self._timers: Dict[str, LiveTimer] = {}
        self._lock = threading.RLock()

    def set_executor(self, executor: Optional[Executor]) -> None:
        """Route subsequent fires to a different pool."""
        with self._lock:
            self._executor = executor

    def upsert(self, name: str, cron_expression: str, callback: FireCallback) -> bool:
        """
        Arm, keep or re-arm the timer for a schedule.

        An unchanged expression keeps the armed timer and only swaps in the new
        callback; a changed one cancels the old timer and arms a fresh one.

        Returns:
            True if a timer was armed, False if the existing one was kept

        Raises:
            InvalidCronExpression: Nothing is armed or cancelled in that case
        """
        parsed = self._parser.parse(cron_expression)

        with self._lock:
            existing = self._timers.get(name)
            if existing is not None and existing.cron_expression == parsed.original_expression:
                existing.replace_callback(callback)
                return False

            timer = LiveTimer(
                name=name,
                cron_expr=parsed,
                callback=callback,
                parser=self._parser,
                timezone=self.timezone,
                clock=self._clock,
                dispatch=self._dispatch,
                max_wait_seconds=self._max_wait_seconds,
            )
            if existing is not None:
                existing.cancel()
            self._timers[name] = timer
            timer.start()

        if existing is not None:
            logger.info(
                "Timer '%s' re-armed: '%s' -> '%s', next fire %s",
                name,
                existing.cron_expression,
                timer.cron_expression,
                timer.next_fire_at.isoformat(),
            )
        else:
            logger.info(
                "Timer '%s' armed with '%s', next fire %s",
                name,
                timer.cron_expression,
                timer.next_fire_at.isoformat(),
            )
        return True

    def remove(self, name: str) -> bool:
        """Cancel and drop a timer. Returns False if none was armed."""
        with self._lock:
            timer = self._timers.pop(name, None)
            if timer is None:
                return False
            timer.cancel()

        logger.info("Timer '%s' removed", name)
        return True

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._timers

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def get(self, name: str) -> Optional[TimerInfo]:
        with self._lock:
            timer = self._timers.get(name)
        return timer.info() if timer else None

    def snapshot(self) -> List[TimerInfo]:
        with self._lock:
            timers = [self._timers[name] for name in sorted(self._timers)]
        return [timer.info() for timer in timers]

    def stop_all(self, join_timeout: Optional[float] = None) -> int:
        """
        Cancel every live timer and empty the registry. Safe to call repeatedly.

        Args:
            join_timeout: If given, wait up to this long for each timer thread

        Returns:
            Number of timers that were cancelled
        """
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()

        for timer in timers:
            timer.cancel()
        if join_timeout is not None:
            for timer in timers:
                timer.join(join_timeout)

        if timers:
            logger.info("Stopped %d timers", len(timers))
        return len(timers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    def _dispatch(self, timer: LiveTimer, callback: FireCallback, fire_at: datetime) -> None:
        with self._lock:
            executor = self._executor

        if executor is None:
            self._invoke(timer.name, callback, fire_at)
        else:
            executor.submit(self._invoke, timer.name, callback, fire_at)

    @staticmethod
    def _invoke(name: str, callback: FireCallback, fire_at: datetime) -> None:
        try:
            callback(fire_at)
        except Exception:
            logger.exception("Callback for timer '%s' raised", name)
