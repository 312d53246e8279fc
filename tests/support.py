"""Shared helpers for timing-sensitive tests."""

import time
from datetime import datetime, timedelta
from typing import Callable


class ShiftedClock:
    """Wall clock that starts at a chosen instant and then advances in real time."""

    def __init__(self, start: datetime):
        self.start = start
        self._origin = time.monotonic()

    def __call__(self) -> datetime:
        return self.start + timedelta(seconds=time.monotonic() - self._origin)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()
