"""Cancellable single-shot timers keyed by name, driven by an injectable clock."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class _Timer:
    due: float
    callback: Callable[[], None]


class Scheduler:
    """Holds at most one pending callback per key.

    Nothing runs on its own: the host calls :meth:`run_due` from its event loop
    (or after sleeping until :meth:`next_deadline`), which keeps tests
    deterministic with a fake clock.
    """

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self.clock = clock
        self._timers: dict[str, _Timer] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], None]) -> None:
        """Run ``callback`` after ``delay`` seconds, replacing any timer under ``key``."""
        self._timers[key] = _Timer(due=self.clock() + max(delay, 0.0), callback=callback)
        LOGGER.debug("timer_scheduled", extra={"key": key, "delay": delay})

    def cancel(self, key: str) -> bool:
        cancelled = self._timers.pop(key, None) is not None
        if cancelled:
            LOGGER.debug("timer_cancelled", extra={"key": key})
        return cancelled

    def pending(self, key: str) -> bool:
        return key in self._timers

    def next_deadline(self) -> float | None:
        if not self._timers:
            return None
        return min(timer.due for timer in self._timers.values())

    def run_due(self) -> int:
        """Fire every timer whose deadline has passed; return how many ran."""
        now = self.clock()
        due_keys = sorted(
            (key for key, timer in self._timers.items() if timer.due <= now),
            key=lambda key: self._timers[key].due,
        )
        fired = 0
        for key in due_keys:
            timer = self._timers.pop(key, None)
            if timer is None:
                continue
            fired += 1
            timer.callback()
        return fired

    def wait_and_run(self, *, sleep: Callable[[float], None] = time.sleep) -> int:
        """Block until the earliest timer is due, then run what is due."""
        deadline = self.next_deadline()
        if deadline is None:
            return 0
        remaining = deadline - self.clock()
        if remaining > 0:
            sleep(remaining)
        return self.run_due()
