"""Single-shot silence timer that forces end of input."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from models import WatchdogState

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], Any]


class SilenceWatchdog:
    """Fires ``on_fire`` once, ``duration_s`` after the first ``arm()``.

    Later ``arm()`` calls do not restart the countdown. ``timer_factory`` must
    return an object with ``start()`` and ``cancel()``; ``threading.Timer`` is
    used by default.
    """

    def __init__(
        self,
        duration_s: float,
        on_fire: Callable[[], None],
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self.duration_s = duration_s
        self._on_fire = on_fire
        self._timer_factory = timer_factory or _daemon_timer
        self._lock = threading.Lock()
        self._state = WatchdogState.UNARMED
        self._timer: Any = None

    @property
    def state(self) -> WatchdogState:
        return self._state

    def arm(self) -> bool:
        with self._lock:
            if self._state != WatchdogState.UNARMED:
                return False
            self._timer = self._timer_factory(self.duration_s, self._fire)
            self._state = WatchdogState.ARMED
            self._timer.start()
        logger.debug("Silence watchdog armed for %.2fs", self.duration_s)
        return True

    def cancel(self) -> None:
        with self._lock:
            if self._state != WatchdogState.ARMED:
                return
            self._state = WatchdogState.CANCELED
            timer, self._timer = self._timer, None
        timer.cancel()

    def _fire(self) -> None:
        with self._lock:
            if self._state != WatchdogState.ARMED:
                return
            self._state = WatchdogState.FIRED
            self._timer = None
        logger.info("Silence watchdog fired after %.2fs", self.duration_s)
        self._on_fire()


def _daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer
