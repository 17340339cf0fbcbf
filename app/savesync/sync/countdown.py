from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("countdown")


class AutoActionCountdown:
    """Cancellable countdown that runs `on_fire` once it reaches zero.

    `on_tick(remaining)` is called once per interval, starting with the full
    duration. Cancelling before expiry leaves the pending action untouched.
    """

    def __init__(
        self,
        seconds: int,
        on_fire: Callable[[], None],
        on_tick: Optional[Callable[[int], None]] = None,
        interval: float = 1.0,
    ):
        self.seconds = seconds
        self.on_fire = on_fire
        self.on_tick = on_tick
        self.interval = interval
        self.remaining = seconds
        self.fired = False
        self._cancelled = threading.Event()
        # Guards the cancelled/fired handoff.
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "AutoActionCountdown":
        if self._thread is not None:
            raise RuntimeError("countdown_already_started")
        self._thread = threading.Thread(target=self._run, name="savesync-countdown", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> bool:
        """Stop the countdown. Returns False if the action already fired."""
        with self._state_lock:
            if self.fired:
                return False
            self._cancelled.set()
        logger.info("auto_action_cancelled remaining=%s", self.remaining)
        return True

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self):
        while self.remaining > 0:
            if self.on_tick:
                self.on_tick(self.remaining)
            if self._cancelled.wait(self.interval):
                return
            self.remaining -= 1

        with self._state_lock:
            if self._cancelled.is_set():
                return
            self.fired = True
        logger.info("auto_action_fired after=%ss", self.seconds)
        try:
            self.on_fire()
        except Exception:
            logger.exception("auto_action_failed")
