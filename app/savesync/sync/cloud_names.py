from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from savesync.providers.rclone.transfer import TransferService
from savesync.sync.paths import sanitize_game_name

logger = logging.getLogger("cloud_names")


class CloudNameChecker:
    """Answers "does the cloud already hold saves under this game name?".

    Requests are debounced (only the last name typed within the quiet period is
    checked) and a repeat of the last checked name inside the cooldown window is
    answered from the previous result without touching the remote.
    """

    def __init__(
        self,
        transfer: TransferService,
        remote_root: str,
        quiet_period: float = 0.5,
        cooldown: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transfer = transfer
        self.remote_root = remote_root
        self.quiet_period = quiet_period
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._last_name: Optional[str] = None
        self._last_checked_at = 0.0
        self._last_result = False
        self.remote_calls = 0

    def check_now(self, name: str) -> bool:
        folder = sanitize_game_name(name)
        with self._lock:
            if folder == self._last_name and self._clock() - self._last_checked_at < self.cooldown:
                return self._last_result

        folders = self.transfer.list_directories(self.remote_root)
        exists = folder in folders
        with self._lock:
            self.remote_calls += 1
            self._last_name = folder
            self._last_checked_at = self._clock()
            self._last_result = exists
        logger.info("cloud_name_checked name=%s exists=%s", folder, exists)
        return exists

    def request(self, name: str, callback: Callable[[str, bool], None]) -> None:
        """Schedule a check; a newer request within the quiet period replaces it."""

        def fire():
            try:
                callback(name, self.check_now(name))
            except Exception:
                logger.exception("cloud_name_check_failed name=%s", name)

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.quiet_period, fire)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
