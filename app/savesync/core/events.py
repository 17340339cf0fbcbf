from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, Field

logger = logging.getLogger("events")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncEvent(BaseModel):
    # e.g. "progress", "cloud_fetched", "compared", "upload_finished"
    kind: str
    game_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    at: str = Field(default_factory=_now_iso)


Subscriber = Callable[[SyncEvent], None]


class EventChannel:
    """Fan-out of engine events to subscribers on a background dispatcher thread."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()
        self._queue: "queue.Queue[SyncEvent]" = queue.Queue()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, kind: str, game_id: int | None = None, **payload) -> None:
        self._ensure_started()
        self._queue.put(SyncEvent(kind=kind, game_id=game_id, payload=payload))

    def drain(self, timeout: float = 5.0) -> bool:
        """Block until every queued event has been delivered."""
        if self._thread is None:
            return True
        done = threading.Event()

        def _wait():
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout)

    def _ensure_started(self):
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="savesync-events", daemon=True)
            self._thread.start()

    def _run(self):
        while True:
            event = self._queue.get()
            try:
                with self._subscribers_lock:
                    subscribers = list(self._subscribers)
                for callback in subscribers:
                    try:
                        callback(event)
                    except Exception:
                        logger.exception("event_subscriber_failed kind=%s", event.kind)
            finally:
                self._queue.task_done()
