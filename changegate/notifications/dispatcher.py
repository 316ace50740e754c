"""Fire-and-forget notification fan-out over a bounded worker pool."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterable, Sequence

from changegate.models.domain import Notification
from changegate.notifications.channels import Notifier

_logger = logging.getLogger(__name__)

_STOP = object()


class NotificationDispatcher:
    """Queues notifications and delivers them to every channel.

    With ``workers=0`` delivery happens inline on the caller's thread. Either
    way a failing channel is logged and never propagates to the caller.
    """

    def __init__(self, channels: Sequence[Notifier], *, workers: int = 2, queue_size: int = 256) -> None:
        self._channels = list(channels)
        self._workers = max(workers, 0)
        self._queue: queue.Queue = queue.Queue(maxsize=max(queue_size, 1))
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._closed = False

    def start(self) -> None:
        with self._lock:
            if self._threads or self._workers == 0 or self._closed:
                return
            for index in range(self._workers):
                thread = threading.Thread(
                    target=self._run,
                    name=f"changegate-notify-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)

    def notify(self, notification: Notification) -> bool:
        """Enqueue ``notification``; returns False if it was dropped."""

        if self._closed:
            _logger.warning("Dispatcher closed; dropping %s for %s", notification.type.value, notification.user_id)
            return False
        if self._workers == 0:
            self._deliver(notification)
            return True
        self.start()
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            _logger.warning(
                "Notification queue full; dropping %s for %s",
                notification.type.value,
                notification.user_id,
            )
            return False
        return True

    def notify_many(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            self.notify(notification)

    def join(self) -> None:
        """Block until every queued notification has been processed."""

        if self._threads:
            self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            threads = list(self._threads)
        for _ in threads:
            self._queue.put(_STOP)
        for thread in threads:
            thread.join(timeout)
        for channel in self._channels:
            close = getattr(channel, "close", None)
            if close is not None:
                close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, notification: Notification) -> None:
        for channel in self._channels:
            try:
                channel.deliver(notification)
            except Exception:
                _logger.exception(
                    "Channel %s failed to deliver %s to %s",
                    channel.__class__.__name__,
                    notification.type.value,
                    notification.user_id,
                )
