from __future__ import annotations

import logging
import queue
import threading
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHANNEL_SIZE = 256


class SignalChannel(Generic[T]):
    """Bounded hand-off between the pipeline and its consumers.

    Publishing never blocks: when the channel is full the oldest item is dropped.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: queue.Queue[T] = queue.Queue(maxsize=maxsize)
        self._publish_lock = threading.Lock()
        self.dropped = 0

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def __len__(self) -> int:
        return self._queue.qsize()

    def publish(self, item: T) -> None:
        with self._publish_lock:
            while True:
                try:
                    self._queue.put_nowait(item)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    self.dropped += 1
                    logger.warning("Signal channel full (maxsize=%d); dropped oldest item", self.maxsize)

    def get(self, timeout: float | None = None) -> T | None:
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[T]:
        items: list[T] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items
