from __future__ import annotations

import queue
from typing import Optional

from text2rule.observability.events import ObservabilityEvent


class ObservabilityQueue:
    """Unbounded FIFO between the pipeline threads and the telemetry worker.

    ``offer`` never blocks; when the queue is disabled it drops the event.
    A single consumer calls ``take``.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._events: "queue.Queue[ObservabilityEvent]" = queue.Queue()

    def offer(self, event: ObservabilityEvent) -> bool:
        if not self.enabled:
            return False
        self._events.put_nowait(event)
        return True

    def take(self, timeout: float | None = None) -> Optional[ObservabilityEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def empty(self) -> bool:
        return self._events.empty()

    def __len__(self) -> int:
        return self._events.qsize()
