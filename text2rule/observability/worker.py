from __future__ import annotations

import logging
import threading
from typing import Optional

import httpx

from text2rule.config import ObservabilitySettings
from text2rule.errors import ConfigurationError
from text2rule.observability.events import ObservabilityEvent, to_ingestion_batch
from text2rule.observability.event_queue import ObservabilityQueue

logger = logging.getLogger(__name__)


class LangfuseSink:
    """Posts one ingestion batch per event with basic auth."""

    def __init__(
        self,
        url: str,
        public_key: str,
        secret_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._auth = httpx.BasicAuth(public_key, secret_key)

    def send(self, event: ObservabilityEvent) -> None:
        response = self._client.post(self.url, json=to_ingestion_batch(event), auth=self._auth)
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class TelemetryWorker(threading.Thread):
    def __init__(self, queue: ObservabilityQueue, sink, poll_interval: float = 0.2) -> None:
        super().__init__(name="telemetry-worker", daemon=True)
        self.queue = queue
        self.sink = sink
        self.poll_interval = poll_interval
        self.sent = 0
        self.failed = 0
        self._stop_requested = threading.Event()

    def run(self) -> None:
        logger.info("telemetry worker started")
        while not self._stop_requested.is_set() or not self.queue.empty():
            event = self.queue.take(timeout=self.poll_interval)
            if event is None:
                continue
            try:
                self.sink.send(event)
                self.sent += 1
            except Exception as exc:
                self.failed += 1
                logger.warning("failed to ship telemetry event for %s: %s", event.agent_name, exc)
        logger.info("telemetry worker stopped (sent=%d failed=%d)", self.sent, self.failed)

    def stop(self, timeout: float | None = None) -> None:
        """Ask the loop to exit once the queue is drained, then wait for it."""
        self._stop_requested.set()
        if self.is_alive():
            self.join(timeout)
        if self.is_alive():
            logger.warning("telemetry worker still draining after %ss, leaving sink open", timeout)
            return
        close = getattr(self.sink, "close", None)
        if close is not None:
            close()


def start_telemetry(
    settings: ObservabilitySettings, queue: ObservabilityQueue
) -> Optional[TelemetryWorker]:
    if not settings.enabled:
        return None
    if not (settings.url and settings.public_key and settings.secret_key):
        raise ConfigurationError(
            "Observability is enabled but url, LANGFUSE_PUBLIC_KEY or LANGFUSE_SECRET_KEY is missing."
        )
    sink = LangfuseSink(
        settings.url,
        settings.public_key,
        settings.secret_key,
        timeout=settings.timeout_seconds,
    )
    worker = TelemetryWorker(queue, sink)
    worker.start()
    return worker
