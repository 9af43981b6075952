"""CloudWatch custom metrics emitter with background batching.

Two families of data points are published:

* **External calls**: count, latency and errors for every service the call
  pipeline depends on (``calendly``, ``anthropic``, ``deepgram``,
  ``elevenlabs``).
* **Session events**: call lifecycle and turn-taking signals (``started``,
  ``ended``, ``barge_in``, ``fallback``, ``tool_round_limit``, ``stt_failed``,
  ``tts_failed``) per tenant.

Metrics are collected in a thread-safe buffer.  When ``METRICS_ENABLED`` is
``"true"`` a daemon thread flushes the buffer to CloudWatch every
``FLUSH_INTERVAL_SECONDS``; otherwise points are only logged at DEBUG.

>>> from voice_receptionist.services.metrics import metrics
>>> metrics.record_success("deepgram", "transcribe", latency_ms=212.0)
>>> metrics.record_session_event("barge_in", tenant_id="bright-smiles")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "VoiceReceptionist"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher shared by every call."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # created on first flush
        self._stop = threading.Event()

        if self._enabled:
            self._start_flush_thread()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _cloudwatch(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── External calls ────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """One successful call to ``service``: a request count and its latency."""
        now = datetime.now(UTC)
        self._point("ExternalAPI/RequestCount", now, service=service, status="success")
        self._point(
            "ExternalAPI/Latency", now, value=latency_ms, unit="Milliseconds",
            service=service, operation=operation,
        )
        logger.debug("Metric: %s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """One failed call; latency is only kept when the call got a response."""
        now = datetime.now(UTC)
        self._point("ExternalAPI/RequestCount", now, service=service, status="failure")
        self._point("ExternalAPI/ErrorCount", now, service=service, error_type=error_type)
        if latency_ms > 0:
            self._point(
                "ExternalAPI/Latency", now, value=latency_ms, unit="Milliseconds",
                service=service, operation=operation,
            )
        logger.debug(
            "Metric: %s %s failed (%s) after %.1fms", service, operation, error_type, latency_ms,
        )

    # ── Session events ────────────────────────────────────────────────

    def record_session_event(self, event: str, *, tenant_id: str = "unknown") -> None:
        """Count one call lifecycle or turn-taking event for a tenant."""
        self._point(f"Session/{event}", datetime.now(UTC), tenant=tenant_id)
        logger.debug("Metric: session %s tenant=%s", event, tenant_id)

    # ── Publishing ────────────────────────────────────────────────────

    def flush(self) -> int:
        """Publish everything buffered so far.  Returns the number of points sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Dropping %d metric point(s); publishing is disabled", len(batch))
            return 0

        sent = 0
        try:
            cloudwatch = self._cloudwatch()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start:start + MAX_BATCH_SIZE]
                cloudwatch.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("CloudWatch rejected a metrics batch after %d point(s)", sent)
            return sent
        logger.info("Published %d metric point(s) to CloudWatch", sent)
        return sent

    def close(self) -> None:
        """Stop the background publisher and send what is left."""
        self._stop.set()
        self.flush()

    # ── Internal ──────────────────────────────────────────────────────

    def _point(
        self,
        name: str,
        timestamp: datetime,
        *,
        value: float = 1,
        unit: str = "Count",
        **dimensions: str,
    ) -> None:
        datum = {
            "MetricName": name,
            "Dimensions": [
                {"Name": _dimension_name(key), "Value": str(val)} for key, val in dimensions.items()
            ],
            "Timestamp": timestamp,
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(datum)

    def _start_flush_thread(self) -> None:
        def _publish_forever() -> None:
            while not self._stop.wait(FLUSH_INTERVAL_SECONDS):
                try:
                    self.flush()
                except Exception:
                    logger.exception("Background metrics publish failed")

        threading.Thread(target=_publish_forever, daemon=True, name="metrics-flush").start()
        atexit.register(self.close)
        logger.info("Publishing metrics to CloudWatch every %ds", FLUSH_INTERVAL_SECONDS)


def _dimension_name(key: str) -> str:
    # error_type -> ErrorType
    return "".join(part.capitalize() for part in key.split("_"))


metrics = MetricsClient()
