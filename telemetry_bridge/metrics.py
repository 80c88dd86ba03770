"""Metrics client for Dynatrace."""

import threading
from pathlib import Path
from typing import Any

import httpx
import structlog

log = structlog.get_logger()


class MetricsClient:
    """Buffer counters and gauges, push them to Dynatrace on flush.

    Safe to call from every worker thread. Without an endpoint and token the
    buffer is still kept (so counters can be inspected) and flush is a no-op.
    """

    def __init__(
        self,
        instance_id: str,
        endpoint: str = "",
        token_path: str = "",
        http_client: httpx.Client | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.endpoint = endpoint
        self.token_path = token_path
        self.counters: dict[str, float] = {}
        self._buffer: list[str] = []
        self._lock = threading.Lock()
        self._token: str | None = None
        self._http_client = http_client

    def _get_token(self) -> str | None:
        """Load Dynatrace token from file."""
        if self._token is not None:
            return self._token
        if not self.token_path:
            return None

        token_path = Path(self.token_path)
        if token_path.exists():
            self._token = token_path.read_text().strip()
            return self._token

        log.debug("dynatrace_token_not_found", path=str(token_path))
        return None

    def increment(self, metric: str, value: int = 1, dimensions: dict[str, Any] | None = None) -> None:
        """Increment a counter metric."""
        with self._lock:
            self.counters[metric] = self.counters.get(metric, 0) + value
        self._record(metric, value, "count", dimensions)

    def gauge(self, metric: str, value: float, dimensions: dict[str, Any] | None = None) -> None:
        """Record a gauge metric."""
        self._record(metric, value, "gauge", dimensions)

    def count(self, metric: str) -> float:
        with self._lock:
            return self.counters.get(metric, 0)

    def _record(
        self,
        metric: str,
        value: float,
        metric_type: str,
        dimensions: dict[str, Any] | None = None,
    ) -> None:
        dims = {"instance": self.instance_id}
        if dimensions:
            dims.update(dimensions)

        dim_str = ",".join(f"{k}={v}" for k, v in dims.items())
        line = f"{metric},{dim_str} {metric_type}={value}"
        with self._lock:
            self._buffer.append(line)

    def flush(self) -> None:
        """Send buffered metrics to Dynatrace."""
        with self._lock:
            lines, self._buffer = self._buffer, []
        if not lines:
            return

        token = self._get_token()
        if not token or not self.endpoint:
            log.debug("metrics_flush_skipped", reason="no endpoint or token configured")
            return

        try:
            client = self._http_client or httpx
            response = client.post(
                f"{self.endpoint}/api/v2/metrics/ingest",
                headers={
                    "Authorization": f"Api-Token {token}",
                    "Content-Type": "text/plain",
                },
                content="\n".join(lines),
                timeout=10,
            )

            if response.status_code == 202:
                log.info("metrics_flushed", count=len(lines))
            else:
                log.error(
                    "metrics_flush_failed",
                    status=response.status_code,
                    body=response.text[:500],
                )
        except httpx.HTTPError as e:
            log.warning("metrics_flush_error", error=str(e))
