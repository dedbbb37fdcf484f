"""
Internal counters for the exporter and the debug metrics HTTP endpoint.

ExporterMetrics keeps process-level counters (scrapes, points written,
per-category fetch errors, sink write errors, session invalidations and
gateway connection attempts) on a private prometheus_client registry, and can
expose them on ``localhost:{debug_port}`` for external monitoring.

The endpoint is best-effort: a bind failure is logged and the daemon keeps
scraping without it.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import time

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

_PREFIX = "envoy_exporter"


class ExporterMetrics:
    """Process counters shared by the collector and the scrape loop.

    Only the scrape loop task and the collector it drives update these
    counters; the HTTP server thread only reads them.

    Args:
        registry: Registry to attach the metrics to. A fresh private
            registry is created when omitted so instances never collide.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._scrapes = Counter(
            f"{_PREFIX}_scrapes",
            "Completed scrape cycles",
            registry=self.registry,
        )
        self._points = Counter(
            f"{_PREFIX}_points",
            "Points produced and handed to the sink",
            registry=self.registry,
        )
        self._fetch_errors = Counter(
            f"{_PREFIX}_fetch_errors",
            "Failed gateway fetches by telemetry category",
            ["category"],
            registry=self.registry,
        )
        self._sink_errors = Counter(
            f"{_PREFIX}_sink_errors",
            "Failed batch writes to the time-series database",
            registry=self.registry,
        )
        self._session_invalidations = Counter(
            f"{_PREFIX}_session_invalidations",
            "Gateway sessions discarded after a failed liveness check",
            registry=self.registry,
        )
        self._connect_attempts = Counter(
            f"{_PREFIX}_connect_attempts",
            "Gateway connection attempts",
            registry=self.registry,
        )
        self._connect_failures = Counter(
            f"{_PREFIX}_connect_failures",
            "Failed gateway connection attempts",
            registry=self.registry,
        )
        self._last_duration = Gauge(
            f"{_PREFIX}_last_scrape_duration_seconds",
            "Duration of the most recent scrape cycle",
            registry=self.registry,
        )
        self._last_scrape = Gauge(
            f"{_PREFIX}_last_scrape_timestamp_seconds",
            "Unix time the most recent scrape cycle finished",
            registry=self.registry,
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_scrape(self, points: int, duration_s: float) -> None:
        """Record a finished scrape cycle."""
        self._scrapes.inc()
        self._points.inc(points)
        self._last_duration.set(duration_s)
        self._last_scrape.set(time.time())

    def record_fetch_error(self, category: str) -> None:
        self._fetch_errors.labels(category=category).inc()

    def record_sink_error(self) -> None:
        self._sink_errors.inc()

    def record_session_invalid(self) -> None:
        self._session_invalidations.inc()

    def record_connect(self, *, ok: bool) -> None:
        """Record one gateway connection attempt and whether it succeeded."""
        self._connect_attempts.inc()
        if not ok:
            self._connect_failures.inc()

    # ------------------------------------------------------------------
    # Endpoint
    # ------------------------------------------------------------------

    def serve(self, port: int, addr: str = "localhost") -> bool:
        """Start the metrics HTTP server in a daemon thread.

        Args:
            port: TCP port to listen on.
            addr: Interface to bind; loopback by default.

        Returns:
            ``True`` if the server started, ``False`` if binding failed.
        """
        try:
            start_http_server(port, addr=addr, registry=self.registry)
        except OSError:
            logger.error("Debug metrics server failed on %s:%d", addr, port, exc_info=True)
            return False
        logger.info("Debug metrics server listening on %s:%d", addr, port)
        return True
