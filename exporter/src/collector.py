"""
One scrape cycle against a connected gateway client and a point sink.

scrape_once() runs the liveness check, fetches the three telemetry categories
independently, builds the points with a single cycle timestamp and writes
the batch in one sink call.

Failure policy:
- Liveness check fails: invalidate the session, write nothing, report
  ``session_invalid=True``. No category is fetched.
- A category fetch fails: logged, that category contributes no points, the
  others still run.
- The sink write fails: logged, the batch is dropped. The point count is
  still reported and the session stays valid.

CHANGELOG:
- 2026-10-18: Initial creation
- 2026-10-18: Log an empty batch at INFO

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NamedTuple

from exporter.src.models import TelemetrySnapshot
from exporter.src.points import snapshot_points

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from typing import TypeVar

    from exporter.src.envoy import DeviceClient
    from exporter.src.metrics import ExporterMetrics
    from exporter.src.sink import PointSink

    _T = TypeVar("_T")

logger = logging.getLogger(__name__)


class ScrapeResult(NamedTuple):
    """Outcome of one scrape cycle."""

    points_written: int
    session_invalid: bool


async def _fetch(
    category: str,
    fetch: Callable[[], Awaitable[_T]],
    metrics: ExporterMetrics | None,
) -> _T | None:
    """Run one category fetch, logging and swallowing its failure."""
    try:
        return await fetch()
    except Exception:
        logger.error("Error getting %s data from gateway", category, exc_info=True)
        if metrics is not None:
            metrics.record_fetch_error(category)
        return None


async def scrape_once(
    client: DeviceClient,
    sink: PointSink,
    source_tag: str,
    *,
    comm_check: bool = True,
    metrics: ExporterMetrics | None = None,
) -> ScrapeResult:
    """Execute a single fetch-transform-publish cycle.

    Args:
        client: Connected gateway client.
        sink: Destination for the point batch.
        source_tag: Value of the ``source`` tag on every point.
        comm_check: Run the liveness check before fetching.
        metrics: Counters to update, or None.

    Returns:
        ``(points_written, session_invalid)``.
    """
    ts = datetime.now(tz=UTC)

    if comm_check:
        try:
            await client.comm_check()
        except Exception:
            logger.error("Gateway liveness check failed, invalidating session", exc_info=True)
            client.invalidate_session()
            if metrics is not None:
                metrics.record_session_invalid()
            return ScrapeResult(0, True)

    snapshot = TelemetrySnapshot(
        production=await _fetch("production", client.production, metrics),
        inverters=await _fetch("inverter", client.inverters, metrics),
        batteries=await _fetch("battery", client.batteries, metrics),
    )
    points = snapshot_points(snapshot, source_tag, ts)

    if not points:
        logger.info("Scrape produced no points, skipping write")
        return ScrapeResult(0, False)

    try:
        await sink.write_points(points)
    except Exception:
        logger.error(
            "Error writing %d points to the database",
            len(points),
            exc_info=True,
        )
        if metrics is not None:
            metrics.record_sink_error()

    return ScrapeResult(len(points), False)
