"""
InfluxDB v2 sink for MetricPoint batches.

Wraps the asynchronous influxdb-client write API. A batch is written in a
single call at second precision; the caller decides what to do on failure
(the collector logs it and drops the batch).

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from influxdb_client import WritePrecision
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync

if TYPE_CHECKING:
    from exporter.src.models import MetricPoint

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """Raised when a batch could not be written to the database."""


class PointSink(Protocol):
    """Anything that can durably store a non-empty batch of points."""

    async def write_points(self, points: list[MetricPoint]) -> None: ...


class InfluxSink:
    """Writes MetricPoint batches to one InfluxDB v2 bucket.

    Must be created inside a running event loop: the underlying aiohttp
    session binds to it.

    Args:
        url: InfluxDB base URL, e.g. ``http://influx:8086``.
        token: API token with write access to *bucket*.
        org: Organization name or ID.
        bucket: Destination bucket.
    """

    def __init__(self, *, url: str, token: str, org: str, bucket: str) -> None:
        self._org = org
        self._bucket = bucket
        self._client = InfluxDBClientAsync(url=url, token=token, org=org)
        self._write_api = self._client.write_api()

    async def write_points(self, points: list[MetricPoint]) -> None:
        """Write *points* in one request.

        Raises:
            SinkError: If the client raises or reports an unsuccessful write.
        """
        records = [p.to_influx() for p in points]
        try:
            ok = await self._write_api.write(
                bucket=self._bucket,
                org=self._org,
                record=records,
                write_precision=WritePrecision.S,
            )
        except Exception as exc:
            raise SinkError(f"InfluxDB write of {len(records)} points failed: {exc}") from exc
        if not ok:
            raise SinkError(f"InfluxDB rejected write of {len(records)} points")
        logger.debug("Wrote %d points to bucket %s", len(records), self._bucket)

    async def close(self) -> None:
        await self._client.close()

    async def __aenter__(self) -> InfluxSink:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
