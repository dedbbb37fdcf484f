"""
Pure point builder that converts Envoy telemetry into MetricPoint records.

Every function here is free of I/O and clock access: the source tag and the
timestamp are injected by the caller so one scrape cycle stamps all of its
points with the same time. Malformed device input is rejected earlier, when
the device client parses the response, so none of these functions fail.

Point shapes:
- ``{type}-line{idx}``: per-line production / consumption / net readings,
  fields P, Q, S, I_rms, V_rms, tag ``line-idx``.
- ``inverter-production-{serial}``: field P, tag ``serial``.
- ``battery-{serial}``: fields percent-full, temperature, tag ``serial``.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from exporter.src.models import MetricPoint

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from exporter.src.models import (
        Battery,
        Inverter,
        Line,
        ProductionResponse,
        TelemetrySnapshot,
    )

# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

CATEGORY_PRODUCTION = "production"
CATEGORY_CONSUMPTION = "consumption"
CATEGORY_NET = "net"
CATEGORY_INVERTER = "inverter"
CATEGORY_BATTERY = "battery"

TAG_SOURCE = "source"
TAG_MEASUREMENT_TYPE = "measurement-type"
TAG_LINE_IDX = "line-idx"
TAG_SERIAL = "serial"

FIELD_P = "P"
FIELD_Q = "Q"
FIELD_S = "S"
FIELD_I_RMS = "I_rms"
FIELD_V_RMS = "V_rms"
FIELD_PERCENT_FULL = "percent-full"
FIELD_TEMPERATURE = "temperature"

_CONSUMPTION_CATEGORIES: dict[str, str] = {
    "total-consumption": CATEGORY_CONSUMPTION,
    "net-consumption": CATEGORY_NET,
}
"""Maps the Envoy consumption ``measurementType`` label to a point category."""


def _base_tags(source_tag: str, category: str) -> dict[str, str]:
    return {TAG_SOURCE: source_tag, TAG_MEASUREMENT_TYPE: category}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def line_to_point(
    category: str,
    line: Line,
    index: int,
    source_tag: str,
    ts: datetime,
) -> MetricPoint:
    """Build the point for one circuit line of a meter block.

    Args:
        category: ``production``, ``consumption`` or ``net``.
        line: The line reading.
        index: Position of the line within its meter block.
        source_tag: Installation identifier for the ``source`` tag.
        ts: Scrape start time.
    """
    tags = _base_tags(source_tag, category)
    tags[TAG_LINE_IDX] = str(index)
    return MetricPoint(
        measurement=f"{category}-line{index}",
        ts=ts,
        tags=tags,
        fields={
            FIELD_P: line.w_now,
            FIELD_Q: line.react_pwr,
            FIELD_S: line.apprnt_pwr,
            FIELD_I_RMS: line.rms_current,
            FIELD_V_RMS: line.rms_voltage,
        },
    )


def production_points(
    response: ProductionResponse | None,
    source_tag: str,
    ts: datetime,
) -> list[MetricPoint]:
    """Build per-line points from a ``/production.json`` response.

    Only ``production`` blocks are taken from the production list. From the
    consumption list, ``total-consumption`` becomes ``consumption`` and
    ``net-consumption`` becomes ``net``. Any other label is skipped. Line
    indices restart at 0 for every block.

    Returns:
        The points in source order, or an empty list for a missing response.
    """
    if response is None:
        return []

    points: list[MetricPoint] = []
    for measure in response.production:
        if measure.measurement_type != CATEGORY_PRODUCTION:
            continue
        for idx, line in enumerate(measure.lines):
            points.append(line_to_point(CATEGORY_PRODUCTION, line, idx, source_tag, ts))

    for measure in response.consumption:
        category = _CONSUMPTION_CATEGORIES.get(measure.measurement_type)
        if category is None:
            continue
        for idx, line in enumerate(measure.lines):
            points.append(line_to_point(category, line, idx, source_tag, ts))

    return points


def inverter_points(
    inverters: Sequence[Inverter] | None,
    source_tag: str,
    ts: datetime,
) -> list[MetricPoint]:
    """Build one ``inverter-production-{serial}`` point per inverter."""
    points: list[MetricPoint] = []
    for inv in inverters or ():
        tags = _base_tags(source_tag, CATEGORY_INVERTER)
        tags[TAG_SERIAL] = inv.serial_number
        points.append(
            MetricPoint(
                measurement=f"inverter-production-{inv.serial_number}",
                ts=ts,
                tags=tags,
                fields={FIELD_P: inv.last_report_watts},
            )
        )
    return points


def battery_points(
    batteries: Sequence[Battery] | None,
    source_tag: str,
    ts: datetime,
) -> list[MetricPoint]:
    """Build one ``battery-{serial}`` point per battery."""
    points: list[MetricPoint] = []
    for bat in batteries or ():
        tags = _base_tags(source_tag, CATEGORY_BATTERY)
        tags[TAG_SERIAL] = bat.serial_num
        points.append(
            MetricPoint(
                measurement=f"battery-{bat.serial_num}",
                ts=ts,
                tags=tags,
                fields={
                    FIELD_PERCENT_FULL: bat.percent_full,
                    FIELD_TEMPERATURE: bat.temperature,
                },
            )
        )
    return points


def snapshot_points(
    snapshot: TelemetrySnapshot,
    source_tag: str,
    ts: datetime,
) -> list[MetricPoint]:
    """Union of production, inverter and battery points, in that order."""
    return (
        production_points(snapshot.production, source_tag, ts)
        + inverter_points(snapshot.inverters, source_tag, ts)
        + battery_points(snapshot.batteries, source_tag, ts)
    )
