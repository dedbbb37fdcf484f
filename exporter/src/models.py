"""
Pydantic models for Envoy telemetry records and emitted metric points.

Device-side models mirror the JSON documents served by the Envoy / IQ Gateway
(``/production.json``, ``/api/v1/production/inverters`` and
``/ivp/ensemble/inventory``). They ignore unknown keys and default missing
readings to zero so a partially populated response still parses.

MetricPoint is the database-agnostic record handed to the sink. It is frozen
once built, tags and fields included, and renders itself as an
``influxdb_client.Point`` on demand.

CHANGELOG:
- 2026-10-18: Initial creation
- 2026-10-18: Make MetricPoint tags and fields read-only

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from types import MappingProxyType

from influxdb_client import Point, WritePrecision
from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Device telemetry
# ---------------------------------------------------------------------------


class _EnvoyRecord(BaseModel):
    """Base for Envoy JSON records: accept aliases and ignore extra keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Line(_EnvoyRecord):
    """One circuit line (phase) reading of a production or consumption meter.

    Attributes:
        w_now: Real power in watts.
        react_pwr: Reactive power in VAr.
        apprnt_pwr: Apparent power in VA.
        rms_current: RMS current in amperes.
        rms_voltage: RMS voltage in volts.
    """

    w_now: float = Field(default=0.0, alias="wNow")
    react_pwr: float = Field(default=0.0, alias="reactPwr")
    apprnt_pwr: float = Field(default=0.0, alias="apprntPwr")
    rms_current: float = Field(default=0.0, alias="rmsCurrent")
    rms_voltage: float = Field(default=0.0, alias="rmsVoltage")


class Measurement(_EnvoyRecord):
    """A labelled meter block holding zero or more per-line readings."""

    measurement_type: str = Field(default="", alias="measurementType")
    lines: list[Line] = Field(default_factory=list)


class ProductionResponse(_EnvoyRecord):
    """Body of ``/production.json?details=1``."""

    production: list[Measurement] = Field(default_factory=list)
    consumption: list[Measurement] = Field(default_factory=list)


class Inverter(_EnvoyRecord):
    """One microinverter entry of ``/api/v1/production/inverters``."""

    serial_number: str = Field(alias="serialNumber")
    last_report_watts: float = Field(default=0.0, alias="lastReportWatts")


class Battery(_EnvoyRecord):
    """One Encharge battery entry of ``/ivp/ensemble/inventory``."""

    serial_num: str
    percent_full: float = Field(default=0.0, alias="percentFull")
    temperature: float = 0.0


class TelemetrySnapshot(BaseModel):
    """Raw results of one scrape cycle; any category may be missing."""

    production: ProductionResponse | None = None
    inverters: list[Inverter] | None = None
    batteries: list[Battery] | None = None


# ---------------------------------------------------------------------------
# Emitted points
# ---------------------------------------------------------------------------


class MetricPoint(BaseModel):
    """A single time-series point ready to be written to the sink.

    Attributes:
        measurement: Measurement name, e.g. ``production-line0``.
        ts: Scrape start time, shared by every point of one cycle.
        tags: Read-only string tags; always includes ``source`` and
            ``measurement-type``.
        fields: Read-only numeric field values.
    """

    model_config = ConfigDict(frozen=True)

    measurement: str
    ts: datetime
    tags: Mapping[str, str]
    fields: Mapping[str, float]

    @field_validator("tags", "fields")
    @classmethod
    def _read_only(cls, v: Mapping[str, object]) -> Mapping[str, object]:
        return MappingProxyType(dict(v))

    def to_influx(self) -> Point:
        """Render this record as an InfluxDB line-protocol point."""
        point = Point(self.measurement)
        for key, value in self.tags.items():
            point.tag(key, value)
        for key, value in self.fields.items():
            point.field(key, value)
        return point.time(self.ts, WritePrecision.S)
