"""
Envoy exporter package.

Scrapes production, inverter and battery telemetry from a local Enphase
Envoy / IQ Gateway on a fixed interval and writes it to InfluxDB v2.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""
