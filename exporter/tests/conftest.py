"""
Shared test fixtures for exporter tests.

Provides config file fixtures for ExporterSettings tests and cleans every
``ENVOY_`` environment variable before each test to ensure isolation.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml


@pytest.fixture(autouse=True)
def _clean_exporter_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all ENVOY_ env vars and run each test from tmp_path.

    Individual tests then set only the vars they need.
    """
    for var in list(os.environ):
        if var.upper().startswith("ENVOY_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def config_full() -> dict[str, object]:
    """A complete, valid config document."""
    return {
        "address": "192.168.1.50",
        "serial": "122233445566",
        "username": "owner@example.com",
        "password": "hunter2",
        "jwt": "eyJ.test.jwt",
        "source": "home",
        "influxdb": "http://influx:8086",
        "influxdb_token": "influx-secret-token",
        "influxdb_org": "solar",
        "influxdb_bucket": "envoy",
        "interval": 10,
        "debug_port": 7777,
    }


@pytest.fixture()
def config_required_only() -> dict[str, object]:
    """Only required keys, authenticating with a token."""
    return {
        "address": "envoy.local",
        "serial": "999",
        "jwt": "eyJ.only.jwt",
        "influxdb": "http://influx:8086",
        "influxdb_token": "tok",
        "influxdb_org": "org",
        "influxdb_bucket": "bucket",
    }


@pytest.fixture()
def write_config(tmp_path: Path):
    """Return a helper that dumps a dict to a YAML file and returns its path."""

    def _write(data: object, name: str = "envoy.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write
