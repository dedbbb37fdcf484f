"""
Exporter configuration loaded once at startup from a YAML file.

Uses Pydantic BaseSettings for validation. Values come from the YAML file
given on the command line; ``ENVOY_``-prefixed environment variables (for
example ``ENVOY_INFLUXDB_TOKEN``) override file values so secrets can be kept
out of the file.

The process refuses to start unless the gateway address, serial number, at
least one authentication method (jwt, or username and password) and all four
InfluxDB settings are present.

CHANGELOG:
- 2026-10-18: Initial creation
- 2026-10-18: debug_port takes precedence over the legacy expvar_port key

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

DEFAULT_CONFIG_PATH = "envoy.yaml"
DEFAULT_INTERVAL_S = 5
DEFAULT_DEBUG_PORT = 6666

_LEGACY_KEYS = {"expvar_port": "debug_port"}
"""Older config files used these names; they are renamed on load. The current
name wins when a file sets both."""


class ConfigError(Exception):
    """Raised when the config file cannot be parsed into settings input."""


class ExporterSettings(BaseSettings):
    """Runtime configuration for the Envoy exporter.

    Attributes:
        address: Gateway host name, IP or base URL.
        serial: Gateway serial number.
        username: Enlighten account e-mail.
        password: Enlighten account password.
        jwt: Pre-obtained gateway token.
        source: Value of the ``source`` tag on every point.
        influxdb: InfluxDB base URL.
        influxdb_token: InfluxDB API token.
        influxdb_org: InfluxDB organization.
        influxdb_bucket: InfluxDB bucket.
        interval: Seconds between scrape starts (0 or unset means 5).
        debug_port: Port of the local debug metrics endpoint (0 means 6666).
        comm_check: Run the gateway liveness check on every scrape.
        log_level: Root log level name.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENVOY_",
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    address: str
    serial: str
    username: str = ""
    password: str = ""
    jwt: str = ""
    source: str = ""
    influxdb: str
    influxdb_token: str
    influxdb_org: str
    influxdb_bucket: str
    interval: int = DEFAULT_INTERVAL_S
    debug_port: int = DEFAULT_DEBUG_PORT
    comm_check: bool = True
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Environment first, then values passed in from the YAML file."""
        return (env_settings, init_settings)

    @classmethod
    def from_yaml(cls, path: str | Path) -> ExporterSettings:
        """Load and validate settings from a YAML file.

        Raises:
            FileNotFoundError: If *path* does not exist.
            ConfigError: If the file is not valid YAML or not a mapping.
            pydantic.ValidationError: If required values are missing or
                invalid.
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Malformed config file {path}: {exc}") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping at the top level")

        values: dict[str, Any] = {str(key): value for key, value in data.items()}
        for legacy, current in _LEGACY_KEYS.items():
            if legacy in values:
                legacy_value = values.pop(legacy)
                values.setdefault(current, legacy_value)
        return cls(**values)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator(
        "address",
        "serial",
        "influxdb",
        "influxdb_token",
        "influxdb_org",
        "influxdb_bucket",
    )
    @classmethod
    def _must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("interval", mode="before")
    @classmethod
    def _default_interval(cls, v: Any) -> Any:
        """Unset or zero interval falls back to the default."""
        if v is None or v == "" or v == 0 or v == "0":
            return DEFAULT_INTERVAL_S
        return v

    @field_validator("interval")
    @classmethod
    def _interval_must_be_positive(cls, v: int) -> int:
        if v < 0:
            raise ValueError("interval must be >= 0 seconds")
        return v

    @field_validator("debug_port", mode="before")
    @classmethod
    def _default_debug_port(cls, v: Any) -> Any:
        if v is None or v == "" or v == 0 or v == "0":
            return DEFAULT_DEBUG_PORT
        return v

    @field_validator("debug_port")
    @classmethod
    def _debug_port_must_be_valid(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError("debug_port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def _require_authentication(self) -> ExporterSettings:
        """A token, or a username and password pair, must be configured."""
        if not self.jwt and not (self.username and self.password):
            raise ValueError(
                "missing gateway authentication: set jwt, or username and password"
            )
        return self
