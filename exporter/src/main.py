"""
Envoy exporter daemon: scrape loop, logging setup and CLI entrypoint.

The scrape loop owns the gateway client lifecycle:

1. **Connecting**: build an authenticated client; on failure wait
   CONNECT_RETRY_S and try again, indefinitely.
2. **Connected**: scrape immediately, then once per interval. The interval
   is anchored on the start of each scrape; an overrun is logged as a
   warning and the next scrape starts at once.
3. **Reconnecting**: when a scrape reports an invalid session, the client
   is closed and, after a short pause, the loop goes back to connecting.

A shared asyncio.Event set by SIGTERM/SIGINT is checked at every wait and at
the top of each iteration. An in-flight scrape, including its single sink
write, always finishes before the loop exits.

Structured JSON logging is used for all events. Process counters are exposed
on a best-effort debug endpoint on ``localhost:{debug_port}``.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import hashlib
import json
import logging
import platform
import signal
import sys
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from exporter.src.collector import scrape_once
from exporter.src.config import DEFAULT_CONFIG_PATH, ConfigError, ExporterSettings
from exporter.src.envoy import EnvoyClient
from exporter.src.metrics import ExporterMetrics
from exporter.src.sink import InfluxSink

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from exporter.src.envoy import DeviceClient
    from exporter.src.sink import PointSink

    ConnectFn = Callable[[ExporterSettings], Awaitable[DeviceClient]]

logger = logging.getLogger(__name__)

CONNECT_RETRY_S: float = 5.0
"""Delay between failed gateway connection attempts."""

RECONNECT_PAUSE_S: float = 1.0
"""Pause after an invalidated session before reconnecting."""


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging on stderr for the daemon."""

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: ExporterSettings) -> None:
    """Log the effective configuration at startup, without secrets."""
    logger.info(
        "Envoy exporter starting with config: "
        "address=%s, serial=%s, username=%s, source=%s, interval=%s, "
        "comm_check=%s, debug_port=%s, influxdb=%s, influxdb_org=%s, "
        "influxdb_bucket=%s, password_masked=%s, jwt_masked=%s, "
        "influxdb_token_masked=%s, python=%s",
        settings.address,
        settings.serial,
        settings.username,
        settings.source,
        settings.interval,
        settings.comm_check,
        settings.debug_port,
        settings.influxdb,
        settings.influxdb_org,
        settings.influxdb_bucket,
        _masked_token(settings.password),
        _masked_token(settings.jwt),
        _masked_token(settings.influxdb_token),
        platform.python_version(),
    )


# ---------------------------------------------------------------------------
# Timing helpers
# ---------------------------------------------------------------------------


def next_delay(interval_s: float, elapsed_s: float) -> float:
    """Seconds to wait before the next scrape, anchored on scrape start.

    Never negative: an overrunning scrape yields 0.
    """
    return max(0.0, interval_s - elapsed_s)


async def _wait(shutdown_event: asyncio.Event, timeout_s: float) -> bool:
    """Sleep up to *timeout_s*, waking early on shutdown.

    Returns:
        True if shutdown has been requested.
    """
    if timeout_s > 0 and not shutdown_event.is_set():
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=timeout_s)
    return shutdown_event.is_set()


# ---------------------------------------------------------------------------
# Loop stages
# ---------------------------------------------------------------------------


async def _connect_envoy(settings: ExporterSettings) -> DeviceClient:
    return await EnvoyClient.connect(
        address=settings.address,
        serial=settings.serial,
        username=settings.username,
        password=settings.password,
        jwt=settings.jwt,
    )


async def _connect_with_retry(
    *,
    settings: ExporterSettings,
    connect: ConnectFn,
    shutdown_event: asyncio.Event,
    retry_delay_s: float,
    metrics: ExporterMetrics | None,
) -> DeviceClient | None:
    """Connect to the gateway, retrying until success or shutdown.

    Returns:
        The connected client, or None if shutdown was requested first.
    """
    while not shutdown_event.is_set():
        logger.info("Connecting to gateway at %s", settings.address)
        try:
            client = await connect(settings)
        except Exception:
            logger.error("Error connecting to gateway", exc_info=True)
            if metrics is not None:
                metrics.record_connect(ok=False)
            logger.info("Retrying connection in %.0f seconds", retry_delay_s)
            if await _wait(shutdown_event, retry_delay_s):
                break
            continue

        if metrics is not None:
            metrics.record_connect(ok=True)
        return client
    return None


async def _scrape_connected(
    *,
    client: DeviceClient,
    sink: PointSink,
    settings: ExporterSettings,
    shutdown_event: asyncio.Event,
    metrics: ExporterMetrics | None,
) -> bool:
    """Scrape on the configured cadence while the session stays valid.

    Returns:
        True if the session was invalidated, False on shutdown.
    """
    while not shutdown_event.is_set():
        started = time.monotonic()
        result = await scrape_once(
            client,
            sink,
            settings.source,
            comm_check=settings.comm_check,
            metrics=metrics,
        )
        elapsed = time.monotonic() - started
        logger.info(
            "Scrape finished: duration=%.3fs points=%d",
            elapsed,
            result.points_written,
        )
        if metrics is not None:
            metrics.record_scrape(result.points_written, elapsed)

        if result.session_invalid:
            return True

        if elapsed > settings.interval:
            logger.warning(
                "Scrape took %.3fs, longer than the %ss interval; starting next scrape now",
                elapsed,
                settings.interval,
            )
        if await _wait(shutdown_event, next_delay(settings.interval, elapsed)):
            break
    return False


async def _close_client(client: DeviceClient) -> None:
    try:
        await client.close()
    except Exception:
        logger.warning("Error closing gateway client", exc_info=True)


async def scrape_loop(
    *,
    settings: ExporterSettings,
    sink: PointSink,
    shutdown_event: asyncio.Event,
    connect: ConnectFn | None = None,
    metrics: ExporterMetrics | None = None,
    retry_delay_s: float = CONNECT_RETRY_S,
    reconnect_pause_s: float = RECONNECT_PAUSE_S,
) -> None:
    """Drive scrape cycles until shutdown_event is set.

    Args:
        settings: Loaded configuration.
        sink: Destination for point batches.
        shutdown_event: Event to signal graceful shutdown.
        connect: Coroutine building a connected client from settings.
            Defaults to an authenticated EnvoyClient.
        metrics: Counters to update, or None.
        retry_delay_s: Wait between failed connection attempts.
        reconnect_pause_s: Wait after an invalid session before reconnecting.
    """
    connect_fn = connect if connect is not None else _connect_envoy
    logger.info("Scrape loop started (interval=%ss)", settings.interval)

    while not shutdown_event.is_set():
        client = await _connect_with_retry(
            settings=settings,
            connect=connect_fn,
            shutdown_event=shutdown_event,
            retry_delay_s=retry_delay_s,
            metrics=metrics,
        )
        if client is None:
            break

        try:
            session_invalid = await _scrape_connected(
                client=client,
                sink=sink,
                settings=settings,
                shutdown_event=shutdown_event,
                metrics=metrics,
            )
        finally:
            await _close_client(client)

        if not session_invalid:
            break
        logger.warning("Gateway session invalid, reconnecting")
        if await _wait(shutdown_event, reconnect_pause_s):
            break

    logger.info("Scrape loop stopped")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Scrape an Enphase Envoy gateway and write telemetry to InfluxDB",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})",
    )
    return parser.parse_args(argv)


async def async_main(config_path: str) -> int:
    """Load config, start the metrics endpoint and run the scrape loop.

    Returns:
        Process exit status: 1 on configuration errors, 0 after a graceful
        shutdown.
    """
    logger.info("Reading config from %s", config_path)
    try:
        settings = ExporterSettings.from_yaml(config_path)
    except (OSError, ConfigError, ValidationError) as exc:
        logger.error("Configuration error in %s: %s", config_path, exc)
        return 1

    level = logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(level)
    log_config_summary(settings)

    metrics = ExporterMetrics()
    metrics.serve(settings.debug_port)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, shutdown_event)

    async with InfluxSink(
        url=settings.influxdb,
        token=settings.influxdb_token,
        org=settings.influxdb_org,
        bucket=settings.influxdb_bucket,
    ) as sink:
        await scrape_loop(
            settings=settings,
            sink=sink,
            shutdown_event=shutdown_event,
            metrics=metrics,
        )

    logger.info("Shutdown complete")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Synchronous entrypoint for the exporter daemon."""
    args = parse_args(argv)
    configure_logging()
    raise SystemExit(asyncio.run(async_main(args.config)))


if __name__ == "__main__":
    main()
