"""
Unit tests for the exporter daemon main loop module.

Tests verify:
- The next scrape delay is anchored on scrape start and never negative.
- A scrape fires immediately after connecting.
- Connection failures are retried until success.
- Shutdown during the retry backoff or the interval wait exits promptly.
- An invalid session closes the client and reconnects.
- An overrunning scrape is logged as a warning and the next starts at once.
- Startup logs a config summary without secrets.
- Configuration errors exit with status 1.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from exporter.src.collector import ScrapeResult
from exporter.src.envoy import EnvoyError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> MagicMock:
    """Create a mock ExporterSettings with sensible defaults."""
    defaults = {
        "address": "192.168.1.50",
        "serial": "122233445566",
        "username": "owner@example.com",
        "password": "hunter2-secret",
        "jwt": "eyJ.secret.jwt",
        "source": "test",
        "influxdb": "http://influx:8086",
        "influxdb_token": "influx-secret-token",
        "influxdb_org": "solar",
        "influxdb_bucket": "envoy",
        "interval": 0.01,
        "debug_port": 6666,
        "comm_check": True,
        "log_level": "INFO",
    }
    defaults.update(overrides)
    settings = MagicMock()
    for key, value in defaults.items():
        setattr(settings, key, value)
    return settings


def _make_client() -> AsyncMock:
    client = AsyncMock()
    client.invalidate_session = MagicMock()
    client.close = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


class TestNextDelay:
    """The interval is anchored on the start of each scrape."""

    def test_remaining_interval(self) -> None:
        from exporter.src.main import next_delay

        assert next_delay(5, 1.5) == 3.5

    def test_overrun_yields_zero(self) -> None:
        from exporter.src.main import next_delay

        assert next_delay(5, 7.25) == 0.0

    def test_exact_interval_yields_zero(self) -> None:
        from exporter.src.main import next_delay

        assert next_delay(5, 5.0) == 0.0


# ---------------------------------------------------------------------------
# Connected scraping
# ---------------------------------------------------------------------------


class TestScrapeLoopConnected:
    @pytest.mark.asyncio
    async def test_first_scrape_runs_immediately(self) -> None:
        """With a long interval, the first scrape still fires at once."""
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        client = _make_client()

        async def _scrape(*args: object, **kwargs: object) -> ScrapeResult:
            shutdown_event.set()
            return ScrapeResult(3, False)

        with patch("exporter.src.main.scrape_once", side_effect=_scrape) as scrape:
            await asyncio.wait_for(
                scrape_loop(
                    settings=_make_settings(interval=60),
                    sink=AsyncMock(),
                    shutdown_event=shutdown_event,
                    connect=AsyncMock(return_value=client),
                ),
                timeout=2.0,
            )

        scrape.assert_awaited_once()
        assert scrape.call_args.args[2] == "test"
        assert scrape.call_args.kwargs["comm_check"] is True
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_runs_multiple_scrapes_on_one_connection(self) -> None:
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        connect = AsyncMock(return_value=_make_client())
        call_count = 0

        async def _scrape(*args: object, **kwargs: object) -> ScrapeResult:
            nonlocal call_count
            call_count += 1
            if call_count >= 3:
                shutdown_event.set()
            return ScrapeResult(1, False)

        with patch("exporter.src.main.scrape_once", side_effect=_scrape):
            await asyncio.wait_for(
                scrape_loop(
                    settings=_make_settings(),
                    sink=AsyncMock(),
                    shutdown_event=shutdown_event,
                    connect=connect,
                ),
                timeout=5.0,
            )

        assert call_count == 3
        connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_during_interval_wait(self) -> None:
        """Shutdown wakes the loop from a long interval wait."""
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()

        async def _trigger_shutdown() -> None:
            await asyncio.sleep(0.05)
            shutdown_event.set()

        with patch(
            "exporter.src.main.scrape_once",
            AsyncMock(return_value=ScrapeResult(1, False)),
        ) as scrape:
            await asyncio.wait_for(
                asyncio.gather(
                    scrape_loop(
                        settings=_make_settings(interval=60),
                        sink=AsyncMock(),
                        shutdown_event=shutdown_event,
                        connect=AsyncMock(return_value=_make_client()),
                    ),
                    _trigger_shutdown(),
                ),
                timeout=2.0,
            )

        scrape.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_overrun_logs_warning_and_continues(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        call_count = 0

        async def _slow_scrape(*args: object, **kwargs: object) -> ScrapeResult:
            nonlocal call_count
            call_count += 1
            await asyncio.sleep(0.03)
            if call_count >= 2:
                shutdown_event.set()
            return ScrapeResult(1, False)

        with (
            patch("exporter.src.main.scrape_once", side_effect=_slow_scrape),
            caplog.at_level(logging.WARNING, logger="exporter.src.main"),
        ):
            await asyncio.wait_for(
                scrape_loop(
                    settings=_make_settings(interval=0.01),
                    sink=AsyncMock(),
                    shutdown_event=shutdown_event,
                    connect=AsyncMock(return_value=_make_client()),
                ),
                timeout=5.0,
            )

        assert call_count == 2
        assert "longer than" in caplog.text
        assert all(r.levelno == logging.WARNING for r in caplog.records if "longer than" in r.msg)

    @pytest.mark.asyncio
    async def test_records_scrape_metrics(self) -> None:
        from exporter.src.main import scrape_loop
        from exporter.src.metrics import ExporterMetrics

        shutdown_event = asyncio.Event()
        metrics = ExporterMetrics()

        async def _scrape(*args: object, **kwargs: object) -> ScrapeResult:
            shutdown_event.set()
            return ScrapeResult(4, False)

        with patch("exporter.src.main.scrape_once", side_effect=_scrape) as scrape:
            await asyncio.wait_for(
                scrape_loop(
                    settings=_make_settings(),
                    sink=AsyncMock(),
                    shutdown_event=shutdown_event,
                    connect=AsyncMock(return_value=_make_client()),
                    metrics=metrics,
                ),
                timeout=2.0,
            )

        assert scrape.call_args.kwargs["metrics"] is metrics
        sample = metrics.registry.get_sample_value
        assert sample("envoy_exporter_scrapes_total") == 1.0
        assert sample("envoy_exporter_points_total") == 4.0
        assert sample("envoy_exporter_connect_attempts_total") == 1.0


# ---------------------------------------------------------------------------
# Connecting / reconnecting
# ---------------------------------------------------------------------------


class TestScrapeLoopConnection:
    @pytest.mark.asyncio
    async def test_connection_failures_are_retried(self) -> None:
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        client = _make_client()
        connect = AsyncMock(
            side_effect=[EnvoyError("refused"), EnvoyError("refused"), client]
        )

        async def _scrape(*args: object, **kwargs: object) -> ScrapeResult:
            shutdown_event.set()
            return ScrapeResult(1, False)

        with patch("exporter.src.main.scrape_once", side_effect=_scrape) as scrape:
            await asyncio.wait_for(
                scrape_loop(
                    settings=_make_settings(),
                    sink=AsyncMock(),
                    shutdown_event=shutdown_event,
                    connect=connect,
                    retry_delay_s=0.01,
                ),
                timeout=2.0,
            )

        assert connect.await_count == 3
        assert scrape.call_args.args[0] is client

    @pytest.mark.asyncio
    async def test_shutdown_during_retry_backoff(self) -> None:
        """A shutdown arriving during the backoff ends the loop without waiting."""
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        connect = AsyncMock(side_effect=EnvoyError("refused"))

        async def _trigger_shutdown() -> None:
            await asyncio.sleep(0.05)
            shutdown_event.set()

        with patch("exporter.src.main.scrape_once") as scrape:
            await asyncio.wait_for(
                asyncio.gather(
                    scrape_loop(
                        settings=_make_settings(),
                        sink=AsyncMock(),
                        shutdown_event=shutdown_event,
                        connect=connect,
                        retry_delay_s=30.0,
                    ),
                    _trigger_shutdown(),
                ),
                timeout=2.0,
            )

        connect.assert_awaited_once()
        scrape.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_session_reconnects(self) -> None:
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        first, second = _make_client(), _make_client()
        connect = AsyncMock(side_effect=[first, second])

        async def _scrape(client: object, *args: object, **kwargs: object) -> ScrapeResult:
            if client is first:
                return ScrapeResult(0, True)
            shutdown_event.set()
            return ScrapeResult(2, False)

        with patch("exporter.src.main.scrape_once", side_effect=_scrape) as scrape:
            await asyncio.wait_for(
                scrape_loop(
                    settings=_make_settings(),
                    sink=AsyncMock(),
                    shutdown_event=shutdown_event,
                    connect=connect,
                    reconnect_pause_s=0.01,
                ),
                timeout=2.0,
            )

        assert connect.await_count == 2
        assert scrape.await_count == 2
        first.close.assert_awaited_once()
        second.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_before_start_does_nothing(self) -> None:
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        shutdown_event.set()
        connect = AsyncMock()

        await scrape_loop(
            settings=_make_settings(),
            sink=AsyncMock(),
            shutdown_event=shutdown_event,
            connect=connect,
        )

        connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_error_does_not_crash(self) -> None:
        from exporter.src.main import scrape_loop

        shutdown_event = asyncio.Event()
        client = _make_client()
        client.close = AsyncMock(side_effect=RuntimeError("already closed"))

        async def _scrape(*args: object, **kwargs: object) -> ScrapeResult:
            shutdown_event.set()
            return ScrapeResult(1, False)

        with patch("exporter.src.main.scrape_once", side_effect=_scrape):
            await scrape_loop(
                settings=_make_settings(),
                sink=AsyncMock(),
                shutdown_event=shutdown_event,
                connect=AsyncMock(return_value=client),
            )

        client.close.assert_awaited_once()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


class TestStartupLogging:
    """Startup logs the effective config without secrets."""

    def test_log_config_summary_contains_address(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        from exporter.src.main import log_config_summary

        with caplog.at_level(logging.INFO, logger="exporter.src.main"):
            log_config_summary(_make_settings())

        assert "192.168.1.50" in caplog.text
        assert "envoy" in caplog.text

    def test_log_config_summary_hides_secrets(self, caplog: pytest.LogCaptureFixture) -> None:
        from exporter.src.main import log_config_summary

        with caplog.at_level(logging.INFO, logger="exporter.src.main"):
            log_config_summary(_make_settings())

        assert "hunter2-secret" not in caplog.text
        assert "eyJ.secret.jwt" not in caplog.text
        assert "influx-secret-token" not in caplog.text
        assert "sha256=" in caplog.text


class TestEntrypoint:
    def test_parse_args_default_config(self) -> None:
        from exporter.src.main import parse_args

        assert parse_args([]).config == "envoy.yaml"
        assert parse_args(["--config", "/etc/envoy.yaml"]).config == "/etc/envoy.yaml"

    @pytest.mark.asyncio
    async def test_missing_config_returns_error(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        from exporter.src.main import async_main

        with caplog.at_level(logging.ERROR, logger="exporter.src.main"):
            status = await async_main(str(tmp_path / "missing.yaml"))

        assert status == 1
        assert "Configuration error" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_config_returns_error(
        self, write_config, config_required_only: dict[str, object]
    ) -> None:
        from exporter.src.main import async_main

        del config_required_only["influxdb_bucket"]
        status = await async_main(str(write_config(config_required_only)))

        assert status == 1

    def test_main_exits_non_zero_on_bad_config(self, tmp_path: Path) -> None:
        from exporter.src.main import main

        with (
            patch("exporter.src.main.configure_logging"),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["--config", str(tmp_path / "missing.yaml")])

        assert exc_info.value.code == 1
