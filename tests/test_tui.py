"""Tests for the dashboard app."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_metrics, make_privileged
from textual.widgets import DataTable

from gjallarhorn.aggregator import HistoryAggregator
from gjallarhorn.config import Config
from gjallarhorn.models import FilesystemUsage, GpuMetrics, SystemInfo


def fake_monitor():
    aggregator = HistoryAggregator(system=SystemInfo(hostname="testbox"))
    monitor = MagicMock()
    monitor.aggregator = aggregator
    monitor.store = aggregator.store
    monitor.start = AsyncMock()
    monitor.stop = AsyncMock()
    monitor.poller.period = 0.5
    monitor.poller.cadence_ms = 500
    monitor.set_cadence.return_value = 400
    return monitor


def test_tui_app_starts_without_crash(tmp_home):
    """TUI app initializes and writes a default config file."""
    from gjallarhorn.tui.app import GjallarhornApp

    config = Config()
    with patch("gjallarhorn.tui.app.app_log.config_created") as created:
        app = GjallarhornApp(config=config, monitor=fake_monitor())
    assert app is not None
    assert config.config_path.exists()
    created.assert_called_once_with(str(config.config_path))


@pytest.mark.asyncio
async def test_tui_renders_store_contents(tmp_home):
    from gjallarhorn.tui.app import (
        CpuPanel,
        FilesystemPanel,
        GjallarhornApp,
        HardwarePanel,
        MetricPanel,
    )

    monitor = fake_monitor()
    gpu = GpuMetrics(name="RTX 3080", utilization=55.0, memory_used=1024, memory_total=4096)
    monitor.aggregator.merge(make_metrics(gpu=gpu))
    monitor.aggregator.merge(make_privileged())

    app = GjallarhornApp(config=Config(), monitor=monitor)
    async with app.run_test() as pilot:
        app.refresh_from_store()
        await pilot.pause()

        monitor.start.assert_awaited_once()
        table = app.query_one(HardwarePanel).query_one(DataTable)
        assert table.row_count == 1
        assert app.query_one("#gpu", MetricPanel).display is True
        assert app.query_one("#filesystems", FilesystemPanel).display is True
        assert "3.70GHz" in app.query_one("#cpu", CpuPanel).border_title

    monitor.stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_tui_cadence_keys(tmp_home):
    from gjallarhorn.tui.app import GjallarhornApp

    monitor = fake_monitor()
    app = GjallarhornApp(config=Config(), monitor=monitor)
    async with app.run_test() as pilot:
        await pilot.press("plus")
        monitor.set_cadence.assert_called_with(400)
        await pilot.press("minus")
        monitor.set_cadence.assert_called_with(600)


@pytest.mark.asyncio
async def test_tui_toggle_dark_persists(tmp_home):
    from gjallarhorn.tui.app import GjallarhornApp

    config = Config()
    app = GjallarhornApp(config=config, monitor=fake_monitor())
    async with app.run_test() as pilot:
        await pilot.press("d")
        assert app.theme == "textual-light"

    assert config.theme.dark_mode is False
    assert Config.load().theme.dark_mode is False


def test_filesystem_text():
    from gjallarhorn.tui.app import USAGE_BAR_WIDTH, filesystem_text

    mounts = (
        FilesystemUsage("/dev/nvme0n1p2", "/", "ext4", 1000, 400),
        FilesystemUsage("/dev/nvme0n1p1", "/boot/efi", "vfat", 1000, 1000),
    )
    root, efi = filesystem_text(mounts, "cyan").plain.splitlines()

    assert root.startswith("/ ")
    assert root.count("█") == round(USAGE_BAR_WIDTH * 0.6)
    assert " 60.0%" in root
    assert root.endswith("/dev/nvme0n1p2 ext4")
    assert "█" not in efi
    assert "░" * USAGE_BAR_WIDTH in efi


def test_cpu_title_and_gpu_power():
    from gjallarhorn.tui.app import _gpu_power, cpu_title

    agg = HistoryAggregator(
        system=SystemInfo(cpu_brand="AMD Ryzen 9 5900X", physical_cores=12, logical_cores=24)
    )
    assert cpu_title(agg.get_snapshot()) == "CPU · AMD Ryzen 9 5900X · 12C/24T"
    agg.merge(make_metrics(cpu_freq_mhz=3712.0))
    assert cpu_title(agg.get_snapshot()) == "CPU · AMD Ryzen 9 5900X · 12C/24T · 3.71GHz"

    assert _gpu_power(None, 320.0) is None
    assert _gpu_power(150.4, None) == "150W"
    assert _gpu_power(150.4, 320.0) == "150/320W"
