"""Real-time hardware dashboard.

The dashboard is a pure reader: a timer fetches the current composite
snapshot from the store and redraws. All sampling and process handling
happens in the monitor pipeline.
"""

from typing import Any

import structlog
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.timer import Timer
from textual.widgets import DataTable, Footer, Label, Static

from gjallarhorn import logging as app_log
from gjallarhorn.config import Config
from gjallarhorn.formatting import (
    format_bytes,
    format_capacity,
    format_frequency,
    format_link_speed,
    format_percent,
    format_rate,
    format_uptime,
)
from gjallarhorn.models import UNAVAILABLE, FilesystemUsage, Health
from gjallarhorn.monitor import Monitor
from gjallarhorn.store import CompositeSnapshot, DataStatus
from gjallarhorn.tui.sparkline import Sparkline, render_series

log = structlog.get_logger()

CADENCE_STEP_MS = 100
SERIES_WIDTH = 40
USAGE_BAR_WIDTH = 20

_STATUS_STYLES = {
    DataStatus.FULL: "bold green",
    DataStatus.PARTIAL: "bold yellow",
    DataStatus.DEGRADED: "bold red",
}

_HEALTH_STYLES = {
    Health.PASSED: "green",
    Health.FAILED: "bold red",
    Health.WARNING: "yellow",
    Health.UNAVAILABLE: "dim",
}


class StatusBar(Static):
    """Host identity, data status and worker state."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
    }
    """

    def show(self, snapshot: CompositeSnapshot, cadence_ms: int) -> None:
        system = snapshot.system
        text = Text()
        text.append(f"{system.hostname}  ", style="bold")
        text.append(f"{system.os_name} · {system.kernel} · {system.boot_mode}  ", style="dim")
        text.append(f"up {format_uptime(snapshot.uptime)}  ", style="dim")
        text.append(snapshot.status.value.upper(), style=_STATUS_STYLES[snapshot.status])
        text.append(f"  worker {snapshot.worker_state.value}  ·  {cadence_ms}ms", style="dim")
        self.update(text)


def cpu_title(snapshot: CompositeSnapshot) -> str:
    system = snapshot.system
    parts = ["CPU", system.cpu_brand]
    if system.physical_cores and system.logical_cores:
        parts.append(f"{system.physical_cores}C/{system.logical_cores}T")
    if snapshot.metrics is not None and snapshot.metrics.cpu_freq_mhz is not None:
        parts.append(format_frequency(snapshot.metrics.cpu_freq_mhz))
    return " · ".join(parts)


class CpuPanel(Static):
    """One sparkline row per logical core."""

    DEFAULT_CSS = """
    CpuPanel {
        width: 1fr;
        height: auto;
        border: solid $primary;
        padding: 0 1;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "CPU"

    def show(self, snapshot: CompositeSnapshot, config: Config) -> None:
        self.border_title = cpu_title(snapshot)
        keys = sorted(snapshot.series_keys("cpu."), key=lambda k: int(k.split(".")[1]))
        if not keys:
            self.update(Text("waiting for samples", style="dim"))
            return
        text = Text()
        for i, key in enumerate(keys):
            core = int(key.split(".")[1])
            values = snapshot.series(key)
            if i:
                text.append("\n")
            text.append(f"{core:>3} ", style="dim")
            text.append(
                render_series(values, SERIES_WIDTH, color=config.theme.core_color(core))
            )
            text.append(f" {format_percent(values[-1] if values else None)}")
        self.update(text)


class MetricPanel(Vertical):
    """Title line plus a sparkline for a single percent series."""

    DEFAULT_CSS = """
    MetricPanel {
        height: auto;
        border: solid $primary;
        padding: 0 1;
    }
    MetricPanel Sparkline {
        height: 2;
    }
    """

    def __init__(self, title: str, color: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._title = title
        self._color = color

    def compose(self) -> ComposeResult:
        yield Label("", classes="detail")
        yield Sparkline(color=self._color, height=2)

    def on_mount(self) -> None:
        self.border_title = self._title

    def show(self, detail: str, values: tuple[float, ...]) -> None:
        try:
            self.query_one(Label).update(detail)
            self.query_one(Sparkline).set_series(values)
        except NoMatches:
            pass


class NetworkPanel(Static):
    """Receive/transmit throughput per interface, auto-scaled."""

    DEFAULT_CSS = """
    NetworkPanel {
        height: auto;
        border: solid $primary;
        padding: 0 1;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "Network"

    def show(self, snapshot: CompositeSnapshot, color: str) -> None:
        ifaces = sorted({k.split(".")[1] for k in snapshot.series_keys("net.")})
        if not ifaces:
            self.update(Text("no interfaces", style="dim"))
            return
        metrics = snapshot.metrics
        text = Text()
        for i, iface in enumerate(ifaces):
            if i:
                text.append("\n")
            for direction in ("rx", "tx"):
                values = snapshot.series(f"net.{iface}.{direction}")
                text.append(f"{iface[:10]:>10} {direction} ", style="dim")
                text.append(render_series(values, SERIES_WIDTH // 2, max_value=None, color=color))
                text.append(f" {format_rate(values[-1] if values else 0.0):>9}  ")
            info = metrics.interfaces.get(iface) if metrics is not None else None
            if info is not None:
                text.append("\n" + " " * 11)
                if info.is_default:
                    text.append("default  ", style="bold")
                address = info.ipv4[0] if info.ipv4 else (info.ipv6[0] if info.ipv6 else "-")
                text.append(
                    f"{address}  {info.mac_address}  {format_link_speed(info.link_speed_mbps)}",
                    style="dim",
                )
            delta = metrics.network.get(iface) if metrics is not None else None
            if delta is not None:
                text.append(
                    f"  total ↓{format_bytes(delta.total_rx_bytes)} "
                    f"↑{format_bytes(delta.total_tx_bytes)}",
                    style="dim",
                )
        self.update(text)


class FilesystemPanel(Static):
    """Used space per mounted filesystem."""

    DEFAULT_CSS = """
    FilesystemPanel {
        height: auto;
        border: solid $primary;
        padding: 0 1;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "Filesystems"

    def show(self, snapshot: CompositeSnapshot, color: str) -> None:
        metrics = snapshot.metrics
        if metrics is None or not metrics.filesystems:
            self.update(Text("no mounted filesystems", style="dim"))
            return
        self.update(filesystem_text(metrics.filesystems, color))


def filesystem_text(filesystems: tuple[FilesystemUsage, ...], color: str) -> Text:
    """One usage bar per mount point."""
    text = Text()
    for i, fs in enumerate(filesystems):
        if i:
            text.append("\n")
        percent = fs.used_percent
        filled = round(percent / 100 * USAGE_BAR_WIDTH)
        text.append(f"{fs.mount_point[:16]:<16} ", style="bold")
        text.append("█" * filled, style=color)
        text.append("░" * (USAGE_BAR_WIDTH - filled), style="dim")
        text.append(
            f" {format_percent(percent)}  {format_bytes(fs.available_bytes)} free"
            f" of {format_bytes(fs.total_bytes)}  "
        )
        text.append(f"{fs.device} {fs.fstype}", style="dim")
    return text


class HardwarePanel(Vertical):
    """Disk health and memory modules from the privileged worker."""

    DEFAULT_CSS = """
    HardwarePanel {
        height: auto;
        border: solid $primary;
        padding: 0 1;
    }
    HardwarePanel DataTable {
        height: auto;
        max-height: 10;
    }
    """

    def compose(self) -> ComposeResult:
        yield Label("", id="memory-line")
        yield DataTable(id="disk-table", zebra_stripes=True, cursor_type="none")

    def on_mount(self) -> None:
        self.border_title = "Hardware"
        table = self.query_one("#disk-table", DataTable)
        table.add_columns("Device", "Model", "Serial", "Firmware", "Interface", "Size", "Health")

    def show(self, snapshot: CompositeSnapshot) -> None:
        try:
            memory_line = self.query_one("#memory-line", Label)
            table = self.query_one("#disk-table", DataTable)
        except NoMatches:
            return

        data = snapshot.privileged
        if data is None:
            memory_line.update(
                Text(f"privileged data unavailable (worker {snapshot.worker_state.value})", "dim")
            )
            table.clear()
            return

        memory = data.memory
        if memory.slot_count is None:
            memory_line.update(Text(f"memory: {UNAVAILABLE} ({memory.detail})", "dim"))
        else:
            memory_line.update(
                f"memory: {len(memory.modules)}/{memory.slot_count} slots · "
                f"{memory.memory_type} · {memory.speed}"
            )

        table.clear()
        for disk in data.disks:
            health = Text(disk.health.value, style=_HEALTH_STYLES[disk.health])
            if disk.health_detail:
                health.append(f" ({disk.health_detail})", style="dim")
            table.add_row(
                disk.device,
                disk.model,
                disk.serial,
                disk.firmware,
                disk.interface,
                format_capacity(disk.capacity_bytes),
                health,
            )


def _gpu_power(watts: float | None, limit: float | None) -> str | None:
    if watts is None:
        return None
    if limit:
        return f"{watts:.0f}/{limit:.0f}W"
    return f"{watts:.0f}W"


class GjallarhornApp(App):
    """Real-time hardware dashboard."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #top {
        height: auto;
    }

    #side {
        width: 1fr;
        height: auto;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("plus", "faster", "Faster"),
        ("minus", "slower", "Slower"),
        ("d", "toggle_dark", "Dark/Light"),
    ]

    def __init__(self, config: Config | None = None, monitor: Monitor | None = None):
        super().__init__()
        self.config = config or Config.load()
        # Create config file with defaults if it doesn't exist
        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))
            app_log.config_created(str(self.config.config_path))
        self.monitor = monitor or Monitor(self.config)
        self._refresh_timer: Timer | None = None
        self._shown_version = -1

    def compose(self) -> ComposeResult:
        theme = self.config.theme
        yield StatusBar(id="status")
        yield Horizontal(
            CpuPanel(id="cpu"),
            Vertical(
                MetricPanel("RAM", theme.ram_color, id="ram"),
                MetricPanel("GPU", theme.gpu_color, id="gpu"),
                id="side",
            ),
            id="top",
        )
        yield NetworkPanel(id="network")
        yield FilesystemPanel(id="filesystems")
        yield HardwarePanel(id="hardware")
        yield Footer()

    async def on_mount(self) -> None:
        self.title = "gjallarhorn"
        self._apply_theme()
        self.query_one("#gpu", MetricPanel).display = False
        await self.monitor.start()
        self._start_refresh_timer()

    async def on_unmount(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.stop()
        await self.monitor.stop()

    def _start_refresh_timer(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.stop()
        self._refresh_timer = self.set_interval(
            self.monitor.poller.period, self.refresh_from_store
        )

    def _apply_theme(self) -> None:
        self.theme = "textual-dark" if self.config.theme.dark_mode else "textual-light"

    def refresh_from_store(self) -> None:
        """Redraw from the latest published snapshot, if it changed."""
        snapshot = self.monitor.store.current()
        if snapshot.version == self._shown_version:
            return
        self._shown_version = snapshot.version

        try:
            self.query_one("#status", StatusBar).show(snapshot, self.monitor.poller.cadence_ms)
            self.query_one("#cpu", CpuPanel).show(snapshot, self.config)
            self.query_one("#network", NetworkPanel).show(snapshot, self.config.theme.net_color)
            self.query_one("#filesystems", FilesystemPanel).show(
                snapshot, self.config.theme.ram_color
            )
            self.query_one("#hardware", HardwarePanel).show(snapshot)
            ram_panel = self.query_one("#ram", MetricPanel)
            gpu_panel = self.query_one("#gpu", MetricPanel)
        except NoMatches:
            return

        metrics = snapshot.metrics
        if metrics is not None and metrics.ram_total:
            ram_detail = (
                f"{format_bytes(metrics.ram_used)} / {format_bytes(metrics.ram_total)} "
                f"{format_percent(metrics.ram_percent)}"
            )
        else:
            ram_detail = UNAVAILABLE
        ram_panel.show(ram_detail, snapshot.series("ram"))

        gpu = metrics.gpu if metrics is not None else None
        gpu_panel.display = gpu is not None or bool(snapshot.series("gpu.util"))
        if gpu is not None:
            extras = [
                f"{gpu.temperature_c:.0f}°C" if gpu.temperature_c is not None else None,
                _gpu_power(gpu.power_watts, gpu.power_limit_watts),
                f"fan {gpu.fan_percent:.0f}%" if gpu.fan_percent is not None else None,
            ]
            gpu_panel.show(
                f"{gpu.name} {format_percent(gpu.utilization)} "
                f"· {format_bytes(gpu.memory_used)}/{format_bytes(gpu.memory_total)} "
                + " ".join(e for e in extras if e)
                + f" · driver {gpu.driver_version}",
                snapshot.series("gpu.util"),
            )

    def _change_cadence(self, delta_ms: int) -> None:
        new = self.monitor.set_cadence(self.monitor.poller.cadence_ms + delta_ms)
        self._start_refresh_timer()
        self.notify(f"Refresh every {new}ms", timeout=2)

    def action_faster(self) -> None:
        self._change_cadence(-CADENCE_STEP_MS)

    def action_slower(self) -> None:
        self._change_cadence(CADENCE_STEP_MS)

    def action_toggle_dark(self) -> None:
        self.config.theme.dark_mode = not self.config.theme.dark_mode
        self._apply_theme()
        self.config.save()


def run_tui(config: Config | None = None) -> None:
    """Run the TUI application."""
    app = GjallarhornApp(config)
    app.run()
