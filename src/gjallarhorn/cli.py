"""CLI commands for gjallarhorn."""

import click

from gjallarhorn.config import Config


def _load_config() -> Config:
    try:
        return Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e


@click.group(invoke_without_command=True)
@click.version_option(package_name="gjallarhorn")
@click.option("--privileged-worker", is_flag=True, hidden=True)
@click.option("--probe-interval", type=float, default=10.0, hidden=True)
@click.option("--tool-timeout", type=float, default=10.0, hidden=True)
@click.pass_context
def main(ctx, privileged_worker: bool, probe_interval: float, tool_timeout: float) -> None:
    """Hardware monitor with privilege-separated disk and memory probes.

    Without a command, opens the live dashboard.
    """
    if privileged_worker:
        from gjallarhorn.worker import run_worker

        ctx.exit(run_worker(probe_interval=probe_interval, tool_timeout=tool_timeout))

    if ctx.invoked_subcommand is None:
        from gjallarhorn.logging import configure
        from gjallarhorn.tui import run_tui

        config = _load_config()
        configure(config, console=False)
        run_tui(config)


def _summary_line(snapshot) -> str:
    from datetime import datetime

    from gjallarhorn.formatting import format_percent, format_rate

    metrics = snapshot.metrics
    if metrics is None:
        return f"-- waiting ({snapshot.status.value}, worker {snapshot.worker_state.value})"

    ts = datetime.fromtimestamp(metrics.timestamp).strftime("%H:%M:%S")
    cpu = None
    if metrics.cpu_per_core:
        cpu = sum(metrics.cpu_per_core) / len(metrics.cpu_per_core)
    gpu = metrics.gpu.utilization if metrics.gpu is not None else None
    rx = sum(d.rx_rate for d in metrics.network.values())
    tx = sum(d.tx_rate for d in metrics.network.values())
    return (
        f"{ts} cpu {format_percent(cpu)} ram {format_percent(metrics.ram_percent)} "
        f"gpu {format_percent(gpu)} net ↓{format_rate(rx)} ↑{format_rate(tx)} "
        f"[{snapshot.status.value}, worker {snapshot.worker_state.value}]"
    )


def _echo_host(snapshot) -> None:
    from gjallarhorn.formatting import format_frequency, format_uptime

    system = snapshot.system
    click.echo(f"Host: {system.hostname} ({system.os_name}, kernel {system.kernel})")
    click.echo(f"Uptime: {format_uptime(snapshot.uptime)}")
    click.echo(
        f"CPU: {system.cpu_brand} [{system.architecture}], "
        f"{system.physical_cores or '?'} cores / {system.logical_cores or '?'} threads, "
        f"{format_frequency(system.cpu_freq_min_mhz)}-{format_frequency(system.cpu_freq_max_mhz)}"
    )
    click.echo(
        f"Cache: L1d {system.cache_l1d}, L1i {system.cache_l1i}, L2 {system.cache_l2}, "
        f"L3 {system.cache_l3}; virtualization {system.virtualization}"
    )
    click.echo(f"Board: {system.motherboard}, BIOS {system.bios_version}, {system.boot_mode}")
    click.echo(f"Status: {snapshot.status.value} (worker {snapshot.worker_state.value})")


def _echo_network(metrics) -> None:
    from gjallarhorn.formatting import format_bytes, format_link_speed, format_rate

    names = sorted(set(metrics.network) | set(metrics.interfaces))
    if not names:
        return
    click.echo("Network:")
    for name in names:
        info = metrics.interfaces.get(name)
        delta = metrics.network.get(name)
        line = f"  {name}"
        if info is not None:
            if info.is_default:
                line += " (default)"
            addresses = ", ".join(info.ipv4 + info.ipv6) or "no address"
            state = "up" if info.is_up else "down"
            line += (
                f": {addresses}, mac {info.mac_address}, {state}, "
                f"link {format_link_speed(info.link_speed_mbps)}"
            )
        if delta is not None:
            line += (
                f", ↓{format_rate(delta.rx_rate)} ↑{format_rate(delta.tx_rate)}, total "
                f"↓{format_bytes(delta.total_rx_bytes)} ↑{format_bytes(delta.total_tx_bytes)}"
            )
        click.echo(line)


def _echo_filesystems(metrics) -> None:
    from gjallarhorn.formatting import format_bytes, format_percent

    if not metrics.filesystems:
        return
    click.echo("Filesystems:")
    for fs in metrics.filesystems:
        used = fs.total_bytes - fs.available_bytes
        click.echo(
            f"  {fs.mount_point} ({fs.device}, {fs.fstype}): "
            f"{format_bytes(used)} / {format_bytes(fs.total_bytes)} "
            f"{format_percent(fs.used_percent).strip()}, {format_bytes(fs.available_bytes)} free"
        )


def _echo_status(snapshot) -> None:
    from gjallarhorn.formatting import (
        format_bytes,
        format_capacity,
        format_frequency,
        format_percent,
    )

    _echo_host(snapshot)

    metrics = snapshot.metrics
    if metrics is not None:
        click.echo()
        if metrics.cpu_per_core is not None:
            cores = " ".join(f"{p:.0f}" for p in metrics.cpu_per_core)
            click.echo(f"CPU per core %: {cores}")
        else:
            click.echo("CPU: unavailable")
        if metrics.cpu_freq_mhz is not None:
            click.echo(f"CPU frequency: {format_frequency(metrics.cpu_freq_mhz)}")
        click.echo(
            f"RAM: {format_bytes(metrics.ram_used)} / {format_bytes(metrics.ram_total)} "
            f"{format_percent(metrics.ram_percent)}"
        )
        if metrics.gpu is not None:
            gpu = metrics.gpu
            power = "power unavailable"
            if gpu.power_watts is not None:
                limit = gpu.power_limit_watts
                power = f"{gpu.power_watts:.0f}W" + (f" of {limit:.0f}W" if limit else "")
            click.echo(
                f"GPU: {gpu.name} {format_percent(gpu.utilization)}, "
                f"{format_bytes(gpu.memory_used)} / {format_bytes(gpu.memory_total)}, "
                f"{power}, driver {gpu.driver_version}"
            )
        elif "gpu" in metrics.unavailable:
            click.echo("GPU: unavailable")
        _echo_network(metrics)
        _echo_filesystems(metrics)
        if metrics.unavailable:
            click.echo(f"Unavailable: {', '.join(sorted(metrics.unavailable))}")

    data = snapshot.privileged
    click.echo()
    if data is None:
        click.echo("Disks/memory: unavailable without the privileged worker")
        return
    memory = data.memory
    if memory.slot_count is None:
        click.echo(f"Memory modules: unavailable ({memory.detail})")
    else:
        click.echo(
            f"Memory modules: {len(memory.modules)}/{memory.slot_count} slots, "
            f"{memory.memory_type}, {memory.speed}"
        )
    if not data.disks:
        click.echo("Disks: none found")
    for disk in data.disks:
        health = disk.health.value
        if disk.health_detail:
            health += f" ({disk.health_detail})"
        click.echo(
            f"  {disk.device}: {disk.model} [{disk.interface}] "
            f"{format_capacity(disk.capacity_bytes)} serial {disk.serial} "
            f"fw {disk.firmware} health {health}"
        )


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON")
@click.option("--no-worker", is_flag=True, help="Skip the privileged worker")
@click.option("--timeout", default=30.0, show_default=True, help="Seconds to wait for data")
def status(as_json: bool, no_worker: bool, timeout: float) -> None:
    """Sample once and print a composite snapshot."""
    import asyncio
    import json

    from gjallarhorn.logging import configure
    from gjallarhorn.monitor import Monitor, run_headless

    config = _load_config()
    configure(config, console=not as_json)
    monitor = Monitor(config, worker_enabled=False if no_worker else None)

    def complete(snapshot) -> bool:
        # Two ticks so CPU percentages and network deltas are meaningful
        if monitor.poller.ticks < 2:
            return False
        if monitor.launcher is None:
            return True
        return snapshot.privileged is not None or snapshot.worker_state.terminal

    snapshot = asyncio.run(run_headless(monitor, duration=timeout, until=complete))

    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False))
    else:
        _echo_status(snapshot)


@main.command()
@click.option("--no-worker", is_flag=True, help="Skip the privileged worker")
def watch(no_worker: bool) -> None:
    """Print a one-line summary per sample until Ctrl-C."""
    import asyncio

    from gjallarhorn.logging import configure
    from gjallarhorn.monitor import Monitor, run_headless

    config = _load_config()
    configure(config)
    monitor = Monitor(config, worker_enabled=False if no_worker else None)
    last_metrics = [None]

    def echo(snapshot) -> None:
        # Skip publishes that carry no new tick (worker state, privileged data)
        if snapshot.metrics is None or snapshot.metrics is last_metrics[0]:
            return
        last_metrics[0] = snapshot.metrics
        click.echo(_summary_line(snapshot))

    asyncio.run(run_headless(monitor, on_snapshot=echo))


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[monitor]")
    click.echo(f"  refresh_rate_ms = {cfg.monitor.refresh_rate_ms}")
    click.echo()
    click.echo("[worker]")
    click.echo(f"  enabled = {str(cfg.worker.enabled).lower()}")
    click.echo(f"  elevation_command = {cfg.worker.elevation_command}")
    click.echo(f"  probe_interval = {cfg.worker.probe_interval}")
    click.echo(f"  tool_timeout = {cfg.worker.tool_timeout}")
    click.echo(f"  shutdown_timeout = {cfg.worker.shutdown_timeout}")
    click.echo()
    click.echo("[theme]")
    click.echo(f"  dark_mode = {str(cfg.theme.dark_mode).lower()}")
    click.echo(f"  use_uniform_cpu = {str(cfg.theme.use_uniform_cpu).lower()}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
