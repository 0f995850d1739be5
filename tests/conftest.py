"""Shared test fixtures for gjallarhorn."""

import asyncio
import os
import sys
from pathlib import Path

import pytest

from gjallarhorn.models import (
    DiskInfo,
    FilesystemUsage,
    GpuMetrics,
    Health,
    InterfaceDelta,
    InterfaceInfo,
    MemoryInfo,
    MemoryModule,
    MetricSnapshot,
    PrivilegedData,
)


@pytest.fixture
def tmp_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point Path.home() at a temporary directory so config/log writes stay local."""
    monkeypatch.setattr(Path, "home", lambda: tmp_path)
    return tmp_path


def make_metrics(
    timestamp: float = 1000.0,
    cpu: tuple[float, ...] | None = (10.0, 20.0),
    ram_used: int | None = 4 * 1024**3,
    ram_total: int | None = 16 * 1024**3,
    gpu: GpuMetrics | None = None,
    network: dict[str, InterfaceDelta] | None = None,
    unavailable: frozenset[str] = frozenset(),
    cpu_freq_mhz: float | None = 3700.0,
    interfaces: dict[str, InterfaceInfo] | None = None,
    filesystems: tuple[FilesystemUsage, ...] | None = None,
) -> MetricSnapshot:
    """Create a MetricSnapshot for testing with sensible defaults."""
    if network is None:
        network = {
            "eth0": InterfaceDelta(
                rx_bytes=2000,
                tx_bytes=1000,
                elapsed=1.0,
                total_rx_bytes=5 * 1024**3,
                total_tx_bytes=1024**3,
            )
        }
    if interfaces is None:
        interfaces = {
            "eth0": InterfaceInfo(
                name="eth0",
                mac_address="aa:bb:cc:dd:ee:ff",
                ipv4=("192.168.1.20",),
                ipv6=("fe80::1",),
                link_speed_mbps=1000,
                is_up=True,
                is_default=True,
            )
        }
    if filesystems is None:
        filesystems = (
            FilesystemUsage(
                device="/dev/nvme0n1p2",
                mount_point="/",
                fstype="ext4",
                total_bytes=500 * 10**9,
                available_bytes=200 * 10**9,
            ),
        )
    return MetricSnapshot(
        timestamp=timestamp,
        cpu_per_core=cpu,
        ram_used=ram_used,
        ram_total=ram_total,
        gpu=gpu,
        network=network,
        unavailable=unavailable,
        cpu_freq_mhz=cpu_freq_mhz,
        interfaces=interfaces,
        filesystems=filesystems,
    )


def make_disk(device: str = "sda", health: Health = Health.PASSED, **kwargs) -> DiskInfo:
    defaults = {
        "model": "Samsung SSD 870",
        "serial": "S5Y1NX0R123456",
        "firmware": "SVT02B6Q",
        "interface": "SATA",
        "capacity_bytes": 500_107_862_016,
        "rotational": False,
    }
    defaults.update(kwargs)
    return DiskInfo(device=device, health=health, **defaults)


def make_privileged(collected_at: float = 2000.0, disks=None) -> PrivilegedData:
    if disks is None:
        disks = (make_disk(),)
    return PrivilegedData(
        collected_at=collected_at,
        disks=tuple(disks),
        memory=MemoryInfo(
            slot_count=4,
            modules=(
                MemoryModule("DIMM_A1", "16 GB", "DDR4", "3200 MT/s"),
                MemoryModule("DIMM_B1", "16 GB", "DDR4", "3200 MT/s"),
            ),
        ),
    )


def sleeper(pidfile: Path) -> list[str]:
    """A child that records its pid and then sleeps far past any test timeout."""
    script = (
        "import os, pathlib, time; "
        f"pathlib.Path({str(pidfile)!r}).write_text(str(os.getpid())); "
        "time.sleep(30)"
    )
    return [sys.executable, "-c", script]


async def wait_for_pid(pidfile: Path, timeout: float = 10.0) -> int:
    deadline = asyncio.get_running_loop().time() + timeout
    while not (pidfile.exists() and pidfile.read_text()):
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("child never started")
        await asyncio.sleep(0.01)
    return int(pidfile.read_text())


def assert_reaped(pid: int) -> None:
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
