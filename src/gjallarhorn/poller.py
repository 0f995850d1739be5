"""Unprivileged sensor sampling on a fixed-period timer.

Each tick runs the samplers (cpu, cpu_freq, memory, gpu, network,
interfaces, filesystems) in a thread pool. A sampler that raises or takes
longer than one period marks only its own field unavailable for that tick;
the tick itself always completes.
"""

from __future__ import annotations

import asyncio
import socket
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import psutil
import pynvml
import structlog

from gjallarhorn.config import MAX_REFRESH_RATE_MS, MIN_REFRESH_RATE_MS
from gjallarhorn.models import (
    UNAVAILABLE,
    FilesystemUsage,
    GpuMetrics,
    InterfaceDelta,
    InterfaceInfo,
    MetricSnapshot,
)

log = structlog.get_logger()

DEFAULT_CADENCE_MS = 500

PROC_NET_ROUTE = Path("/proc/net/route")

# Read-only image mounts (snaps, live media) that are always 100% full
_SKIP_FSTYPES = frozenset({"squashfs", "iso9660", "overlay"})

_RTF_UP = 0x1

_FAILED = object()


def clamp_cadence(cadence_ms: int) -> int:
    return max(MIN_REFRESH_RATE_MS, min(MAX_REFRESH_RATE_MS, int(cadence_ms)))


def counter_delta(previous: int, current: int) -> int:
    """Delta of a cumulative OS counter. A counter that went backwards was reset: 0."""
    return current - previous if current >= previous else 0


def _is_loopback(name: str) -> bool:
    return name == "lo" or name.startswith("lo:")


class NvmlGpuBackend:
    """Primary NVIDIA GPU through NVML.

    Initialised lazily on first sample. A failed ``nvmlInit`` or an empty
    device list means "no GPU" for the whole session, not an error.
    """

    def __init__(self, index: int = 0):
        self.index = index
        self.name: str | None = None
        self.driver_version = UNAVAILABLE
        self._handle: Any = None
        self._initialized = False

    @property
    def available(self) -> bool:
        return self._handle is not None

    def _init(self) -> bool:
        if self._initialized:
            return self.available
        self._initialized = True
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            log.info("gpu_backend_unavailable", error=str(e))
            return False
        try:
            if pynvml.nvmlDeviceGetCount() <= self.index:
                log.info("gpu_not_found", index=self.index)
                pynvml.nvmlShutdown()
                return False
            handle = pynvml.nvmlDeviceGetHandleByIndex(self.index)
            name = pynvml.nvmlDeviceGetName(handle)
        except pynvml.NVMLError as e:
            log.info("gpu_backend_unavailable", error=str(e))
            pynvml.nvmlShutdown()
            return False
        self.name = name.decode() if isinstance(name, bytes) else str(name)
        try:
            driver = pynvml.nvmlSystemGetDriverVersion()
            self.driver_version = driver.decode() if isinstance(driver, bytes) else str(driver)
        except pynvml.NVMLError:
            self.driver_version = UNAVAILABLE
        self._handle = handle
        log.info("gpu_backend_ready", name=self.name, driver=self.driver_version)
        return True

    def _optional(self, read: Callable[[], float]) -> float | None:
        try:
            return float(read())
        except pynvml.NVMLError:
            return None

    def sample(self) -> GpuMetrics | None:
        """Read current GPU metrics. None when there is no device.

        Raises:
            pynvml.NVMLError: If the device is present but a required read fails
        """
        if not self._init():
            return None
        h = self._handle
        util = pynvml.nvmlDeviceGetUtilizationRates(h)
        mem = pynvml.nvmlDeviceGetMemoryInfo(h)
        return GpuMetrics(
            name=self.name or "GPU",
            utilization=float(util.gpu),
            memory_used=int(mem.used),
            memory_total=int(mem.total),
            power_watts=self._optional(lambda: pynvml.nvmlDeviceGetPowerUsage(h) / 1000.0),
            power_limit_watts=self._optional(
                lambda: pynvml.nvmlDeviceGetEnforcedPowerLimit(h) / 1000.0
            ),
            temperature_c=self._optional(
                lambda: pynvml.nvmlDeviceGetTemperature(h, pynvml.NVML_TEMPERATURE_GPU)
            ),
            fan_percent=self._optional(lambda: pynvml.nvmlDeviceGetFanSpeed(h)),
            driver_version=self.driver_version,
        )

    def close(self) -> None:
        if self._handle is None:
            return
        self._handle = None
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            log.debug("gpu_shutdown_failed", error=str(e))


def _sample_cpu() -> tuple[float, ...]:
    return tuple(float(p) for p in psutil.cpu_percent(percpu=True))


def _sample_memory() -> tuple[int, int]:
    vm = psutil.virtual_memory()
    return vm.total - vm.available, vm.total


def _sample_cpu_freq() -> float | None:
    freq = psutil.cpu_freq()
    if freq is None or not freq.current:
        return None
    return float(freq.current)


def _sample_network() -> dict[str, tuple[int, int]]:
    counters = psutil.net_io_counters(pernic=True)
    return {
        name: (c.bytes_recv, c.bytes_sent)
        for name, c in counters.items()
        if not _is_loopback(name)
    }


def default_route_interface(route_path: Path = PROC_NET_ROUTE) -> str | None:
    """Interface carrying the IPv4 default route with the lowest metric."""
    try:
        lines = route_path.read_text().splitlines()[1:]
    except OSError:
        return None
    best: tuple[int, str] | None = None
    for line in lines:
        cols = line.split()
        if len(cols) < 7 or cols[1] != "00000000":
            continue
        try:
            flags, metric = int(cols[3], 16), int(cols[6])
        except ValueError:
            continue
        if flags & _RTF_UP and (best is None or metric < best[0]):
            best = (metric, cols[0])
    return best[1] if best else None


def _sample_interfaces() -> dict[str, InterfaceInfo]:
    addrs = psutil.net_if_addrs()
    stats = psutil.net_if_stats()
    default = default_route_interface()
    interfaces = {}
    for name in sorted(set(addrs) | set(stats)):
        if _is_loopback(name):
            continue
        mac = UNAVAILABLE
        ipv4: list[str] = []
        ipv6: list[str] = []
        for addr in addrs.get(name, ()):
            if addr.family == psutil.AF_LINK:
                mac = addr.address
            elif addr.family == socket.AF_INET:
                ipv4.append(addr.address)
            elif addr.family == socket.AF_INET6:
                ipv6.append(addr.address.split("%", 1)[0])
        stat = stats.get(name)
        interfaces[name] = InterfaceInfo(
            name=name,
            mac_address=mac,
            ipv4=tuple(ipv4),
            ipv6=tuple(ipv6),
            link_speed_mbps=stat.speed if stat is not None and stat.speed > 0 else None,
            is_up=bool(stat.isup) if stat is not None else False,
            is_default=name == default,
        )
    return interfaces


def _sample_filesystems() -> tuple[FilesystemUsage, ...]:
    mounts = []
    seen = set()
    for part in psutil.disk_partitions(all=False):
        if part.fstype in _SKIP_FSTYPES or part.device.startswith("/dev/loop"):
            continue
        if part.mountpoint in seen:
            continue
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except OSError as e:
            # Stale network mount or a mount we may not stat
            log.debug("filesystem_usage_failed", mount=part.mountpoint, error=str(e))
            continue
        seen.add(part.mountpoint)
        mounts.append(
            FilesystemUsage(
                device=part.device,
                mount_point=part.mountpoint,
                fstype=part.fstype,
                total_bytes=int(usage.total),
                available_bytes=int(usage.free),
            )
        )
    return tuple(sorted(mounts, key=lambda m: m.mount_point))


class SensorPoller:
    """Samples unprivileged sensors every ``cadence_ms`` and hands each snapshot on."""

    def __init__(
        self,
        on_sample: Callable[[MetricSnapshot], None] | None = None,
        cadence_ms: int = DEFAULT_CADENCE_MS,
        gpu: NvmlGpuBackend | None = None,
        clock: Callable[[], float] = time.time,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.on_sample = on_sample
        self._cadence_ms = clamp_cadence(cadence_ms)
        self.gpu = gpu if gpu is not None else NvmlGpuBackend()
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=8, thread_name_prefix="gjallarhorn-sampler"
        )
        self.samplers: dict[str, Callable[[], Any]] = {
            "cpu": _sample_cpu,
            "cpu_freq": _sample_cpu_freq,
            "memory": _sample_memory,
            "gpu": self.gpu.sample,
            "network": _sample_network,
            "interfaces": _sample_interfaces,
            "filesystems": _sample_filesystems,
        }
        self._in_flight: dict[str, asyncio.Future] = {}
        self._failing: set[str] = set()
        self._prev_counters: dict[str, tuple[int, int]] = {}
        self._prev_time: float | None = None
        self._last_timestamp = 0.0
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def cadence_ms(self) -> int:
        return self._cadence_ms

    @property
    def period(self) -> float:
        return self._cadence_ms / 1000.0

    def set_cadence(self, cadence_ms: int) -> int:
        """Change the tick period (clamped to 100-2000ms). Applies from the next tick."""
        new = clamp_cadence(cadence_ms)
        if new != self._cadence_ms:
            log.info("cadence_changed", old=self._cadence_ms, new=new)
        self._cadence_ms = new
        return new

    def _note_failure(self, name: str, error: BaseException | str) -> None:
        if name not in self._failing:
            self._failing.add(name)
            log.warning("sampler_failed", sampler=name, error=str(error))
        else:
            log.debug("sampler_failed", sampler=name, error=str(error))

    async def _sample(self, name: str) -> Any:
        pending = self._in_flight.get(name)
        if pending is not None and not pending.done():
            self._note_failure(name, "previous sample still running")
            return _FAILED

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self.samplers[name])
        self._in_flight[name] = future
        done, _ = await asyncio.wait({future}, timeout=self.period)
        if not done:
            # Late result is dropped; the thread keeps running until it returns
            future.add_done_callback(_discard_result)
            self._note_failure(name, "sampler_timeout")
            return _FAILED

        del self._in_flight[name]
        try:
            value = future.result()
        except Exception as e:
            self._note_failure(name, e)
            return _FAILED
        if name in self._failing:
            self._failing.discard(name)
            log.info("sampler_recovered", sampler=name)
        return value

    def _network_deltas(
        self, raw: dict[str, tuple[int, int]], now: float
    ) -> dict[str, InterfaceDelta]:
        elapsed = now - self._prev_time if self._prev_time is not None else 0.0
        deltas = {}
        for name, (rx, tx) in raw.items():
            prev = self._prev_counters.get(name)
            if prev is None:
                deltas[name] = InterfaceDelta(
                    rx_bytes=0, tx_bytes=0, elapsed=0.0, total_rx_bytes=rx, total_tx_bytes=tx
                )
            else:
                deltas[name] = InterfaceDelta(
                    rx_bytes=counter_delta(prev[0], rx),
                    tx_bytes=counter_delta(prev[1], tx),
                    elapsed=elapsed,
                    total_rx_bytes=rx,
                    total_tx_bytes=tx,
                )
        self._prev_counters = dict(raw)
        self._prev_time = now
        return deltas

    async def tick(self) -> MetricSnapshot:
        """Sample every sensor once and deliver the snapshot."""
        names = list(self.samplers)
        values = dict(zip(names, await asyncio.gather(*(self._sample(n) for n in names))))

        now = max(self._clock(), self._last_timestamp)
        self._last_timestamp = now
        unavailable = frozenset(n for n, v in values.items() if v is _FAILED)

        memory = values["memory"]
        network = values["network"]
        snapshot = MetricSnapshot(
            timestamp=now,
            cpu_per_core=None if "cpu" in unavailable else values["cpu"],
            ram_used=None if "memory" in unavailable else memory[0],
            ram_total=None if "memory" in unavailable else memory[1],
            gpu=None if "gpu" in unavailable else values["gpu"],
            network={} if "network" in unavailable else self._network_deltas(network, now),
            unavailable=unavailable,
            cpu_freq_mhz=None if "cpu_freq" in unavailable else values["cpu_freq"],
            interfaces={} if "interfaces" in unavailable else values["interfaces"],
            filesystems=() if "filesystems" in unavailable else values["filesystems"],
        )
        self.ticks += 1
        if self.on_sample is not None:
            self.on_sample(snapshot)
        return snapshot

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("poller_tick_failed")
            await asyncio.sleep(max(0.0, self.period - (loop.time() - started)))

    def start(self) -> None:
        if self._task is None:
            log.info("poller_started", cadence_ms=self._cadence_ms)
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.gpu.close()
        self._executor.shutdown(wait=False, cancel_futures=True)
        log.info("poller_stopped", ticks=self.ticks)


def _discard_result(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
