"""Data model shared by the poller, the privileged worker and the aggregator.

Every value here is immutable. Privileged values travel over the worker
pipe, so each of them knows how to turn itself into a plain dict and back.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

# Marker for a text field whose probe failed. Numeric fields use None.
UNAVAILABLE = "unavailable"


class Health(str, Enum):
    """SMART overall health of a storage device."""

    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"  # NVMe critical warning bit set
    UNAVAILABLE = UNAVAILABLE


# ─────────────────────────────────────────────────────────────────────────────
# Unprivileged samples (one per poller tick)
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class GpuMetrics:
    """Current readings for the primary GPU."""

    name: str
    utilization: float  # percent
    memory_used: int  # bytes
    memory_total: int  # bytes
    power_watts: float | None = None
    power_limit_watts: float | None = None
    temperature_c: float | None = None
    fan_percent: float | None = None
    driver_version: str = UNAVAILABLE

    @property
    def memory_percent(self) -> float:
        if self.memory_total <= 0:
            return 0.0
        return self.memory_used / self.memory_total * 100.0


@dataclass(frozen=True, slots=True)
class InterfaceDelta:
    """Bytes moved on one interface since the previous tick."""

    rx_bytes: int
    tx_bytes: int
    elapsed: float  # seconds since previous observation, 0.0 on first
    total_rx_bytes: int = 0  # cumulative counters as last read
    total_tx_bytes: int = 0

    @property
    def rx_rate(self) -> float:
        return self.rx_bytes / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def tx_rate(self) -> float:
        return self.tx_bytes / self.elapsed if self.elapsed > 0 else 0.0


@dataclass(frozen=True, slots=True)
class InterfaceInfo:
    """Addresses and link state of one network interface."""

    name: str
    mac_address: str = UNAVAILABLE
    ipv4: tuple[str, ...] = ()
    ipv6: tuple[str, ...] = ()
    link_speed_mbps: int | None = None  # None when the driver does not report it
    is_up: bool = False
    is_default: bool = False  # carries the default route


@dataclass(frozen=True, slots=True)
class FilesystemUsage:
    """Space on one mounted filesystem."""

    device: str
    mount_point: str
    fstype: str
    total_bytes: int
    available_bytes: int

    @property
    def used_percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return (self.total_bytes - self.available_bytes) / self.total_bytes * 100.0


@dataclass(frozen=True, slots=True)
class MetricSnapshot:
    """One poller tick.

    A field listed in ``unavailable`` failed or timed out this tick and
    carries no value. ``gpu`` is None both when there is no device and when
    the backend failed; only the latter puts "gpu" in ``unavailable``.
    """

    timestamp: float
    cpu_per_core: tuple[float, ...] | None
    ram_used: int | None
    ram_total: int | None
    gpu: GpuMetrics | None = None
    network: Mapping[str, InterfaceDelta] = field(default_factory=dict)
    unavailable: frozenset[str] = frozenset()
    cpu_freq_mhz: float | None = None
    interfaces: Mapping[str, InterfaceInfo] = field(default_factory=dict)
    filesystems: tuple[FilesystemUsage, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "network", MappingProxyType(dict(self.network)))
        object.__setattr__(self, "interfaces", MappingProxyType(dict(self.interfaces)))

    @property
    def default_interface(self) -> str | None:
        for name, info in self.interfaces.items():
            if info.is_default:
                return name
        return None

    @property
    def ram_percent(self) -> float | None:
        if self.ram_used is None or not self.ram_total:
            return None
        return self.ram_used / self.ram_total * 100.0


@dataclass(frozen=True, slots=True)
class SystemInfo:
    """Static host facts, read once at startup."""

    hostname: str = UNAVAILABLE
    os_name: str = UNAVAILABLE
    kernel: str = UNAVAILABLE
    cpu_brand: str = UNAVAILABLE
    architecture: str = UNAVAILABLE
    boot_mode: str = UNAVAILABLE
    motherboard: str = UNAVAILABLE
    bios_version: str = UNAVAILABLE
    physical_cores: int | None = None
    logical_cores: int | None = None
    cpu_freq_min_mhz: float | None = None
    cpu_freq_max_mhz: float | None = None
    cache_l1d: str = UNAVAILABLE
    cache_l1i: str = UNAVAILABLE
    cache_l2: str = UNAVAILABLE
    cache_l3: str = UNAVAILABLE
    virtualization: str = UNAVAILABLE
    boot_time: float | None = None  # epoch seconds

    def uptime(self, now: float) -> float | None:
        if self.boot_time is None:
            return None
        return max(0.0, now - self.boot_time)


# ─────────────────────────────────────────────────────────────────────────────
# Privileged data (produced by the worker)
# ─────────────────────────────────────────────────────────────────────────────


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key, UNAVAILABLE)
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _optional_int(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer or null")
    return value


@dataclass(frozen=True, slots=True)
class DiskInfo:
    """Identity and health of one physical storage device."""

    device: str
    model: str = UNAVAILABLE
    serial: str = UNAVAILABLE
    firmware: str = UNAVAILABLE
    interface: str = UNAVAILABLE
    capacity_bytes: int | None = None
    rotational: bool | None = None
    health: Health = Health.UNAVAILABLE
    health_detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "device": self.device,
            "model": self.model,
            "serial": self.serial,
            "firmware": self.firmware,
            "interface": self.interface,
            "capacity_bytes": self.capacity_bytes,
            "rotational": self.rotational,
            "health": self.health.value,
            "health_detail": self.health_detail,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiskInfo:
        device = data.get("device")
        if not isinstance(device, str) or not device:
            raise ValueError("disk entry needs a device name")
        rotational = data.get("rotational")
        if rotational is not None and not isinstance(rotational, bool):
            raise ValueError("rotational must be a boolean or null")
        detail = data.get("health_detail", "")
        if not isinstance(detail, str):
            raise ValueError("health_detail must be a string")
        return cls(
            device=device,
            model=_text(data, "model"),
            serial=_text(data, "serial"),
            firmware=_text(data, "firmware"),
            interface=_text(data, "interface"),
            capacity_bytes=_optional_int(data, "capacity_bytes"),
            rotational=rotational,
            health=Health(data.get("health", UNAVAILABLE)),
            health_detail=detail,
        )


@dataclass(frozen=True, slots=True)
class MemoryModule:
    """One populated DIMM slot as reported by DMI."""

    locator: str = UNAVAILABLE
    size: str = UNAVAILABLE
    memory_type: str = UNAVAILABLE
    speed: str = UNAVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "locator": self.locator,
            "size": self.size,
            "memory_type": self.memory_type,
            "speed": self.speed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemoryModule:
        return cls(
            locator=_text(data, "locator"),
            size=_text(data, "size"),
            memory_type=_text(data, "memory_type"),
            speed=_text(data, "speed"),
        )


@dataclass(frozen=True, slots=True)
class MemoryInfo:
    """Memory inventory from DMI. ``slot_count`` is None when DMI was unreadable."""

    slot_count: int | None = None
    modules: tuple[MemoryModule, ...] = ()
    detail: str = ""

    @property
    def memory_type(self) -> str:
        for module in self.modules:
            if module.memory_type != UNAVAILABLE:
                return module.memory_type
        return UNAVAILABLE

    @property
    def speed(self) -> str:
        for module in self.modules:
            if module.speed != UNAVAILABLE:
                return module.speed
        return UNAVAILABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot_count": self.slot_count,
            "modules": [m.to_dict() for m in self.modules],
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemoryInfo:
        modules = data.get("modules", [])
        if not isinstance(modules, list) or not all(isinstance(m, dict) for m in modules):
            raise ValueError("modules must be a list of objects")
        detail = data.get("detail", "")
        if not isinstance(detail, str):
            raise ValueError("detail must be a string")
        return cls(
            slot_count=_optional_int(data, "slot_count"),
            modules=tuple(MemoryModule.from_dict(m) for m in modules),
            detail=detail,
        )


@dataclass(frozen=True, slots=True)
class PrivilegedData:
    """Result of one elevated probe cycle."""

    collected_at: float
    disks: tuple[DiskInfo, ...] = ()
    memory: MemoryInfo = field(default_factory=MemoryInfo)

    def to_dict(self) -> dict[str, Any]:
        return {
            "collected_at": self.collected_at,
            "disks": [d.to_dict() for d in self.disks],
            "memory": self.memory.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PrivilegedData:
        collected_at = data.get("collected_at")
        if isinstance(collected_at, bool) or not isinstance(collected_at, (int, float)):
            raise ValueError("collected_at must be a number")
        disks = data.get("disks", [])
        if not isinstance(disks, list) or not all(isinstance(d, dict) for d in disks):
            raise ValueError("disks must be a list of objects")
        memory = data.get("memory", {})
        if not isinstance(memory, dict):
            raise ValueError("memory must be an object")
        return cls(
            collected_at=collected_at,
            disks=tuple(DiskInfo.from_dict(d) for d in disks),
            memory=MemoryInfo.from_dict(memory),
        )
