"""Static host facts for Linux, read once at startup without privileges.

Everything comes from sysfs, procfs, ``platform`` and psutil; there is no
subprocess overhead.
"""

import platform
import socket
from pathlib import Path

import psutil

from gjallarhorn.models import UNAVAILABLE, SystemInfo

DMI_ROOT = Path("/sys/class/dmi/id")
EFI_PATH = Path("/sys/firmware/efi")
CPUINFO_PATH = Path("/proc/cpuinfo")
CPU_CACHE_ROOT = Path("/sys/devices/system/cpu/cpu0/cache")


def _read(path: Path) -> str:
    try:
        return path.read_text().strip() or UNAVAILABLE
    except (OSError, UnicodeDecodeError):
        return UNAVAILABLE


def _cpuinfo_field(text: str, name: str) -> str | None:
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == name and value.strip():
            return value.strip()
    return None


def _read_cpuinfo(cpuinfo: Path) -> str:
    try:
        return cpuinfo.read_text()
    except OSError:
        return ""


def cpu_brand(cpuinfo: Path = CPUINFO_PATH) -> str:
    """Return the first ``model name`` from /proc/cpuinfo."""
    brand = _cpuinfo_field(_read_cpuinfo(cpuinfo), "model name")
    return brand or platform.processor() or UNAVAILABLE


def virtualization(cpuinfo: Path = CPUINFO_PATH) -> str:
    flags = (_cpuinfo_field(_read_cpuinfo(cpuinfo), "flags") or "").split()
    if "vmx" in flags:
        return "VT-x"
    if "svm" in flags:
        return "AMD-V"
    return UNAVAILABLE


def cpu_caches(cache_root: Path = CPU_CACHE_ROOT) -> dict[str, str]:
    """Cache sizes of cpu0 keyed ``l1d``, ``l1i``, ``l2``, ``l3``."""
    caches: dict[str, str] = {}
    try:
        indexes = sorted(cache_root.glob("index*"))
    except OSError:
        return caches
    for index in indexes:
        level = _read(index / "level")
        kind = _read(index / "type")
        size = _read(index / "size")
        if UNAVAILABLE in (level, size):
            continue
        suffix = {"Data": "d", "Instruction": "i"}.get(kind, "")
        caches.setdefault(f"l{level}{suffix}", size)
    return caches


def os_name() -> str:
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        return platform.system() or UNAVAILABLE
    return release.get("PRETTY_NAME") or release.get("NAME") or UNAVAILABLE


def _cpu_freq_range() -> tuple[float | None, float | None]:
    try:
        freq = psutil.cpu_freq()
    except (OSError, NotImplementedError):
        return None, None
    if freq is None:
        return None, None
    return (freq.min or None), (freq.max or None)


def _boot_time() -> float | None:
    try:
        return psutil.boot_time()
    except (OSError, psutil.Error):
        return None


def read_system_info(
    dmi_root: Path = DMI_ROOT,
    efi_path: Path = EFI_PATH,
    cpuinfo: Path = CPUINFO_PATH,
    cache_root: Path = CPU_CACHE_ROOT,
) -> SystemInfo:
    """Collect static host facts. Unreadable facts are marked unavailable."""
    vendor = _read(dmi_root / "board_vendor")
    board = _read(dmi_root / "board_name")
    parts = [p for p in (vendor, board) if p != UNAVAILABLE]
    freq_min, freq_max = _cpu_freq_range()
    caches = cpu_caches(cache_root)

    return SystemInfo(
        hostname=socket.gethostname() or UNAVAILABLE,
        os_name=os_name(),
        kernel=platform.release() or UNAVAILABLE,
        cpu_brand=cpu_brand(cpuinfo),
        architecture=platform.machine() or UNAVAILABLE,
        boot_mode="UEFI" if efi_path.exists() else "Legacy BIOS",
        motherboard=" ".join(parts) if parts else UNAVAILABLE,
        bios_version=_read(dmi_root / "bios_version"),
        physical_cores=psutil.cpu_count(logical=False),
        logical_cores=psutil.cpu_count(logical=True),
        cpu_freq_min_mhz=freq_min,
        cpu_freq_max_mhz=freq_max,
        cache_l1d=caches.get("l1d", UNAVAILABLE),
        cache_l1i=caches.get("l1i", UNAVAILABLE),
        cache_l2=caches.get("l2", UNAVAILABLE),
        cache_l3=caches.get("l3", UNAVAILABLE),
        virtualization=virtualization(cpuinfo),
        boot_time=_boot_time(),
    )
