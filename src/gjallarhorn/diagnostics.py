"""Privileged hardware probes used by the headless worker.

Disk identity comes from sysfs and is refined by ``smartctl --json``;
memory modules come from ``dmidecode -t memory``. A missing tool, a fatal
exit status, a timeout or unparseable output only marks the affected
field as unavailable. Nothing here raises past ``probe_disks`` /
``probe_memory`` except cancellation.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from gjallarhorn.models import UNAVAILABLE, DiskInfo, Health, MemoryInfo, MemoryModule

log = structlog.get_logger()

SYS_BLOCK = Path("/sys/class/block")

# Virtual and optical devices that never answer SMART queries
_SKIP_PREFIXES = ("loop", "ram", "sr", "zram", "dm-", "md", "fd")

_INTERFACES = (
    ("nvme", "NVMe"),
    ("sd", "SATA"),
    ("vd", "VirtIO"),
    ("mmcblk", "MMC"),
    ("hd", "IDE"),
)

# smartctl exit status is a bitmask; bits 0-1 mean no usable output.
_SMARTCTL_FATAL_BITS = 0b11


@dataclass(frozen=True)
class ToolResult:
    """Completed external tool invocation."""

    returncode: int
    stdout: str
    stderr: str


class ToolTimeout(Exception):
    """External tool did not finish within its time budget (it was killed)."""


async def run_tool(argv: list[str], timeout: float) -> ToolResult:
    """Run an external tool, killing and reaping it on timeout or cancellation.

    Raises:
        FileNotFoundError: If the tool is not installed
        ToolTimeout: If the tool ran longer than ``timeout`` seconds
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError) as e:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        if isinstance(e, asyncio.TimeoutError):
            raise ToolTimeout(f"{argv[0]} timed out after {timeout}s") from e
        raise
    return ToolResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


# ─────────────────────────────────────────────────────────────────────────────
# sysfs
# ─────────────────────────────────────────────────────────────────────────────


def _read_sysfs(path: Path) -> str:
    try:
        value = path.read_text().strip()
    except (OSError, UnicodeDecodeError):
        return UNAVAILABLE
    return value or UNAVAILABLE


def interface_for(device: str) -> str:
    for prefix, name in _INTERFACES:
        if device.startswith(prefix):
            return name
    return UNAVAILABLE


def list_block_devices(sys_block: Path = SYS_BLOCK) -> list[DiskInfo]:
    """Enumerate whole physical disks with sysfs identity only.

    Raises:
        OSError: If the block device directory cannot be listed
    """
    disks: list[DiskInfo] = []
    for entry in sorted(sys_block.iterdir(), key=lambda p: p.name):
        name = entry.name
        if name.startswith(_SKIP_PREFIXES):
            continue
        # Partitions carry a "partition" attribute
        if (entry / "partition").exists():
            continue

        sectors = _read_sysfs(entry / "size")
        capacity = int(sectors) * 512 if sectors.isdigit() else None

        rotational_raw = _read_sysfs(entry / "queue" / "rotational")
        rotational = rotational_raw == "1" if rotational_raw in ("0", "1") else None

        firmware = _read_sysfs(entry / "device" / "rev")
        if firmware == UNAVAILABLE:
            firmware = _read_sysfs(entry / "device" / "firmware_rev")

        disks.append(
            DiskInfo(
                device=name,
                model=_read_sysfs(entry / "device" / "model"),
                serial=_read_sysfs(entry / "device" / "serial"),
                firmware=firmware,
                interface=interface_for(name),
                capacity_bytes=capacity,
                rotational=rotational,
            )
        )
    return disks


# ─────────────────────────────────────────────────────────────────────────────
# smartctl
# ─────────────────────────────────────────────────────────────────────────────


def smartctl_target(device: str) -> str:
    """Device node to query; NVMe namespaces are queried through their controller."""
    match = re.match(r"^(nvme\d+)n\d+$", device)
    if match:
        return f"/dev/{match.group(1)}"
    return f"/dev/{device}"


def parse_smartctl(output: str) -> dict[str, Any]:
    """Extract identity and health from ``smartctl --json -a`` output.

    Returns a dict with any of ``model``, ``serial``, ``firmware`` and
    always ``health`` (a ``Health``).

    Raises:
        ValueError: If the output is not a smartctl JSON document
    """
    data = json.loads(output)
    if not isinstance(data, dict):
        raise ValueError("smartctl output is not an object")

    result: dict[str, Any] = {}
    for key, src in (
        ("model", "model_name"),
        ("serial", "serial_number"),
        ("firmware", "firmware_version"),
    ):
        value = data.get(src)
        if isinstance(value, str) and value.strip():
            result[key] = value.strip()

    health = Health.UNAVAILABLE
    status = data.get("smart_status")
    if isinstance(status, dict) and isinstance(status.get("passed"), bool):
        health = Health.PASSED if status["passed"] else Health.FAILED
    else:
        nvme_log = data.get("nvme_smart_health_information_log")
        if isinstance(nvme_log, dict) and isinstance(nvme_log.get("critical_warning"), int):
            health = Health.PASSED if nvme_log["critical_warning"] == 0 else Health.WARNING
    result["health"] = health
    return result


async def probe_disk(disk: DiskInfo, timeout: float, smartctl: str = "smartctl") -> DiskInfo:
    """Refine one sysfs disk entry with SMART data. Never raises (except cancellation)."""
    argv = [smartctl, "--json", "-a", smartctl_target(disk.device)]
    try:
        result = await run_tool(argv, timeout)
    except FileNotFoundError:
        return _with_health(disk, Health.UNAVAILABLE, "smartctl not found")
    except ToolTimeout:
        log.warning("smartctl_timeout", device=disk.device, timeout=timeout)
        return _with_health(disk, Health.UNAVAILABLE, "timed out")
    except OSError as e:
        return _with_health(disk, Health.UNAVAILABLE, f"smartctl failed: {e}")

    if result.returncode & _SMARTCTL_FATAL_BITS:
        if "Permission denied" in result.stderr or "Permission denied" in result.stdout:
            detail = "root required"
        else:
            detail = f"smartctl exit {result.returncode}"
        log.debug("smartctl_failed", device=disk.device, returncode=result.returncode)
        return _with_health(disk, Health.UNAVAILABLE, detail)

    try:
        parsed = parse_smartctl(result.stdout)
    except (ValueError, TypeError) as e:
        log.debug("smartctl_unparseable", device=disk.device, error=str(e))
        return _with_health(disk, Health.UNAVAILABLE, "unparseable output")

    health = parsed.pop("health")
    detail = "" if health is not Health.UNAVAILABLE else "no health data"
    return DiskInfo(
        device=disk.device,
        model=parsed.get("model", disk.model),
        serial=parsed.get("serial", disk.serial),
        firmware=parsed.get("firmware", disk.firmware),
        interface=disk.interface,
        capacity_bytes=disk.capacity_bytes,
        rotational=disk.rotational,
        health=health,
        health_detail=detail,
    )


def _with_health(disk: DiskInfo, health: Health, detail: str) -> DiskInfo:
    return DiskInfo(
        device=disk.device,
        model=disk.model,
        serial=disk.serial,
        firmware=disk.firmware,
        interface=disk.interface,
        capacity_bytes=disk.capacity_bytes,
        rotational=disk.rotational,
        health=health,
        health_detail=detail,
    )


async def probe_disks(
    timeout: float,
    sys_block: Path = SYS_BLOCK,
    smartctl: str = "smartctl",
) -> tuple[DiskInfo, ...]:
    """Enumerate disks and query SMART for each concurrently.

    Raises:
        OSError: If block devices cannot be enumerated at all
    """
    disks = list_block_devices(sys_block)
    results = await asyncio.gather(*(probe_disk(d, timeout, smartctl) for d in disks))
    return tuple(results)


# ─────────────────────────────────────────────────────────────────────────────
# dmidecode
# ─────────────────────────────────────────────────────────────────────────────

_DEVICE_HEADER = re.compile(r"^Memory Device\s*$", re.MULTILINE)
_EMPTY_VALUES = {"", "Unknown", "Not Specified", "None", "No Module Installed"}


def _dmi_fields(block: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in block.splitlines():
        key, sep, value = line.strip().partition(":")
        if sep and key and key not in fields:
            fields[key] = value.strip()
    return fields


def _dmi_value(fields: dict[str, str], *keys: str) -> str:
    for key in keys:
        value = fields.get(key, "")
        if value not in _EMPTY_VALUES:
            return value
    return UNAVAILABLE


def parse_dmidecode(output: str) -> MemoryInfo:
    """Parse ``dmidecode -t memory`` text into a memory inventory.

    Every "Memory Device" block is a slot; only populated slots become modules.

    Raises:
        ValueError: If the output has no memory device blocks
    """
    blocks = _DEVICE_HEADER.split(output)[1:]
    if not blocks:
        raise ValueError("no memory devices in dmidecode output")

    modules: list[MemoryModule] = []
    for block in blocks:
        fields = _dmi_fields(block)
        if fields.get("Size", "") in ("No Module Installed", "0", "0 B", ""):
            continue
        modules.append(
            MemoryModule(
                locator=_dmi_value(fields, "Locator", "Bank Locator"),
                size=_dmi_value(fields, "Size"),
                memory_type=_dmi_value(fields, "Type"),
                speed=_dmi_value(fields, "Configured Memory Speed", "Speed"),
            )
        )
    return MemoryInfo(slot_count=len(blocks), modules=tuple(modules))


async def probe_memory(timeout: float, dmidecode: str = "dmidecode") -> MemoryInfo:
    """Query DMI memory inventory. Never raises (except cancellation)."""
    try:
        result = await run_tool([dmidecode, "-t", "memory"], timeout)
    except FileNotFoundError:
        return MemoryInfo(detail="dmidecode not found")
    except ToolTimeout:
        log.warning("dmidecode_timeout", timeout=timeout)
        return MemoryInfo(detail="timed out")
    except OSError as e:
        return MemoryInfo(detail=f"dmidecode failed: {e}")

    if result.returncode != 0:
        log.debug("dmidecode_failed", returncode=result.returncode)
        return MemoryInfo(detail=f"dmidecode exit {result.returncode}")

    try:
        return parse_dmidecode(result.stdout)
    except ValueError as e:
        log.debug("dmidecode_unparseable", error=str(e))
        return MemoryInfo(detail="unparseable output")
