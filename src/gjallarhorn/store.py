"""Published composite state read by the presentation layer.

Writers build a complete new ``CompositeSnapshot`` and swap the reference;
readers hold whatever version they fetched for as long as they like and
never see a half-applied update.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

import structlog

from gjallarhorn.launcher import WorkerState
from gjallarhorn.models import MetricSnapshot, PrivilegedData, SystemInfo

log = structlog.get_logger()


class DataStatus(str, Enum):
    FULL = "full"  # unprivileged and privileged data present
    PARTIAL = "partial"  # no privileged data (yet, or for the whole session)
    DEGRADED = "degraded"  # some sensor failed on the latest tick


@dataclass(frozen=True)
class CompositeSnapshot:
    """Last metric snapshot merged with last-known privileged data."""

    version: int = 0
    metrics: MetricSnapshot | None = None
    privileged: PrivilegedData | None = None
    history: Mapping[str, tuple[float, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    worker_state: WorkerState = WorkerState.NOT_STARTED
    status: DataStatus = DataStatus.PARTIAL
    system: SystemInfo = field(default_factory=SystemInfo)

    @property
    def timestamp(self) -> float | None:
        return self.metrics.timestamp if self.metrics else None

    @property
    def uptime(self) -> float | None:
        """Seconds since boot as of the latest tick."""
        if self.metrics is None:
            return None
        return self.system.uptime(self.metrics.timestamp)

    def series(self, key: str) -> tuple[float, ...]:
        return self.history.get(key, ())

    def series_keys(self, prefix: str) -> list[str]:
        return sorted(k for k in self.history if k.startswith(prefix))

    def to_dict(self) -> dict[str, Any]:
        """Plain JSON-ready view of the current values (history omitted)."""
        metrics = None
        if self.metrics is not None:
            m = self.metrics
            metrics = {
                "timestamp": m.timestamp,
                "cpu_per_core": list(m.cpu_per_core) if m.cpu_per_core is not None else None,
                "ram_used": m.ram_used,
                "ram_total": m.ram_total,
                "gpu": asdict(m.gpu) if m.gpu is not None else None,
                "cpu_freq_mhz": m.cpu_freq_mhz,
                "network": {
                    iface: {
                        "rx_rate": d.rx_rate,
                        "tx_rate": d.tx_rate,
                        "total_rx_bytes": d.total_rx_bytes,
                        "total_tx_bytes": d.total_tx_bytes,
                    }
                    for iface, d in m.network.items()
                },
                "interfaces": {name: asdict(info) for name, info in m.interfaces.items()},
                "filesystems": [
                    {**asdict(fs), "used_percent": fs.used_percent} for fs in m.filesystems
                ],
                "unavailable": sorted(m.unavailable),
            }
        return {
            "version": self.version,
            "status": self.status.value,
            "worker_state": self.worker_state.value,
            "system": asdict(self.system),
            "uptime": self.uptime,
            "metrics": metrics,
            "privileged": self.privileged.to_dict() if self.privileged is not None else None,
        }


class SnapshotStore:
    """Holds the current ``CompositeSnapshot`` and notifies subscribers on publish."""

    def __init__(self, initial: CompositeSnapshot | None = None):
        self._current = initial if initial is not None else CompositeSnapshot()
        self._subscribers: list[Callable[[CompositeSnapshot], None]] = []
        self._lock = threading.Lock()

    def current(self) -> CompositeSnapshot:
        return self._current

    def publish(self, snapshot: CompositeSnapshot) -> None:
        """Swap in a new snapshot. Versions must strictly increase."""
        with self._lock:
            if snapshot.version <= self._current.version:
                raise ValueError(
                    f"stale snapshot version {snapshot.version} <= {self._current.version}"
                )
            self._current = snapshot
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                log.exception("snapshot_subscriber_failed")

    def subscribe(self, callback: Callable[[CompositeSnapshot], None]) -> Callable[[], None]:
        """Register a non-blocking callback. Returns an unsubscribe function.

        Callbacks run synchronously on the publishing thread, after the new
        snapshot is visible. They may read the store or publish again (the
        aggregator lock is reentrant) but must not block.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe
