"""Rolling history per metric series, merged with privileged data.

Series keys::

    cpu.<core>          percent per logical core
    ram                 percent of total
    gpu.util, gpu.mem   percent
    net.<iface>.rx/tx   bytes per second

The poller owns the unprivileged fields and the worker reader owns the
privileged ones. Both merge here under one lock and every merge publishes
a complete new ``CompositeSnapshot``.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from types import MappingProxyType

import structlog

from gjallarhorn.launcher import WorkerState
from gjallarhorn.models import MetricSnapshot, PrivilegedData, SystemInfo
from gjallarhorn.protocol import Snapshot
from gjallarhorn.ringbuffer import HISTORY_CAPACITY, HistoryBuffer
from gjallarhorn.store import CompositeSnapshot, DataStatus, SnapshotStore

log = structlog.get_logger()

# Privileged data is frozen once the session can no longer be trusted to refresh it
_FROZEN_STATES = (WorkerState.CRASHED, WorkerState.DENIED)


def metric_samples(snapshot: MetricSnapshot) -> dict[str, float]:
    """Scalar samples to append for one tick. Unavailable fields contribute nothing."""
    samples: dict[str, float] = {}
    if snapshot.cpu_per_core is not None:
        for core, percent in enumerate(snapshot.cpu_per_core):
            samples[f"cpu.{core}"] = percent
    if snapshot.ram_percent is not None:
        samples["ram"] = snapshot.ram_percent
    if snapshot.gpu is not None:
        samples["gpu.util"] = snapshot.gpu.utilization
        samples["gpu.mem"] = snapshot.gpu.memory_percent
    for iface, delta in snapshot.network.items():
        samples[f"net.{iface}.rx"] = delta.rx_rate
        samples[f"net.{iface}.tx"] = delta.tx_rate
    return samples


def derive_status(metrics: MetricSnapshot | None, privileged: PrivilegedData | None) -> DataStatus:
    if metrics is not None and metrics.unavailable:
        return DataStatus.DEGRADED
    if privileged is None:
        return DataStatus.PARTIAL
    return DataStatus.FULL


class HistoryAggregator:
    """Owns the history buffers and publishes composites to a ``SnapshotStore``."""

    def __init__(
        self,
        store: SnapshotStore | None = None,
        capacity: int = HISTORY_CAPACITY,
        system: SystemInfo | None = None,
    ):
        self.store = store if store is not None else SnapshotStore()
        self.capacity = capacity
        self._buffers: dict[str, HistoryBuffer] = {}
        # Reentrant: subscribers run inside publish and may merge again
        self._lock = threading.RLock()
        if system is not None:
            current = self.store.current()
            self.store.publish(replace(current, version=current.version + 1, system=system))

    def _publish(self, current: CompositeSnapshot, **changes) -> CompositeSnapshot:
        merged = replace(current, **changes)
        merged = replace(
            merged,
            version=current.version + 1,
            status=derive_status(merged.metrics, merged.privileged),
        )
        self.store.publish(merged)
        return merged

    def _frozen_history(self) -> MappingProxyType:
        return MappingProxyType({key: buf.freeze() for key, buf in self._buffers.items()})

    def merge(self, item: MetricSnapshot | PrivilegedData | Snapshot) -> bool:
        """Merge one input. Returns True when a new composite was published."""
        if isinstance(item, Snapshot):
            item = item.data
        if isinstance(item, MetricSnapshot):
            return self._merge_metrics(item)
        if isinstance(item, PrivilegedData):
            return self._merge_privileged(item)
        raise TypeError(f"Cannot merge {type(item).__name__}")

    def _merge_metrics(self, snapshot: MetricSnapshot) -> bool:
        with self._lock:
            current = self.store.current()
            if current.metrics is not None and snapshot.timestamp < current.metrics.timestamp:
                snapshot = replace(snapshot, timestamp=current.metrics.timestamp)
            for key, value in metric_samples(snapshot).items():
                buffer = self._buffers.get(key)
                if buffer is None:
                    buffer = self._buffers[key] = HistoryBuffer(self.capacity)
                buffer.push(value)
            self._publish(current, metrics=snapshot, history=self._frozen_history())
        return True

    def _merge_privileged(self, data: PrivilegedData) -> bool:
        with self._lock:
            current = self.store.current()
            if current.worker_state in _FROZEN_STATES:
                log.debug("privileged_merge_rejected", worker_state=current.worker_state.value)
                return False
            if current.privileged == data:
                return False
            self._publish(current, privileged=data)
        return True

    def set_worker_state(self, state: WorkerState) -> None:
        with self._lock:
            current = self.store.current()
            if current.worker_state is state:
                return
            self._publish(current, worker_state=state)

    def get_snapshot(self) -> CompositeSnapshot:
        return self.store.current()
