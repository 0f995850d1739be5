"""Session wiring: poller and worker launcher feeding one aggregator."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable

import structlog

from gjallarhorn import logging as app_log
from gjallarhorn.aggregator import HistoryAggregator
from gjallarhorn.config import Config
from gjallarhorn.launcher import WorkerLauncher, WorkerState, worker_command
from gjallarhorn.models import SystemInfo
from gjallarhorn.poller import SensorPoller
from gjallarhorn.protocol import Error, Snapshot, WorkerMessage
from gjallarhorn.store import CompositeSnapshot, SnapshotStore
from gjallarhorn.sysinfo import read_system_info

log = structlog.get_logger()


class Monitor:
    """One monitoring session. The presentation layer only reads ``store``."""

    def __init__(
        self,
        config: Config,
        worker_enabled: bool | None = None,
        poller: SensorPoller | None = None,
        worker_argv: list[str] | None = None,
        system: SystemInfo | None = None,
    ):
        self.config = config
        self.aggregator = HistoryAggregator(
            system=system if system is not None else read_system_info()
        )
        self.store: SnapshotStore = self.aggregator.store
        self.poller = poller or SensorPoller(cadence_ms=config.monitor.refresh_rate_ms)
        self.poller.on_sample = self.aggregator.merge

        enabled = config.worker.enabled if worker_enabled is None else worker_enabled
        self.launcher: WorkerLauncher | None = None
        if enabled:
            self.launcher = WorkerLauncher(
                worker_argv or worker_command(config.worker),
                on_message=self._on_worker_message,
                on_state=self._on_worker_state,
                shutdown_timeout=config.worker.shutdown_timeout,
            )
        self._started = False

    @property
    def worker_state(self) -> WorkerState:
        return self.launcher.state if self.launcher else WorkerState.NOT_STARTED

    def _on_worker_message(self, message: WorkerMessage) -> None:
        if isinstance(message, Snapshot):
            self.aggregator.merge(message)
        elif isinstance(message, Error):
            app_log.worker_error(message.reason)

    def _on_worker_state(self, old: WorkerState, new: WorkerState) -> None:
        self.aggregator.set_worker_state(new)
        app_log.worker_state_changed(old.value, new.value)
        if new is WorkerState.DENIED:
            reason = self.launcher.deny_reason if self.launcher else None
            app_log.worker_denied(reason or "unknown")
        elif new is WorkerState.CRASHED:
            app_log.worker_crashed(self.launcher.returncode if self.launcher else None)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        log.info(
            "monitor_starting",
            cadence_ms=self.poller.cadence_ms,
            worker=self.launcher is not None,
        )
        app_log.monitor_started(self.poller.cadence_ms, self.launcher is not None)
        self.poller.start()
        if self.launcher is not None:
            await self.launcher.spawn()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.poller.stop()
        if self.launcher is not None:
            await self.launcher.stop()
        log.info("monitor_stopped")
        app_log.monitor_stopped()

    def set_cadence(self, cadence_ms: int, persist: bool = True) -> int:
        """Change poller cadence at runtime and write it back to the config file."""
        new = self.poller.set_cadence(cadence_ms)
        if new != self.config.monitor.refresh_rate_ms:
            self.config.monitor.refresh_rate_ms = new
            if persist:
                self.config.save()
        return new


async def run_headless(
    monitor: Monitor,
    duration: float | None = None,
    until: Callable[[CompositeSnapshot], bool] | None = None,
    on_snapshot: Callable[[CompositeSnapshot], None] | None = None,
) -> CompositeSnapshot:
    """Run a session without the dashboard.

    Stops after ``duration`` seconds, once ``until`` holds for a published
    snapshot, or on SIGINT/SIGTERM, whichever comes first.
    """
    done = asyncio.Event()

    def _published(snapshot: CompositeSnapshot) -> None:
        if on_snapshot is not None:
            on_snapshot(snapshot)
        if until is not None and until(snapshot):
            done.set()

    def _signalled(sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        app_log.signal_received(sig.name)
        done.set()

    unsubscribe = monitor.store.subscribe(_published)
    loop = asyncio.get_running_loop()
    handled: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _signalled, sig)
            handled.append(sig)
        except (NotImplementedError, RuntimeError):
            pass

    await monitor.start()
    try:
        if duration is None:
            await done.wait()
        else:
            try:
                await asyncio.wait_for(done.wait(), timeout=duration)
            except asyncio.TimeoutError:
                pass
    finally:
        unsubscribe()
        for sig in handled:
            loop.remove_signal_handler(sig)
        await monitor.stop()
    return monitor.store.current()
