"""Headless privileged worker.

Started by the launcher as ``gjallarhorn --privileged-worker`` behind the
elevation broker. Writes protocol lines to stdout, reads protocol lines
from stdin, and logs JSON to stderr. It stops on a ``Shutdown`` message,
on stdin EOF, when stdout breaks, or on SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from pathlib import Path
from typing import TextIO

import structlog

from gjallarhorn.diagnostics import SYS_BLOCK, probe_disks, probe_memory
from gjallarhorn.models import PrivilegedData
from gjallarhorn.protocol import (
    MAX_LINE_BYTES,
    Error,
    ParseError,
    Ready,
    Shutdown,
    Snapshot,
    WorkerMessage,
    decode_frame,
    encode,
)

log = structlog.get_logger()


class PrivilegedWorker:
    """Runs elevated probe cycles and streams them as protocol messages."""

    def __init__(
        self,
        output: TextIO | None = None,
        probe_interval: float = 10.0,
        tool_timeout: float = 10.0,
        sys_block: Path = SYS_BLOCK,
    ):
        self._output = output if output is not None else sys.stdout
        self.probe_interval = probe_interval
        self.tool_timeout = tool_timeout
        self.sys_block = sys_block
        self._shutdown_event = asyncio.Event()
        self._pipe_open = True
        self.cycles = 0

    @property
    def pipe_open(self) -> bool:
        return self._pipe_open

    def request_shutdown(self, reason: str) -> None:
        if not self._shutdown_event.is_set():
            log.info("worker_shutdown_requested", reason=reason)
        self._shutdown_event.set()

    def emit(self, message: WorkerMessage) -> bool:
        """Write one message. Returns False (and requests shutdown) if stdout is gone."""
        if not self._pipe_open:
            return False
        try:
            self._output.write(encode(message))
            self._output.flush()
        except ValueError as e:
            # Writing to a closed file raises ValueError, as does an unencodable message
            if not self._output.closed:
                log.error("worker_message_dropped", kind=type(message).__name__, error=str(e))
                return True
            self._close_output(e)
            return False
        except OSError as e:
            self._close_output(e)
            return False
        return True

    def _close_output(self, error: Exception) -> None:
        self._pipe_open = False
        log.info("worker_output_closed", error=str(error))
        self.request_shutdown("output closed")

    async def probe_once(self) -> PrivilegedData:
        """Run one elevated probe cycle. Per-field failures become unavailable markers."""
        try:
            disks = await probe_disks(self.tool_timeout, sys_block=self.sys_block)
        except OSError as e:
            log.warning("disk_enumeration_failed", error=str(e))
            self.emit(Error(reason=f"disk enumeration failed: {e}"))
            disks = ()

        memory = await probe_memory(self.tool_timeout)
        if memory.slot_count is None:
            self.emit(Error(reason=f"memory inventory unavailable: {memory.detail}"))

        return PrivilegedData(collected_at=time.time(), disks=disks, memory=memory)

    async def _watch_input(self, reader: asyncio.StreamReader) -> None:
        """Stop on a Shutdown message or when the client closes our stdin."""
        while not self._shutdown_event.is_set():
            try:
                raw = await reader.readline()
            except ValueError:
                log.warning("oversized_client_line")
                continue
            if not raw:
                self.request_shutdown("stdin closed")
                return
            message = decode_frame(raw)
            if isinstance(message, Shutdown):
                self.request_shutdown("shutdown message")
                return
            if isinstance(message, ParseError):
                log.debug("malformed_client_line", kind=message.kind.value, detail=message.detail)

    async def _wait_shutdown(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, reader: asyncio.StreamReader | None = None) -> int:
        """Probe until shutdown. Returns the process exit code."""
        input_task = asyncio.create_task(self._watch_input(reader)) if reader else None
        try:
            self.emit(Ready(pid=os.getpid()))
            if os.geteuid() != 0:
                log.warning("worker_not_root", euid=os.geteuid())
                self.emit(
                    Error(reason="not running as root; privileged fields will be unavailable")
                )

            while not self._shutdown_event.is_set():
                probe_task = asyncio.create_task(self.probe_once())
                stop_task = asyncio.create_task(self._shutdown_event.wait())
                done, _ = await asyncio.wait(
                    {probe_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if probe_task not in done:
                    # Cancelling the probe kills and reaps any running tool
                    probe_task.cancel()
                    try:
                        await probe_task
                    except asyncio.CancelledError:
                        pass
                    break
                stop_task.cancel()

                data = probe_task.result()
                self.cycles += 1
                log.debug("probe_cycle_complete", cycle=self.cycles, disks=len(data.disks))
                if not self.emit(Snapshot(data=data)):
                    break
                if await self._wait_shutdown(self.probe_interval):
                    break
        finally:
            if input_task is not None:
                input_task.cancel()
                try:
                    await input_task
                except asyncio.CancelledError:
                    pass
            self.emit(Shutdown())
        return 0


async def _connect_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _main(probe_interval: float, tool_timeout: float) -> int:
    worker = PrivilegedWorker(probe_interval=probe_interval, tool_timeout=tool_timeout)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: worker.request_shutdown(s.name))

    try:
        reader = await _connect_stdin()
    except (OSError, ValueError) as e:
        # stdin is not a pipe (e.g. a terminal during manual runs)
        log.info("worker_stdin_unavailable", error=str(e))
        reader = None

    code = await worker.run(reader)
    if not worker.pipe_open:
        # Keep interpreter shutdown from flushing into the broken pipe
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    return code


def run_worker(probe_interval: float = 10.0, tool_timeout: float = 10.0) -> int:
    """Entry point for ``--privileged-worker``. Returns the exit code."""
    from gjallarhorn.logging import configure_worker

    configure_worker()
    log.info("worker_starting", pid=os.getpid(), euid=os.geteuid())
    try:
        return asyncio.run(_main(probe_interval, tool_timeout))
    except Exception as e:
        log.exception("worker_crashed", error=str(e))
        return 1
