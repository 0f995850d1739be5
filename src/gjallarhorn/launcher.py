"""Spawns the privileged worker and owns its lifecycle.

The launcher runs the worker behind the elevation broker, reads and
decodes its stdout on a background task, and tracks a small absorbing
state machine::

    NOT_STARTED -> LAUNCHING -> AUTHORIZED -> STREAMING
                        |            |            |
                        +------------+------------+--> DENIED | CRASHED | TERMINATED

A refused authorization is an ordinary outcome: the session simply stays
unprivileged.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable
from enum import Enum

import structlog

from gjallarhorn.config import WorkerConfig
from gjallarhorn.protocol import (
    MAX_LINE_BYTES,
    Error,
    ParseError,
    ParseErrorKind,
    Ready,
    Shutdown,
    Snapshot,
    WorkerMessage,
    decode_frame,
    encode,
)

log = structlog.get_logger()

# pkexec: 126 = authorization dismissed/refused, 127 = not authorized or helper missing
DENIED_EXIT_CODES = frozenset({126, 127})


class WorkerState(str, Enum):
    NOT_STARTED = "not_started"
    LAUNCHING = "launching"
    AUTHORIZED = "authorized"
    STREAMING = "streaming"
    DENIED = "denied"
    CRASHED = "crashed"
    TERMINATED = "terminated"

    @property
    def terminal(self) -> bool:
        return self in (WorkerState.DENIED, WorkerState.CRASHED, WorkerState.TERMINATED)


_ENDINGS = {WorkerState.DENIED, WorkerState.CRASHED, WorkerState.TERMINATED}

_TRANSITIONS: dict[WorkerState, set[WorkerState]] = {
    WorkerState.NOT_STARTED: {WorkerState.LAUNCHING},
    WorkerState.LAUNCHING: {WorkerState.AUTHORIZED} | _ENDINGS,
    WorkerState.AUTHORIZED: {WorkerState.STREAMING, WorkerState.CRASHED, WorkerState.TERMINATED},
    WorkerState.STREAMING: {WorkerState.CRASHED, WorkerState.TERMINATED},
}

_PARSE_EVENTS = {
    ParseErrorKind.MALFORMED: "malformed_worker_line",
    ParseErrorKind.UNKNOWN_VARIANT: "unknown_worker_message",
    ParseErrorKind.TRUNCATED_LINE: "truncated_worker_line",
}


def worker_command(config: WorkerConfig, euid: int | None = None) -> list[str]:
    """Build the argv that starts the worker, elevated unless already root."""
    argv = [
        sys.executable,
        "-m",
        "gjallarhorn",
        "--privileged-worker",
        "--probe-interval",
        str(config.probe_interval),
        "--tool-timeout",
        str(config.tool_timeout),
    ]
    euid = os.geteuid() if euid is None else euid
    if euid == 0 or not config.elevation_command:
        return argv
    return [config.elevation_command, *argv]


class WorkerLauncher:
    """Owns one worker process for the whole session. No relaunch after a terminal state."""

    def __init__(
        self,
        command: list[str],
        on_message: Callable[[WorkerMessage], None] | None = None,
        on_state: Callable[[WorkerState, WorkerState], None] | None = None,
        shutdown_timeout: float = 3.0,
    ):
        self.command = list(command)
        self.shutdown_timeout = shutdown_timeout
        self._on_message = on_message
        self._on_state = on_state
        self._state = WorkerState.NOT_STARTED
        self._proc: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stop_requested = False
        self.returncode: int | None = None
        self.deny_reason: str | None = None

    @classmethod
    def from_config(cls, config: WorkerConfig, **kwargs) -> WorkerLauncher:
        return cls(worker_command(config), shutdown_timeout=config.shutdown_timeout, **kwargs)

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def _transition(self, new: WorkerState) -> bool:
        old = self._state
        if new not in _TRANSITIONS.get(old, set()):
            log.debug("worker_transition_ignored", current=old.value, requested=new.value)
            return False
        self._state = new
        log.info("worker_state_changed", old=old.value, new=new.value)
        if self._on_state is not None:
            try:
                self._on_state(old, new)
            except Exception:
                log.exception("worker_state_callback_failed")
        return True

    async def spawn(self) -> None:
        """Start the worker and return without waiting for authorization.

        Calls after the first are no-ops.
        """
        if self._state is not WorkerState.NOT_STARTED:
            return
        self._transition(WorkerState.LAUNCHING)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=MAX_LINE_BYTES,
            )
        except (FileNotFoundError, PermissionError) as e:
            self.deny_reason = f"{self.command[0]}: {e.strerror or e}"
            log.warning("worker_spawn_denied", command=self.command[0], error=str(e))
            self._transition(WorkerState.DENIED)
            return
        except OSError as e:
            log.error("worker_spawn_failed", command=self.command[0], error=str(e))
            self._transition(WorkerState.CRASHED)
            return

        log.info("worker_spawned", pid=self._proc.pid, command=self.command[0])
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    def _dispatch(self, message: WorkerMessage | ParseError) -> None:
        if isinstance(message, ParseError):
            log.warning(_PARSE_EVENTS[message.kind], detail=message.detail[:200])
            return
        if isinstance(message, Ready):
            log.info("worker_ready", worker_pid=message.pid)
            self._transition(WorkerState.AUTHORIZED)
        elif isinstance(message, Snapshot):
            if self._state is WorkerState.LAUNCHING:
                self._transition(WorkerState.AUTHORIZED)
            if self._state is WorkerState.AUTHORIZED:
                self._transition(WorkerState.STREAMING)
        elif isinstance(message, Error):
            log.warning("worker_reported_error", reason=message.reason)
        elif isinstance(message, Shutdown):
            log.info("worker_sent_shutdown")
            self._transition(WorkerState.TERMINATED)

        if self._on_message is not None:
            try:
                self._on_message(message)
            except Exception:
                log.exception("worker_message_callback_failed")

    async def _read_loop(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        try:
            while True:
                try:
                    raw = await stdout.readline()
                except ValueError:
                    # Line longer than MAX_LINE_BYTES; the reader has discarded it
                    self._dispatch(ParseError(ParseErrorKind.TRUNCATED_LINE, "line exceeds limit"))
                    continue
                if not raw:
                    break
                message = decode_frame(raw)
                if message is not None:
                    self._dispatch(message)
            self.returncode = await self._proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("worker_reader_failed")
            self.returncode = self._proc.returncode
        self._on_exit(self.returncode)

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        stderr = self._proc.stderr
        while True:
            try:
                raw = await stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            log.debug("worker_stderr", line=raw.decode("utf-8", errors="replace").rstrip())

    def _on_exit(self, returncode: int | None) -> None:
        if self._state.terminal:
            return
        if self._stop_requested:
            self._transition(WorkerState.TERMINATED)
        elif self._state is WorkerState.LAUNCHING and returncode in DENIED_EXIT_CODES:
            self.deny_reason = f"authorization refused (exit {returncode})"
            log.warning("worker_denied", returncode=returncode)
            self._transition(WorkerState.DENIED)
        else:
            log.warning("worker_crashed", returncode=returncode)
            self._transition(WorkerState.CRASHED)

    def _signal(self, action: str) -> None:
        assert self._proc is not None
        try:
            getattr(self._proc, action)()
        except ProcessLookupError:
            pass
        except PermissionError as e:
            # An elevated worker cannot be signalled by an unprivileged client
            log.warning("worker_signal_denied", action=action, error=str(e))

    async def _wait_exit(self, timeout: float) -> bool:
        assert self._proc is not None
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        """Ask the worker to exit, escalating to terminate and kill after a grace period."""
        self._stop_requested = True
        proc = self._proc
        if proc is None:
            if self._state is WorkerState.LAUNCHING:
                self._transition(WorkerState.TERMINATED)
            return

        if proc.returncode is None and proc.stdin is not None:
            try:
                proc.stdin.write(encode(Shutdown()).encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            proc.stdin.close()

        if not await self._wait_exit(self.shutdown_timeout):
            log.warning("worker_shutdown_timeout", timeout=self.shutdown_timeout)
            self._signal("terminate")
            if not await self._wait_exit(1.0):
                self._signal("kill")
                await self._wait_exit(1.0)

        for task in (self._reader_task, self._stderr_task):
            if task is None:
                continue
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except asyncio.TimeoutError:
                log.warning("worker_pipes_still_open")
            except asyncio.CancelledError:
                pass

        self._on_exit(proc.returncode)
        log.info("worker_stopped", returncode=proc.returncode)
