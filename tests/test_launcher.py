"""Tests for the worker launcher and its state machine."""

import asyncio
import sys

import pytest

from gjallarhorn.config import WorkerConfig
from gjallarhorn.launcher import WorkerLauncher, WorkerState, worker_command
from gjallarhorn.protocol import MAX_LINE_BYTES, Ready, Shutdown, Snapshot

READY = '{"type":"ready","pid":1,"v":1}'
SNAPSHOT = '{"type":"snapshot","v":1,"data":{"collected_at":1.0,"disks":[],"memory":{}}}'

# Well-behaved worker: streams, then waits for the shutdown request
CHILD = f"""
import sys
print({READY!r}, flush=True)
print("not json", flush=True)
print('{{"type":"mystery","v":1}}', flush=True)
print({SNAPSHOT!r}, flush=True)
sys.stdin.readline()
print('{{"type":"shutdown","v":1}}', flush=True)
"""


async def wait_until(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Recorder:
    """Collects launcher callbacks."""

    def __init__(self):
        self.messages = []
        self.transitions = []

    def on_message(self, message):
        self.messages.append(message)

    def on_state(self, old, new):
        self.transitions.append((old, new))

    @property
    def states(self):
        return [new for _, new in self.transitions]


def make_launcher(script: str, recorder: Recorder, **kwargs) -> WorkerLauncher:
    return WorkerLauncher(
        [sys.executable, "-c", script],
        on_message=recorder.on_message,
        on_state=recorder.on_state,
        **kwargs,
    )


def test_worker_state_terminal():
    assert WorkerState.DENIED.terminal
    assert WorkerState.CRASHED.terminal
    assert WorkerState.TERMINATED.terminal
    assert not WorkerState.STREAMING.terminal
    assert not WorkerState.NOT_STARTED.terminal


class TestWorkerCommand:
    """worker_command() builds the elevated argv."""

    def test_elevates_when_not_root(self):
        argv = worker_command(WorkerConfig(), euid=1000)
        assert argv == [
            "pkexec",
            sys.executable,
            "-m",
            "gjallarhorn",
            "--privileged-worker",
            "--probe-interval",
            "10.0",
            "--tool-timeout",
            "10.0",
        ]

    def test_root_runs_directly(self):
        argv = worker_command(WorkerConfig(), euid=0)
        assert argv[0] == sys.executable
        assert "--privileged-worker" in argv

    def test_empty_elevation_command(self):
        argv = worker_command(WorkerConfig(elevation_command=""), euid=1000)
        assert argv[0] == sys.executable

    def test_from_config(self):
        launcher = WorkerLauncher.from_config(WorkerConfig(shutdown_timeout=1.5))
        assert launcher.shutdown_timeout == 1.5
        assert launcher.state is WorkerState.NOT_STARTED


@pytest.mark.asyncio
async def test_full_lifecycle():
    recorder = Recorder()
    launcher = make_launcher(CHILD, recorder)

    await launcher.spawn()
    await wait_until(lambda: launcher.state is WorkerState.STREAMING)
    await launcher.stop()

    assert recorder.states == [
        WorkerState.LAUNCHING,
        WorkerState.AUTHORIZED,
        WorkerState.STREAMING,
        WorkerState.TERMINATED,
    ]
    assert launcher.state is WorkerState.TERMINATED
    assert launcher.returncode == 0


@pytest.mark.asyncio
async def test_malformed_and_unknown_lines_are_skipped():
    recorder = Recorder()
    launcher = make_launcher(CHILD, recorder)

    await launcher.spawn()
    await wait_until(lambda: launcher.state is WorkerState.STREAMING)
    await launcher.stop()

    assert [type(m) for m in recorder.messages] == [Ready, Snapshot, Shutdown]


@pytest.mark.asyncio
async def test_spawn_is_idempotent():
    recorder = Recorder()
    launcher = make_launcher(CHILD, recorder)

    await launcher.spawn()
    pid = launcher.pid
    await launcher.spawn()
    assert launcher.pid == pid
    await launcher.stop()
    assert recorder.states.count(WorkerState.LAUNCHING) == 1


@pytest.mark.asyncio
async def test_missing_broker_is_denied():
    recorder = Recorder()
    launcher = WorkerLauncher(
        ["/nonexistent/elevate", "worker"],
        on_state=recorder.on_state,
    )

    await launcher.spawn()

    assert launcher.state is WorkerState.DENIED
    assert recorder.states == [WorkerState.LAUNCHING, WorkerState.DENIED]
    assert launcher.deny_reason.startswith("/nonexistent/elevate")


@pytest.mark.asyncio
async def test_refused_authorization_is_denied():
    recorder = Recorder()
    launcher = make_launcher("raise SystemExit(126)", recorder)

    await launcher.spawn()
    await wait_until(lambda: launcher.state.terminal)

    assert launcher.state is WorkerState.DENIED
    assert launcher.returncode == 126
    assert launcher.deny_reason == "authorization refused (exit 126)"


@pytest.mark.asyncio
async def test_exit_before_ready_is_crash():
    recorder = Recorder()
    launcher = make_launcher("raise SystemExit(1)", recorder)

    await launcher.spawn()
    await wait_until(lambda: launcher.state.terminal)

    assert launcher.state is WorkerState.CRASHED


@pytest.mark.asyncio
async def test_exit_after_ready_is_crash():
    recorder = Recorder()
    launcher = make_launcher(f"print({READY!r}, flush=True); raise SystemExit(3)", recorder)

    await launcher.spawn()
    await wait_until(lambda: launcher.state.terminal)

    assert recorder.states == [WorkerState.LAUNCHING, WorkerState.AUTHORIZED, WorkerState.CRASHED]
    assert launcher.returncode == 3


@pytest.mark.asyncio
async def test_terminal_state_is_absorbing():
    recorder = Recorder()
    launcher = make_launcher("raise SystemExit(1)", recorder)

    await launcher.spawn()
    await wait_until(lambda: launcher.state.terminal)
    await launcher.stop()
    await launcher.spawn()

    assert launcher.state is WorkerState.CRASHED
    assert recorder.states == [WorkerState.LAUNCHING, WorkerState.CRASHED]


@pytest.mark.asyncio
async def test_unresponsive_worker_is_terminated():
    """A worker that ignores the shutdown message is signalled after the grace period."""
    recorder = Recorder()
    script = f"import time; print({READY!r}, flush=True); time.sleep(60)"
    launcher = make_launcher(script, recorder, shutdown_timeout=0.2)

    await launcher.spawn()
    await wait_until(lambda: launcher.state is WorkerState.AUTHORIZED)
    await asyncio.wait_for(launcher.stop(), timeout=10)

    assert launcher.state is WorkerState.TERMINATED


@pytest.mark.asyncio
async def test_oversized_line_does_not_kill_the_reader():
    recorder = Recorder()
    script = (
        "import sys\n"
        f"sys.stdout.write('x' * {MAX_LINE_BYTES + 100} + '\\n')\n"
        f"print({READY!r}, flush=True)\n"
        "sys.stdin.readline()\n"
    )
    launcher = make_launcher(script, recorder)

    await launcher.spawn()
    await wait_until(lambda: launcher.state is WorkerState.AUTHORIZED)
    await launcher.stop()

    assert isinstance(recorder.messages[0], Ready)
    assert launcher.state is WorkerState.TERMINATED


@pytest.mark.asyncio
async def test_stop_before_spawn_is_noop():
    launcher = WorkerLauncher([sys.executable, "-c", "pass"])
    await launcher.stop()
    assert launcher.state is WorkerState.NOT_STARTED
