from __future__ import annotations

import asyncio

import pytest

from frontend.services.backend_client import ConnectionSupervisor
from mapbridge.core.backoff import BackoffPolicy
from mapbridge.core.event_bus import EventBus
from mapbridge.errors import (
    BackendConnectionError,
    BackendRequestError,
    ConnectionLostError,
    FatalStartupError,
    JobValidationError,
)
from mapbridge.interfaces.ipc_server import IpcServer

from conftest import SleepRecorder


def _policy(attempts: int = 5) -> BackoffPolicy:
    return BackoffPolicy(base=0.01, factor=1.0, cap=0.01, max_attempts=attempts)


async def _start_server(port: int = 0) -> IpcServer:
    server = IpcServer("ipc", EventBus(), host="127.0.0.1", port=port)

    async def echo(params):
        return {"echo": params}

    async def require_job_id(params):
        if "job_id" not in params:
            raise JobValidationError("job_id is required.")
        return {"success": True}

    server.register("echo", echo)
    server.register("job_status", require_job_id)
    await server.start()
    return server


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class ServerLauncher:
    """Launcher double that brings an in-process backend up on demand."""

    def __init__(self, port: int, *, exit_cleanly: bool = False) -> None:
        self.port = port
        self.exit_cleanly = exit_cleanly
        self.starts = 0
        self.stops = 0
        self.server = None

    @property
    def exited_cleanly(self) -> bool:
        return self.exit_cleanly

    async def start(self) -> None:
        self.starts += 1
        if not self.exit_cleanly:
            self.server = await _start_server(self.port)

    async def stop(self) -> None:
        self.stops += 1
        if self.server is not None:
            await self.server.stop()


@pytest.mark.asyncio
async def test_responses_may_arrive_out_of_order():
    server = await _start_server()
    release = asyncio.Event()

    async def slow(params):
        await release.wait()
        return "slow"

    async def fast(params):
        return "fast"

    server.register("slow", slow)
    server.register("fast", fast)
    supervisor = ConnectionSupervisor(host="127.0.0.1", port=server.bound_port, policy=_policy())
    try:
        slow_task = asyncio.ensure_future(supervisor.send("slow"))
        assert await asyncio.wait_for(supervisor.send("fast"), timeout=2.0) == "fast"
        assert not slow_task.done()

        release.set()
        assert await asyncio.wait_for(slow_task, timeout=2.0) == "slow"
        assert supervisor.pending_count == 0
    finally:
        await supervisor.shutdown()
        await server.stop()


@pytest.mark.asyncio
async def test_error_responses_reject_the_request():
    server = await _start_server()
    supervisor = ConnectionSupervisor(host="127.0.0.1", port=server.bound_port, policy=_policy())
    try:
        assert await supervisor.send("echo", {"job_id": "job_1"}) == {"echo": {"job_id": "job_1"}}
        with pytest.raises(BackendRequestError, match="job_id is required."):
            await supervisor.send("job_status", {})
        with pytest.raises(BackendRequestError, match="Unknown method: nope"):
            await supervisor.send("nope")
        assert supervisor.connected, "Request errors leave the channel open"
    finally:
        await supervisor.shutdown()
        await server.stop()


@pytest.mark.asyncio
async def test_backend_death_rejects_pending_requests_once(free_port):
    server = await _start_server(free_port)
    hang = asyncio.Event()

    async def never_answers(params):
        await hang.wait()

    server.register("hang", never_answers)
    supervisor = ConnectionSupervisor(host="127.0.0.1", port=free_port, policy=_policy())
    try:
        first = asyncio.ensure_future(supervisor.send("hang"))
        second = asyncio.ensure_future(supervisor.send("hang"))
        await _wait_until(lambda: supervisor.pending_count == 2)

        await server.stop()

        for task in (first, second):
            with pytest.raises(ConnectionLostError):
                await asyncio.wait_for(task, timeout=2.0)
        assert supervisor.pending_count == 0
        assert not supervisor.connected

        # The next request reconnects to a fresh backend.
        server = await _start_server(free_port)
        assert await asyncio.wait_for(supervisor.send("echo", {"n": 1}), timeout=2.0) == {"echo": {"n": 1}}
    finally:
        await supervisor.shutdown()
        await server.stop()


@pytest.mark.asyncio
async def test_request_timeout_drops_late_answer():
    server = await _start_server()
    release = asyncio.Event()

    async def late(params):
        await release.wait()
        return "late"

    server.register("late", late)
    supervisor = ConnectionSupervisor(host="127.0.0.1", port=server.bound_port, policy=_policy())
    try:
        with pytest.raises(asyncio.TimeoutError):
            await supervisor.send("late", timeout=0.05)
        assert supervisor.pending_count == 0

        release.set()
        assert await supervisor.send("echo", {}) == {"echo": {}}
    finally:
        await supervisor.shutdown()
        await server.stop()


@pytest.mark.asyncio
async def test_spawn_then_connect(free_port):
    launcher = ServerLauncher(free_port)
    sleep = SleepRecorder()
    supervisor = ConnectionSupervisor(host="127.0.0.1", port=free_port, policy=_policy(),
                                      launcher=launcher, sleep=sleep)
    try:
        assert await asyncio.wait_for(supervisor.send("echo", {"hello": "backend"}), timeout=2.0) == {
            "echo": {"hello": "backend"},
        }
        assert launcher.starts == 1
        assert sleep.delays == [0.01]
    finally:
        await supervisor.shutdown()
    assert launcher.stops == 1, "Shutdown stops the spawned backend"


@pytest.mark.asyncio
async def test_clean_backend_exit_is_fatal(free_port):
    launcher = ServerLauncher(free_port, exit_cleanly=True)
    sleep = SleepRecorder()
    supervisor = ConnectionSupervisor(host="127.0.0.1", port=free_port, policy=_policy(),
                                      launcher=launcher, sleep=sleep)
    with pytest.raises(FatalStartupError):
        await supervisor.ensure_connected()
    assert len(sleep.delays) == 1


@pytest.mark.asyncio
async def test_unreachable_backend_exhausts_attempts(free_port):
    sleep = SleepRecorder()
    supervisor = ConnectionSupervisor(host="127.0.0.1", port=free_port, policy=_policy(attempts=4), sleep=sleep)

    with pytest.raises(BackendConnectionError) as excinfo:
        await supervisor.send("echo")

    assert len(sleep.delays) == 4
    assert isinstance(excinfo.value.__cause__, OSError)
    await supervisor.shutdown()
    with pytest.raises(BackendConnectionError):
        await supervisor.send("echo")
