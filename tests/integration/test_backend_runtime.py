from __future__ import annotations

import asyncio

import pytest

from frontend.services.backend_client import ConnectionSupervisor
from mapbridge.core.backoff import BackoffPolicy
from mapbridge.core.event_bus import EventBus
from mapbridge.core.runtime import BackendRuntime
from mapbridge.errors import BackendRequestError
from mapbridge.interfaces.ipc_server import IpcServer
from mapbridge.main import EXIT_ALREADY_RUNNING, run
from mapbridge.settings import BridgeSettings, ComfyUISettings, IpcSettings, JobSettings, Settings


def _settings(tmp_path, comfy_port: int, ipc_port: int = 0) -> Settings:
    return Settings(
        ipc=IpcSettings(port=ipc_port),
        bridge=BridgeSettings(enabled=False),
        comfyui=ComfyUISettings(port=comfy_port, auto_start=False, health_timeout=0.5,
                                install_path=str(tmp_path / "ComfyUI"), push_reconnect_delay=0.2),
        jobs=JobSettings(poll_interval=0.05, output_dir="maps"),
    )


@pytest.mark.asyncio
async def test_frontend_drives_backend_over_loopback(tmp_path, free_port, harbor_request):
    runtime = BackendRuntime(_settings(tmp_path, free_port), root=tmp_path, configure_logging=False)
    await runtime.start()
    supervisor = ConnectionSupervisor(
        host="127.0.0.1",
        port=runtime.ipc.bound_port,
        policy=BackoffPolicy(base=0.01, factor=1.0, cap=0.01, max_attempts=3),
    )
    try:
        tools = await supervisor.send("list_tools")
        assert "generate-map" in [tool["name"] for tool in tools["tools"]]

        accepted = await supervisor.send("submit_job", harbor_request)
        assert accepted["success"] is True
        assert accepted["status"] == "queued"
        job_id = accepted["jobId"]

        status = await supervisor.send("job_status", {"job_id": job_id})
        assert status["success"] is True
        assert status["job"]["params"]["scene_name"] == "Harbor District"

        with pytest.raises(BackendRequestError, match="job_id is required"):
            await supervisor.send("job_status", {})

        cancelled = await supervisor.send("cancel_job", {"job_id": job_id})
        assert cancelled["success"] is True
        assert cancelled["status"] == "cancelled"

        assert await supervisor.send("list_scenes", {}) == {
            "success": False,
            "error": "Remote bridge is disabled",
        }
        assert runtime.settings.jobs.output_dir == "maps"
        assert runtime.jobs.settings.output_dir == str(tmp_path / "maps")
    finally:
        await supervisor.shutdown()
        await runtime.stop()
    assert not runtime.running


@pytest.mark.asyncio
async def test_second_backend_exits_cleanly_when_port_is_taken(tmp_path, free_port):
    holder = IpcServer("ipc", EventBus(), host="127.0.0.1", port=0)
    await holder.start()
    try:
        runtime = BackendRuntime(_settings(tmp_path, free_port, ipc_port=holder.bound_port),
                                 root=tmp_path, configure_logging=False)
        code = await asyncio.wait_for(run(runtime, asyncio.Event()), timeout=5.0)
        assert code == EXIT_ALREADY_RUNNING
        assert not runtime.running
    finally:
        await holder.stop()


@pytest.mark.asyncio
async def test_runtime_stops_when_asked(tmp_path, free_port):
    runtime = BackendRuntime(_settings(tmp_path, free_port), root=tmp_path, configure_logging=False)
    stop_event = asyncio.Event()
    running = asyncio.ensure_future(run(runtime, stop_event))
    for _ in range(200):
        if runtime.running:
            break
        await asyncio.sleep(0.01)
    assert runtime.running

    stop_event.set()
    assert await asyncio.wait_for(running, timeout=5.0) == 0
    assert not runtime.running
