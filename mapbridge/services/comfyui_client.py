"""HTTP + push client for a local ComfyUI instance.

Two signal sources describe a running prompt: the ``/ws`` push channel emits
step counters in real time but is not guaranteed to deliver, and the
``/history`` / ``/queue`` endpoints are authoritative for terminal state but
only as fresh as the last poll. Both feed the same progress callback table,
which the job orchestrator owns and hands in at construction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, MutableMapping, Optional

import aiohttp
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from ..constants import ExternalStatus
from ..errors import ComfyUIError, ComfyUITimeout, ServiceStartupError
from ..settings import ComfyUISettings
from . import comfyui_paths
from .workflow import workflow_steps

ProgressCallback = Callable[[int, int], None]
GPU_FIELDS = ("device_name", "gpu_name", "device", "gpu_device", "torch_device_name")


@dataclass(frozen=True)
class PollResult:
    status: ExternalStatus
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    estimated_time_remaining: Optional[float] = None


@dataclass(frozen=True)
class ArtifactRef:
    filename: str
    subfolder: str = ""
    type: str = "output"

    def query(self) -> Dict[str, str]:
        return {"filename": self.filename, "subfolder": self.subfolder, "type": self.type}


@dataclass(frozen=True)
class HealthInfo:
    available: bool
    response_time: Optional[float] = None
    system_info: Dict[str, Any] = field(default_factory=dict)
    gpu_info: Optional[str] = None


def extract_gpu_info(stats: Any) -> Optional[str]:
    if not isinstance(stats, dict):
        return None
    for source in (stats, stats.get("system"), *(stats.get("devices") or [])):
        if not isinstance(source, dict):
            continue
        for name in GPU_FIELDS:
            if source.get(name):
                return str(source[name])
    return None


def parse_artifacts(history: Any, external_id: str) -> List[ArtifactRef]:
    """Collect image outputs for one prompt from a ``/history`` payload."""
    if not isinstance(history, dict):
        return []
    entry = history.get(external_id)
    if not isinstance(entry, dict) or not isinstance(entry.get("outputs"), dict):
        return []
    refs: List[ArtifactRef] = []
    for output in entry["outputs"].values():
        images = output.get("images") if isinstance(output, dict) else None
        if not isinstance(images, list):
            continue
        for image in images:
            if isinstance(image, dict) and image.get("filename"):
                refs.append(ArtifactRef(
                    filename=str(image["filename"]),
                    subfolder=str(image.get("subfolder") or ""),
                    type=str(image.get("type") or "output"),
                ))
    return refs


def history_failed(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    status = entry.get("status")
    return isinstance(status, dict) and status.get("status_str") == "error"


class ComfyUIClient:
    """Talks to ComfyUI and, when configured to, runs it as a child process."""

    def __init__(self, settings: ComfyUISettings, *,
                 progress_callbacks: MutableMapping[str, ProgressCallback],
                 session: Optional[aiohttp.ClientSession] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.logger = logger or logging.getLogger("comfyui")
        self.client_id = f"ai-maps-server-{uuid.uuid4().hex[:12]}"
        self.progress_callbacks = progress_callbacks
        self._session = session
        self._owns_session = session is None
        self._push_task: Optional[asyncio.Task] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._relay_tasks: List[asyncio.Task] = []
        install = settings.install_path or comfyui_paths.detect_installation()
        self.install_path: Optional[Path] = Path(install) if install else None
        self.python_command = settings.python_command or comfyui_paths.default_python_command(self.install_path)

    # Lifecycle -------------------------------------------------------------------
    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        if self._push_task is None:
            self._push_task = asyncio.ensure_future(self._push_loop())
        self.logger.info("ComfyUI client initialized (%s, install=%s, client=%s)",
                         self.settings.base_url, self.install_path, self.client_id)

    async def close(self) -> None:
        task, self._push_task = self._push_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.stop_service()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self.logger.info("ComfyUI client shutdown complete")

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise ComfyUIError("ComfyUI client is not open")
        return self._session

    # HTTP helpers ----------------------------------------------------------------
    async def _request(self, method: str, route: str, *, timeout: float, json_body: Any = None,
                       params: Optional[Dict[str, str]] = None, raw: bool = False) -> Any:
        url = f"{self.settings.base_url}{route}"
        try:
            async with self.session.request(method, url, json=json_body, params=params,
                                            timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise ComfyUIError(f"{method} {route} returned {resp.status}: {body[:200]}",
                                       route=route, status=resp.status)
                if raw:
                    return await resp.read()
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ComfyUITimeout(f"Timeout while calling {method} {route}", route=route) from exc
        except aiohttp.ClientError as exc:
            raise ComfyUIError(f"{method} {route} failed: {exc}", route=route) from exc

    # Health / process ------------------------------------------------------------
    async def check_health(self) -> HealthInfo:
        started = time.monotonic()
        try:
            stats = await self._request("GET", "/system_stats", timeout=self.settings.health_timeout)
        except ComfyUIError as exc:
            self.logger.debug("ComfyUI health check failed: %s", exc)
            return HealthInfo(available=False)
        return HealthInfo(
            available=True,
            response_time=time.monotonic() - started,
            system_info=stats if isinstance(stats, dict) else {},
            gpu_info=extract_gpu_info(stats),
        )

    def check_installation(self) -> bool:
        if self.install_path is None:
            return False
        valid = comfyui_paths.is_valid_path(self.install_path)
        if not valid:
            self.logger.warning("ComfyUI installation not found at %s", self.install_path)
        return valid

    @property
    def process_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def ensure_running(self) -> HealthInfo:
        """Start the service when it does not answer and auto-start is enabled."""
        health = await self.check_health()
        if health.available or not self.settings.auto_start:
            return health
        await self.start_service()
        return await self.check_health()

    async def start_service(self) -> None:
        if self.process_running:
            self.logger.warning("ComfyUI service already running")
            return
        if self.install_path is None:
            raise ServiceStartupError("Cannot start ComfyUI: no local installation configured")
        if not self.check_installation():
            raise ServiceStartupError(f"ComfyUI is not installed at {self.install_path}")

        cmd = [
            self.python_command,
            str(self.install_path / "main.py"),
            "--port", str(self.settings.port),
            "--listen", self.settings.host,
            "--disable-auto-launch",
            "--dont-print-server",
        ]
        self.logger.info("Starting ComfyUI service: %s", " ".join(cmd))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.install_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "PYTHONUNBUFFERED": "1"},
            )
        except OSError as exc:
            raise ServiceStartupError(f"Failed to launch ComfyUI: {exc}") from exc
        self._relay_tasks = [
            asyncio.ensure_future(self._relay_output(self._process.stdout, "STDOUT")),
            asyncio.ensure_future(self._relay_output(self._process.stderr, "STDERR")),
        ]
        await self.wait_until_ready()
        self.logger.info("ComfyUI service started successfully")

    async def _relay_output(self, stream: Optional[asyncio.StreamReader], label: str) -> None:
        if stream is None:
            return
        process_logger = logging.getLogger("comfyui.process")
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                process_logger.debug("[%s] %s", label, text)

    async def wait_until_ready(self) -> None:
        """Poll health until ComfyUI answers, failing fast if its process died."""
        self.logger.info("Waiting for ComfyUI service to become ready...")
        deadline = time.monotonic() + self.settings.ready_timeout
        while time.monotonic() < deadline:
            health = await self.check_health()
            if health.available:
                self.logger.info("ComfyUI service is ready (%.2fs)", health.response_time or 0.0)
                return
            if self._process is not None and self._process.returncode is not None:
                raise ServiceStartupError(
                    f"ComfyUI process exited before becoming ready (code {self._process.returncode})")
            await asyncio.sleep(self.settings.ready_interval)
        raise ComfyUITimeout("ComfyUI service failed to become ready within timeout")

    async def stop_service(self, grace: float = 5.0) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            self.logger.info("Stopping ComfyUI service")
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                self.logger.warning("Force killing ComfyUI process")
                process.kill()
                await process.wait()
        for task in self._relay_tasks:
            task.cancel()
        if self._relay_tasks:
            await asyncio.gather(*self._relay_tasks, return_exceptions=True)
        self._relay_tasks = []

    # Jobs ------------------------------------------------------------------------
    async def submit(self, workflow: Dict[str, Any]) -> str:
        data = await self._request("POST", "/prompt", timeout=10.0,
                                   json_body={"prompt": workflow, "client_id": self.client_id})
        prompt_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not isinstance(prompt_id, str) or not prompt_id.strip():
            raise ComfyUIError("Invalid response payload: missing prompt_id", route="/prompt")
        if data.get("node_errors"):
            self.logger.warning("ComfyUI reported node errors for %s: %s", prompt_id, data["node_errors"])
        self.logger.info("ComfyUI job submitted: %s", prompt_id)
        return prompt_id

    async def poll_status(self, external_id: str) -> PollResult:
        """Coarse state of a prompt: history first, then the live queue.

        Raises:
            ComfyUIError: the service could not be reached; the caller retries
                on its next poll.
        """
        history = await self._request("GET", f"/history/{external_id}", timeout=5.0)
        if isinstance(history, dict) and history:
            if history_failed(history.get(external_id)):
                return PollResult(ExternalStatus.FAILED)
            return PollResult(ExternalStatus.COMPLETE)

        queue = await self._request("GET", "/queue", timeout=5.0)
        queue = queue if isinstance(queue, dict) else {}
        for item in queue.get("queue_running") or []:
            if _queue_item_id(item) == external_id:
                graph = item[2] if len(item) > 2 else None
                return PollResult(ExternalStatus.RUNNING, total_steps=workflow_steps(graph))
        for item in queue.get("queue_pending") or []:
            if _queue_item_id(item) == external_id:
                return PollResult(ExternalStatus.QUEUED)
        self.logger.warning("Job %s not found in history or queue", external_id)
        return PollResult(ExternalStatus.FAILED)

    async def fetch_artifacts(self, external_id: str) -> List[ArtifactRef]:
        history = await self._request("GET", f"/history/{external_id}", timeout=5.0)
        return parse_artifacts(history, external_id)

    async def download_artifact(self, ref: ArtifactRef) -> bytes:
        return await self._request("GET", "/view", timeout=30.0, params=ref.query(), raw=True)

    async def interrupt(self, external_id: str) -> bool:
        try:
            await self._request("POST", "/interrupt", timeout=5.0, json_body={})
        except ComfyUIError as exc:
            self.logger.error("Failed to cancel ComfyUI job %s: %s", external_id, exc)
            return False
        self.logger.info("ComfyUI job cancelled: %s", external_id)
        return True

    # Push channel ----------------------------------------------------------------
    @property
    def push_url(self) -> str:
        return f"{self.settings.ws_url}?clientId={self.client_id}"

    async def _push_loop(self) -> None:
        while True:
            try:
                async with ws_connect(self.push_url, max_size=None) as websocket:
                    self.logger.info("ComfyUI WebSocket connected (%s)", self.client_id)
                    async for raw in websocket:
                        if isinstance(raw, bytes):
                            # Binary frames carry preview images.
                            continue
                        try:
                            message = json.loads(raw)
                        except json.JSONDecodeError as exc:
                            self.logger.error("Failed to parse WebSocket message: %s", exc)
                            continue
                        self.handle_push_message(message)
            except asyncio.CancelledError:
                raise
            except (OSError, ConnectionClosed, asyncio.TimeoutError) as exc:
                self.logger.debug("ComfyUI WebSocket unavailable: %s", exc)
            except Exception as exc:
                self.logger.warning("ComfyUI WebSocket error: %s", exc)
            self.logger.debug("ComfyUI WebSocket closed, reconnecting in %.0fs",
                              self.settings.push_reconnect_delay)
            await asyncio.sleep(self.settings.push_reconnect_delay)

    def handle_push_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        data = message.get("data")
        if not isinstance(data, dict):
            return
        kind = message.get("type")
        if kind == "progress":
            value, maximum = data.get("value"), data.get("max")
            if not isinstance(value, int) or not isinstance(maximum, int) or maximum <= 0:
                return
            self.logger.debug("ComfyUI progress update: %s/%s", value, maximum)
            prompt_id = data.get("prompt_id")
            if prompt_id is not None:
                callback = self.progress_callbacks.get(prompt_id)
                targets = [callback] if callback else []
            else:
                targets = list(self.progress_callbacks.values())
            for callback in targets:
                try:
                    callback(value, maximum)
                except Exception:
                    self.logger.exception("Progress callback failed")
        elif kind == "executing":
            self.logger.debug("ComfyUI executing node %s (%s)", data.get("node"), data.get("prompt_id"))


def _queue_item_id(item: Any) -> Optional[str]:
    # Queue entries are [number, prompt_id, graph, extra, outputs].
    if isinstance(item, (list, tuple)) and len(item) > 1:
        return item[1]
    return None


__all__ = [
    "ArtifactRef",
    "ComfyUIClient",
    "HealthInfo",
    "PollResult",
    "ProgressCallback",
    "extract_gpu_info",
    "history_failed",
    "parse_artifacts",
]
