"""Backend runtime wiring the IPC server, job orchestrator, and bridge hub."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Optional

from ..interfaces.bridge_server import BridgeHub
from ..interfaces.ipc_server import IpcServer
from ..services.command_router import CommandRouter
from ..services.comfyui_client import ComfyUIClient, ProgressCallback
from ..services.job_orchestrator import JobOrchestrator
from ..settings import Settings
from ..utils.logger import setup_logging
from .event_bus import EventBus


class BackendRuntime:
    """Owns every long-lived backend component and their start/stop order.

    The IPC server starts first: binding its address is what makes a backend
    exclusive, so a second instance fails before touching anything else.
    """

    def __init__(self, settings: Settings, *, root: Optional[Path] = None,
                 log_root: Optional[Path] = None, configure_logging: bool = True) -> None:
        if configure_logging:
            setup_logging(log_root, level=settings.log_level)
        self.logger = logging.getLogger("runtime")
        self.settings = settings
        self.root = Path(root) if root else Path.cwd()
        self.bus = EventBus()

        job_settings = settings.jobs
        if not Path(job_settings.output_dir).is_absolute():
            job_settings = replace(job_settings, output_dir=str(self.root / job_settings.output_dir))
        self.jobs = JobOrchestrator(
            job_settings,
            self.bus,
            client_factory=self._build_client,
            retry_policy=replace(settings.ipc.backoff(), max_attempts=job_settings.max_attempts),
            default_quality=settings.comfyui.quality,
        )
        self.ipc = IpcServer("ipc", self.bus, host=settings.ipc.host, port=settings.ipc.port)
        self.hub: Optional[BridgeHub] = None
        if settings.bridge.enabled:
            self.hub = BridgeHub("bridge", self.bus, settings=settings.bridge)
        self.router = CommandRouter(self.jobs, bridge=self.hub,
                                    seconds_per_step=job_settings.seconds_per_step)
        self.router.install(self.ipc)
        self._running = False

    def _build_client(self, callbacks: Dict[str, ProgressCallback]) -> ComfyUIClient:
        return ComfyUIClient(self.settings.comfyui, progress_callbacks=callbacks)

    async def start(self) -> None:
        if self._running:
            return
        self.logger.info("Starting backend runtime")
        await self.ipc.start()
        try:
            await self.jobs.client.open()
            await self.jobs.start()
            if self.hub is not None:
                try:
                    await self.hub.start()
                except OSError as exc:
                    self.logger.error("Bridge hub unavailable, continuing without it: %s", exc)
                    self.router.bridge = None
                    self.hub = None
        except BaseException:
            await self.ipc.stop()
            raise
        self._running = True
        self.logger.info("Backend runtime started")

    async def stop(self) -> None:
        if not self._running:
            return
        self.logger.info("Stopping backend runtime")
        if self.hub is not None:
            await self.hub.stop()
        await self.jobs.stop()
        await self.jobs.client.close()
        await self.ipc.stop()
        self._running = False
        self.logger.info("Backend runtime stopped")

    @property
    def running(self) -> bool:
        return self._running


__all__ = ["BackendRuntime"]
