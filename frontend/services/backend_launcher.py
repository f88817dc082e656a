"""Spawns and supervises the backend process for the front-end."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional

_logger = logging.getLogger("frontend.backend_launcher")

BUNDLE_ENV = "MAPBRIDGE_BACKEND_BUNDLE"
BUNDLE_NAME = "mapbridge-backend"


@dataclass
class BackendProcessHandle:
    pid: int
    exit_code: Optional[int] = None
    killed_by_us: bool = False


def _default_fatal_exit(exit_code: int) -> None:
    _logger.info("Backend exited cleanly during startup; exiting front-end")
    raise SystemExit(0)


def backend_candidates(project_root: Path, environ: Optional[Mapping[str, str]] = None) -> List[List[str]]:
    """Ordered launch commands: self-contained bundles before the source entry point."""
    env = os.environ if environ is None else environ
    candidates: List[List[str]] = []
    bundle = env.get(BUNDLE_ENV)
    if bundle:
        candidates.append([bundle])
    names = [BUNDLE_NAME, f"{BUNDLE_NAME}.exe"] if sys.platform == "win32" else [BUNDLE_NAME]
    for directory in (Path(sys.executable).parent, project_root, project_root / "dist"):
        for name in names:
            candidates.append([str(directory / name)])
    candidates.append([sys.executable, "-m", "mapbridge.main", "--root", str(project_root)])
    return candidates


def resolve_backend_command(project_root: Path, environ: Optional[Mapping[str, str]] = None) -> List[str]:
    candidates = backend_candidates(project_root, environ)
    for command in candidates[:-1]:
        path = Path(command[0])
        if path.is_file() and os.access(path, os.X_OK):
            return command
    return candidates[-1]


class BackendLauncher:
    """Manages the backend process lifecycle.

    A clean exit (code 0) while we did not ask the backend to stop means it
    refused to start because another instance owns the control port; that is
    reported through ``on_fatal_exit``. Every other exit is only logged.
    """

    def __init__(self, project_root: Optional[Path] = None, *,
                 on_fatal_exit: Optional[Callable[[int], None]] = None,
                 grace: float = 5.0,
                 environ: Optional[Mapping[str, str]] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self.project_root = project_root or Path(__file__).resolve().parents[2]
        self.on_fatal_exit = on_fatal_exit or _default_fatal_exit
        self.grace = grace
        self.environ = environ
        self.logger = logger or _logger
        self._process: Optional[asyncio.subprocess.Process] = None
        self._handle: Optional[BackendProcessHandle] = None
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def handle(self) -> Optional[BackendProcessHandle]:
        return self._handle

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def exited_cleanly(self) -> bool:
        """The last spawned backend exited with code 0 without being asked to."""
        handle = self._handle
        return handle is not None and handle.exit_code == 0 and not handle.killed_by_us

    async def start(self) -> BackendProcessHandle:
        """Start the backend in a subprocess (no-op while one is running)."""
        if self.is_running() and self._handle is not None:
            self.logger.info("Backend already running (PID: %d)", self._handle.pid)
            return self._handle

        cmd = resolve_backend_command(self.project_root, self.environ)
        self.logger.info("Starting backend: %s", " ".join(cmd))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(self.project_root),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        self._process = process
        self._handle = BackendProcessHandle(pid=process.pid)
        self._monitor_task = asyncio.ensure_future(self._monitor(process, self._handle))
        self.logger.info("Backend started (PID: %d)", process.pid)
        return self._handle

    async def _monitor(self, process: asyncio.subprocess.Process, handle: BackendProcessHandle) -> None:
        await self._relay_output(process.stdout)
        exit_code = await process.wait()
        handle.exit_code = exit_code
        if self._process is process:
            self._process = None
        if handle.killed_by_us:
            self.logger.info("Backend stopped (exit code %s)", exit_code)
            return
        if exit_code == 0:
            self.logger.warning("Backend exited cleanly during startup (likely already running elsewhere)")
            self.on_fatal_exit(exit_code)
            return
        self.logger.error("Backend exited unexpectedly (exit code %s)", exit_code)

    async def _relay_output(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        backend_logger = logging.getLogger("backend")
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                backend_logger.info("[Backend] %s", text)

    async def stop(self) -> None:
        """Terminate the backend, killing it if it outlives the grace period."""
        process, handle = self._process, self._handle
        if process is None or handle is None:
            return
        handle.killed_by_us = True
        if process.returncode is None:
            self.logger.info("Stopping backend (PID: %d)", handle.pid)
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.grace)
            except asyncio.TimeoutError:
                self.logger.warning("Backend did not exit in %.1fs; killing it", self.grace)
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        if self._monitor_task is not None:
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None
        self._process = None


__all__ = [
    "BUNDLE_ENV",
    "BackendLauncher",
    "BackendProcessHandle",
    "backend_candidates",
    "resolve_backend_command",
]
