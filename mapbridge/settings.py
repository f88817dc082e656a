"""Typed settings assembled from ``config/mapbridge.yaml`` and environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .constants import (
    BRIDGE_PORT,
    COMFYUI_PORT,
    CONTROL_HOST,
    CONTROL_PORT,
    DEFAULT_SECONDS_PER_STEP,
    TransportKind,
)
from .core.backoff import BackoffPolicy
from .utils.config_loader import ConfigLoader, ConfigSnapshot

ENV_PREFIX = "MAPBRIDGE_"


@dataclass(frozen=True)
class IpcSettings:
    host: str = CONTROL_HOST
    port: int = CONTROL_PORT
    connect_attempts: int = 40
    backoff_base: float = 0.25
    backoff_factor: float = 1.4
    backoff_cap: float = 2.0
    shutdown_grace: float = 5.0

    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(base=self.backoff_base, factor=self.backoff_factor,
                             cap=self.backoff_cap, max_attempts=self.connect_attempts)


@dataclass(frozen=True)
class BridgeSettings:
    enabled: bool = True
    host: str = CONTROL_HOST
    port: int = BRIDGE_PORT
    namespace: str = "/foundry-mcp"
    connection_type: str = TransportKind.AUTO.value
    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    reconnect_cap: float = 30.0
    signaling_port: int = BRIDGE_PORT + 1
    connection_timeout: float = 10.0
    query_timeout: float = 30.0
    heartbeat_interval: float = 30.0


@dataclass(frozen=True)
class ComfyUISettings:
    host: str = "127.0.0.1"
    port: int = COMFYUI_PORT
    install_path: Optional[str] = None
    python_command: Optional[str] = None
    auto_start: bool = True
    health_timeout: float = 5.0
    ready_timeout: float = 60.0
    ready_interval: float = 2.0
    push_reconnect_delay: float = 5.0
    quality: str = "low"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}/ws"


@dataclass(frozen=True)
class JobSettings:
    poll_interval: float = 2.0
    retention_seconds: float = 3600.0
    max_jobs: int = 100
    max_attempts: int = 3
    seconds_per_step: float = DEFAULT_SECONDS_PER_STEP
    output_dir: str = "generated-maps"
    expired_memory: int = 1000


@dataclass(frozen=True)
class Settings:
    ipc: IpcSettings = field(default_factory=IpcSettings)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)
    comfyui: ComfyUISettings = field(default_factory=ComfyUISettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    log_level: str = "INFO"

    @classmethod
    def from_snapshot(cls, snapshot: ConfigSnapshot,
                      environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            ipc=_build(IpcSettings, snapshot.section("ipc"), env, "IPC_"),
            bridge=_build(BridgeSettings, snapshot.section("bridge"), env, "BRIDGE_"),
            comfyui=_build(ComfyUISettings, snapshot.section("comfyui"), env, "COMFYUI_"),
            jobs=_build(JobSettings, snapshot.section("jobs"), env, "JOBS_"),
            log_level=str(env.get(f"{ENV_PREFIX}LOG_LEVEL")
                          or snapshot.content.get("log_level") or "INFO"),
        )

    @classmethod
    def load(cls, root: str | Path, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        loader = ConfigLoader(Path(root) / "config" / "mapbridge.yaml")
        return cls.from_snapshot(loader.get(), environ)


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() not in {"0", "false", "off", "no", ""}
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if default is None:
        return None if value in (None, "") else str(value)
    return str(value)


def _build(cls, section: Dict[str, Any], env: Mapping[str, str], prefix: str):
    instance = cls()
    updates: Dict[str, Any] = {}
    for item in fields(cls):
        default = getattr(instance, item.name)
        env_key = f"{ENV_PREFIX}{prefix}{item.name.upper()}"
        if env_key in env:
            updates[item.name] = _coerce(env[env_key], default)
        elif item.name in section:
            updates[item.name] = _coerce(section[item.name], default)
    return replace(instance, **updates)


__all__ = ["BridgeSettings", "ComfyUISettings", "IpcSettings", "JobSettings", "Settings"]
