"""Helpers for loading YAML configuration files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

_logger = logging.getLogger("config")


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable wrapper holding a configuration payload and metadata."""

    content: Dict[str, Any]
    path: Optional[Path]
    mtime: float

    def section(self, name: str) -> Dict[str, Any]:
        value = self.content.get(name) or {}
        if not isinstance(value, dict):
            raise ValueError(f"config section {name!r} must be a mapping")
        return value


class ConfigLoader:
    """Load a YAML file into a :class:`ConfigSnapshot`.

    A missing file yields an empty snapshot so every setting falls back to
    its default.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._snapshot = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> ConfigSnapshot:
        if not self._path.exists():
            _logger.info("Config file %s not found, using defaults", self._path)
            return ConfigSnapshot(content={}, path=None, mtime=0.0)
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {self._path} must contain a mapping")
        _logger.debug("Loaded config from %s", self._path)
        return ConfigSnapshot(content=data, path=self._path, mtime=self._path.stat().st_mtime)

    def get(self) -> ConfigSnapshot:
        return self._snapshot


__all__ = ["ConfigLoader", "ConfigSnapshot"]
