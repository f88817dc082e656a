"""Base classes for backend-facing interfaces."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..core.event_bus import EventBus


class BaseInterface(ABC):
    """Common async lifecycle contract for backend servers."""

    def __init__(self, name: str, bus: EventBus, *, logger: Optional[logging.Logger] = None) -> None:
        self.name = name
        self.bus = bus
        self.logger = logger or logging.getLogger(f"interface.{name}")
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Start the interface."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the interface."""

    @property
    def running(self) -> bool:
        return self._running
