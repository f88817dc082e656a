"""Exception hierarchy shared by the front-end, the backend, and the bridge."""

from __future__ import annotations

from typing import Optional


class MapBridgeError(Exception):
    """Base error for every failure raised by this package."""


# Connection supervisor ---------------------------------------------------------
class BackendConnectionError(MapBridgeError):
    """The backend could not be reached after exhausting the retry budget."""


class ConnectionLostError(MapBridgeError):
    """The IPC channel closed while a request was still pending."""


class BackendRequestError(MapBridgeError):
    """The backend answered a request with a structured error."""


class FatalStartupError(MapBridgeError):
    """The backend exited cleanly during startup (resources held elsewhere)."""


class ProtocolError(MapBridgeError):
    """A frame or envelope did not match the wire contract."""


# Remote bridge -----------------------------------------------------------------
class BridgeConnectionError(MapBridgeError):
    """No transport could be established for the remote bridge."""


class BridgeNotConnectedError(MapBridgeError):
    """A correlated query was issued while the bridge had no active peer."""


# External service --------------------------------------------------------------
class ComfyUIError(MapBridgeError):
    """Failure talking to the external generation service.

    Args:
        message: Human-friendly error message.
        route: Route path (e.g. ``"/prompt"``).
        status: Optional HTTP status code.
    """

    def __init__(self, message: str, *, route: Optional[str] = None,
                 status: Optional[int] = None) -> None:
        super().__init__(message)
        self.route = route
        self.status = status


class ComfyUITimeout(ComfyUIError):
    """Raised when the external service does not answer in time."""


class ServiceStartupError(ComfyUIError):
    """Raised when the external service cannot be brought up."""


# Jobs --------------------------------------------------------------------------
class JobValidationError(MapBridgeError):
    """Generation parameters were rejected before a job was created."""


__all__ = [
    "MapBridgeError",
    "BackendConnectionError",
    "ConnectionLostError",
    "BackendRequestError",
    "FatalStartupError",
    "ProtocolError",
    "BridgeConnectionError",
    "BridgeNotConnectedError",
    "ComfyUIError",
    "ComfyUITimeout",
    "ServiceStartupError",
    "JobValidationError",
]
