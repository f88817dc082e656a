"""Centralised constants for event kinds, job states, and connection states."""

from __future__ import annotations

from enum import Enum


class EventTopic(str, Enum):
    """Canonical topics available on the internal event bus."""

    JOB_PROGRESS = "map-generation-progress"
    JOB_COMPLETED = "job-completed"
    JOB_FAILED = "job-failed"
    JOB_CANCELLED = "job-cancelled"


class MessageType(str, Enum):
    """Envelope ``type`` values understood on the remote bridge."""

    QUERY = "mcp-query"
    RESPONSE = "mcp-response"
    PING = "ping"
    PONG = "pong"
    PROGRESS = "map-generation-progress"
    JOB_COMPLETED = "job-completed"


class JobStatus(str, Enum):
    """Lifecycle state of a generation job."""

    QUEUED = "queued"
    GENERATING = "generating"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES

    @property
    def active(self) -> bool:
        return self in (JobStatus.GENERATING, JobStatus.PROCESSING)


TERMINAL_JOB_STATES = frozenset({
    JobStatus.COMPLETE,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.EXPIRED,
})


class ConnectionState(str, Enum):
    """Connection state of a bridge instance."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TransportKind(str, Enum):
    """Transport preference for the remote bridge."""

    AUTO = "auto"
    WEBSOCKET = "websocket"
    WEBRTC = "webrtc"


class ExternalStatus(str, Enum):
    """Coarse job state reported by the external generation service."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


CONTROL_HOST = "127.0.0.1"
CONTROL_PORT = 31414
BRIDGE_PORT = 31415
COMFYUI_PORT = 31411

SIZE_PIXELS = {
    "small": 1024,
    "medium": 1536,
    "large": 2048,
}

QUALITY_STEPS = {
    "low": 8,
    "medium": 20,
    "high": 35,
}

AI_MAPS_FOLDER = "AI Generated Maps"
DEFAULT_GRID_SIZE = 70
SCENE_NAME_LIMIT = 64
DEFAULT_SECONDS_PER_STEP = 18.0
MAX_ESTIMATED_PROGRESS = 99
