"""Client side of the dual-transport scene bridge."""

from .client import DualTransportBridge
from .envelope import Envelope
from .scenes import SceneCompletionHandler

__all__ = ["DualTransportBridge", "Envelope", "SceneCompletionHandler"]
