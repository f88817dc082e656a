"""Network-facing interfaces for the backend runtime."""

from .base import BaseInterface
from .ipc_server import IpcServer

__all__ = ["BaseInterface", "IpcServer"]
