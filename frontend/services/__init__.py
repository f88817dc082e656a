from .backend_client import ConnectionSupervisor, PendingRequest
from .backend_launcher import BackendLauncher, BackendProcessHandle

__all__ = ["BackendLauncher", "BackendProcessHandle", "ConnectionSupervisor", "PendingRequest"]
