"""Job orchestration and ComfyUI services behind the IPC commands."""

from .comfyui_client import ComfyUIClient
from .job_orchestrator import JobOrchestrator
from .jobs import Job, JobParams

__all__ = ["ComfyUIClient", "Job", "JobOrchestrator", "JobParams"]
