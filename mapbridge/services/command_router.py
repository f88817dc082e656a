"""Routes front-end IPC methods and tool calls to backend services."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..constants import QUALITY_STEPS, SIZE_PIXELS, JobStatus
from ..errors import JobValidationError, MapBridgeError, ProtocolError
from ..interfaces.ipc_server import IpcServer
from .job_orchestrator import JobOrchestrator
from .jobs import Lookup

BRIDGE_QUERY_PREFIX = "foundry-mcp-bridge."

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "generate-map",
        "description": "Start AI map generation using D&D Battlemaps SDXL (async)",
        "inputSchema": {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": 'Map description (will be enhanced with "2d DnD battlemap" trigger and perspective)',
                },
                "scene_name": {
                    "type": "string",
                    "description": 'Short, creative name for the scene (e.g., "Harbor District", "Moonlit Tavern"); defaults to the prompt',
                },
                "size": {
                    "type": "string",
                    "enum": list(SIZE_PIXELS),
                    "default": "medium",
                    "description": "Map size (small=1024px, medium=1536px, large=2048px)",
                },
                "grid_size": {
                    "type": "number",
                    "default": 70,
                    "description": "Pixels per 5ft square for scene setup",
                },
            },
            "required": ["prompt"],
        },
    },
    {
        "name": "check-map-status",
        "description": ("Check status of map generation job. Progress updates appear automatically "
                        "in the visual client; only check if the user explicitly asks for status."),
        "inputSchema": {
            "type": "object",
            "properties": {"job_id": {"type": "string", "description": "Job ID to check status for"}},
            "required": ["job_id"],
        },
    },
    {
        "name": "cancel-map-job",
        "description": "Cancel a running map generation job",
        "inputSchema": {
            "type": "object",
            "properties": {"job_id": {"type": "string", "description": "Job ID to cancel"}},
            "required": ["job_id"],
        },
    },
    {
        "name": "list-scenes",
        "description": "List all available scenes with their details",
        "inputSchema": {
            "type": "object",
            "properties": {
                "filter": {
                    "type": "string",
                    "description": "Optional filter to search scene names (case-insensitive)",
                    "default": "",
                },
                "include_active_only": {
                    "type": "boolean",
                    "description": "Only return the currently active scene",
                    "default": False,
                },
            },
        },
    },
    {
        "name": "switch-scene",
        "description": "Switch to a different scene by name or ID",
        "inputSchema": {
            "type": "object",
            "properties": {
                "scene_identifier": {"type": "string", "description": "Scene name or ID to switch to"},
                "optimize_view": {
                    "type": "boolean",
                    "description": "Automatically optimize the view for the scene",
                    "default": True,
                },
            },
            "required": ["scene_identifier"],
        },
    },
]


def _job_id(params: Dict[str, Any]) -> str:
    candidate = params.get("job_id")
    if not isinstance(candidate, str):
        candidate = params.get("jobId")
    job_id = candidate.strip() if isinstance(candidate, str) else ""
    if not job_id:
        raise JobValidationError("job_id is required.")
    return job_id


class CommandRouter:
    """Exposes job and scene operations as IPC methods and named tools."""

    def __init__(self, jobs: JobOrchestrator, *, bridge: Optional[Any] = None,
                 seconds_per_step: float = 18.0,
                 logger: Optional[logging.Logger] = None) -> None:
        self.jobs = jobs
        self.bridge = bridge
        self.seconds_per_step = seconds_per_step
        self.logger = logger or logging.getLogger("ipc.command")
        self._methods: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "list_tools": self.list_tools,
            "call_tool": self.call_tool,
            "submit_job": self.submit_job,
            "job_status": self.job_status,
            "cancel_job": self.cancel_job,
            "list_jobs": self.list_jobs,
            "list_scenes": self.list_scenes,
            "switch_scene": self.switch_scene,
        }
        self._tools: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "generate-map": self.generate_map_tool,
            "check-map-status": self.check_map_status_tool,
            "cancel-map-job": self.cancel_map_job_tool,
            "list-scenes": self.list_scenes,
            "switch-scene": self.switch_scene,
        }

    def install(self, server: IpcServer) -> None:
        for method, handler in self._methods.items():
            server.register(method, handler)
        self.logger.info("Registered %d IPC methods", len(self._methods))

    # Tools -----------------------------------------------------------------------
    async def list_tools(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": TOOL_DEFINITIONS}

    async def call_tool(self, params: Dict[str, Any]) -> Any:
        name = params.get("name")
        handler = self._tools.get(name) if isinstance(name, str) else None
        if handler is None:
            raise ProtocolError(f"Unknown tool: {name}")
        args = params.get("args") or params.get("arguments") or {}
        if not isinstance(args, dict):
            raise ProtocolError(f"Arguments for {name} must be an object")
        self.logger.info("Tool call %s", name)
        return await handler(args)

    async def generate_map_tool(self, args: Dict[str, Any]) -> str:
        try:
            accepted = await self.submit_job(args)
        except MapBridgeError as exc:
            return f"Error: {exc}"
        job = self.jobs.status(accepted["jobId"]).job
        params = job.params if job else None
        size = params.size if params else "medium"
        pixels = SIZE_PIXELS[size]
        lines = [
            f"Map generation started. Job ID: {accepted['jobId']}",
            "",
            f"Prompt: {params.prompt if params else args.get('prompt')}",
            f"Size: {size} ({pixels}x{pixels})",
            f"Grid size: {params.grid_size if params else args.get('grid_size')}px",
            "",
            f"Generation time: {accepted['estimatedTime']}",
            "",
            "Progress updates will appear automatically in the visual client.",
            "Once complete, the map will be imported as a new scene.",
            "Do NOT check status frequently - this wastes tokens.",
        ]
        return "\n".join(lines)

    async def check_map_status_tool(self, args: Dict[str, Any]) -> str:
        try:
            job_id = _job_id(args)
        except JobValidationError as exc:
            return f"Error: {exc}"
        found = self.jobs.status(job_id)
        if found.lookup is Lookup.EXPIRED:
            return f"Job {job_id} has expired."
        job = found.job
        if job is None:
            return f"Job {job_id} not found. It may have expired or been cleaned up."
        if job.status is JobStatus.QUEUED:
            return f"Job {job_id} is queued. Status: {job.current_stage or 'Pending'}."
        if job.status.active:
            return (f"Job {job_id} in progress. Stage: {job.current_stage or 'Processing'}. "
                    f"Progress: {job.progress_percent}%")
        if job.status is JobStatus.COMPLETE:
            duration = (job.result or {}).get("generation_time_ms")
            suffix = f" Generation time: {round(duration / 1000)}s." if isinstance(duration, (int, float)) else ""
            return f"Job {job_id} completed successfully.{suffix}"
        if job.status is JobStatus.FAILED:
            return f"Job {job_id} failed. Reason: {job.error or 'Unknown error'}."
        return f'Job {job_id} returned status "{job.status.value}".'

    async def cancel_map_job_tool(self, args: Dict[str, Any]) -> str:
        try:
            job_id = _job_id(args)
        except JobValidationError as exc:
            return f"Error: {exc}"
        outcome = self.jobs.cancel(job_id)
        if not outcome.success:
            return f"Error: {outcome.message}"
        return f"{outcome.message} (status: {outcome.status})"

    # Direct methods --------------------------------------------------------------
    async def submit_job(self, params: Dict[str, Any]) -> Dict[str, Any]:
        job = self.jobs.submit(params)
        seconds = QUALITY_STEPS[job.params.quality] * self.seconds_per_step
        minutes = max(1, round(seconds / 60))
        return {
            "success": True,
            "jobId": job.id,
            "status": job.status.value,
            "estimatedTime": f"about {minutes} minute{'s' if minutes != 1 else ''} (varies by hardware)",
        }

    async def job_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.jobs.status(_job_id(params)).to_dict()

    async def cancel_job(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.jobs.cancel(_job_id(params)).to_dict()

    async def list_jobs(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"jobs": [job.to_dict() for job in self.jobs.list_jobs()]}

    async def list_scenes(self, params: Dict[str, Any]) -> Any:
        query = {
            "filter": params.get("filter") if isinstance(params.get("filter"), str) else None,
            "include_active_only": bool(params.get("include_active_only")),
        }
        return await self._bridge_query("list-scenes", query)

    async def switch_scene(self, params: Dict[str, Any]) -> Any:
        identifier = params.get("scene_identifier")
        if not isinstance(identifier, str):
            identifier = params.get("sceneId")
        if not isinstance(identifier, str) or not identifier.strip():
            return {"success": False, "error": "scene_identifier is required"}
        query = {
            "scene_identifier": identifier,
            "optimize_view": params.get("optimize_view") is not False,
        }
        return await self._bridge_query("switch-scene", query)

    async def _bridge_query(self, name: str, params: Dict[str, Any]) -> Any:
        if self.bridge is None:
            return {"success": False, "error": "Remote bridge is disabled"}
        try:
            return await self.bridge.query(f"{BRIDGE_QUERY_PREFIX}{name}", params)
        except Exception as exc:
            self.logger.error("Bridge query %s failed: %s", name, exc)
            return {"success": False, "error": str(exc) or "Unknown error"}


__all__ = ["BRIDGE_QUERY_PREFIX", "CommandRouter", "TOOL_DEFINITIONS"]
