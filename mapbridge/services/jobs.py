"""Job records and the structured results returned to callers."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..constants import DEFAULT_GRID_SIZE, QUALITY_STEPS, SCENE_NAME_LIMIT, SIZE_PIXELS, JobStatus
from ..errors import JobValidationError


@dataclass(frozen=True)
class JobParams:
    """Validated generation request."""

    prompt: str
    scene_name: str
    size: str = "medium"
    grid_size: int = DEFAULT_GRID_SIZE
    quality: str = "low"
    seed: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], *,
                     default_quality: str = "low") -> "JobParams":
        data = data or {}
        prompt = data.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise JobValidationError("Prompt is required and must be a string.")
        scene_name = data.get("scene_name")
        if scene_name is not None and not isinstance(scene_name, str):
            raise JobValidationError("Scene name must be a string.")
        if not scene_name or not scene_name.strip():
            # Unnamed requests are titled after their prompt.
            scene_name = prompt.strip()[:SCENE_NAME_LIMIT]

        size = data.get("size") or "medium"
        if size not in SIZE_PIXELS:
            raise JobValidationError(f"Size must be one of: {', '.join(SIZE_PIXELS)}")

        grid_size = data.get("grid_size", DEFAULT_GRID_SIZE)
        try:
            grid_size = float(grid_size)
        except (TypeError, ValueError):
            grid_size = DEFAULT_GRID_SIZE
        if not math.isfinite(grid_size) or grid_size <= 0:
            grid_size = DEFAULT_GRID_SIZE

        quality = data.get("quality") or default_quality
        if quality not in QUALITY_STEPS:
            raise JobValidationError(f"Quality must be one of: {', '.join(QUALITY_STEPS)}")

        seed = data.get("seed")
        if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
            raise JobValidationError("Seed must be an integer.")

        return cls(
            prompt=prompt.strip(),
            scene_name=scene_name.strip(),
            size=size,
            grid_size=int(grid_size),
            quality=quality,
            seed=seed,
        )

    @property
    def pixels(self) -> int:
        return SIZE_PIXELS[self.size]

    @property
    def total_steps(self) -> int:
        return QUALITY_STEPS[self.quality]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of one generation job.

    ``completed_at`` is set exactly when ``status`` is terminal.
    """

    id: str
    params: JobParams
    created_at: float
    status: JobStatus = JobStatus.QUEUED
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    progress_percent: int = 0
    current_stage: str = "Queued"
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "progress_percent": self.progress_percent,
            "current_stage": self.current_stage,
            "params": self.params.to_dict(),
            "result": self.result,
            "error": self.error,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
        }


@dataclass(frozen=True)
class ExternalJobHandle:
    external_id: str
    job_id: str


class Lookup(str, Enum):
    FOUND = "found"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class StatusResult:
    lookup: Lookup
    job_id: str
    job: Optional[Job] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.lookup is Lookup.FOUND and self.job is not None:
            return {"success": True, "status": self.lookup.value, "job": self.job.to_dict()}
        if self.lookup is Lookup.EXPIRED:
            return {"success": True, "status": self.lookup.value,
                    "job": {"id": self.job_id, "status": JobStatus.EXPIRED.value}}
        return {"success": False, "status": self.lookup.value, "job": None,
                "error": f"Job {self.job_id} not found"}


@dataclass(frozen=True)
class CancelResult:
    success: bool
    job_id: str
    status: str
    message: str
    job: Optional[Job] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": self.success,
            "job_id": self.job_id,
            "status": self.status,
            "message": self.message,
        }
        if not self.success:
            body["error"] = self.message
        return body


__all__ = [
    "CancelResult",
    "ExternalJobHandle",
    "Job",
    "JobParams",
    "Lookup",
    "StatusResult",
]
