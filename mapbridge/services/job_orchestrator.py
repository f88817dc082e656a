"""Bounded in-memory table of generation jobs and the poller that advances them.

Job state only ever changes here. The external service is consulted through a
client built by ``client_factory``; the progress-callback table handed to that
factory belongs to the orchestrator, so push updates and polling converge on
the same records. Readers get frozen :class:`~mapbridge.services.jobs.Job`
snapshots, never the live table.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from ..constants import MAX_ESTIMATED_PROGRESS, EventTopic, ExternalStatus, JobStatus
from ..core.backoff import BackoffPolicy, retry_with_backoff
from ..core.event_bus import EventBus
from ..errors import ComfyUIError, JobValidationError
from ..settings import JobSettings
from .comfyui_client import ArtifactRef, PollResult, ProgressCallback
from .jobs import CancelResult, ExternalJobHandle, Job, JobParams, Lookup, StatusResult
from .workflow import build_workflow

ClientFactory = Callable[[Dict[str, ProgressCallback]], Any]

PROCESSING_THRESHOLD = 90


def build_scene_payload(params: JobParams, image_path: str) -> Dict[str, Any]:
    """Scene document handed to the visual client on completion."""
    pixels = params.pixels
    return {
        "name": params.scene_name,
        "img": image_path,
        "background": {"src": image_path},
        "width": pixels,
        "height": pixels,
        "padding": 0,
        "grid": {"size": params.grid_size, "type": 1},
        "walls": [],
    }


class JobOrchestrator:
    def __init__(self, settings: JobSettings, bus: EventBus, *,
                 client_factory: ClientFactory,
                 retry_policy: Optional[BackoffPolicy] = None,
                 default_quality: str = "low",
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.bus = bus
        self.logger = logger or logging.getLogger("jobs")
        self.progress_callbacks: Dict[str, ProgressCallback] = {}
        self.client = client_factory(self.progress_callbacks)
        self.retry_policy = retry_policy or BackoffPolicy(max_attempts=settings.max_attempts)
        self.default_quality = default_quality
        self.output_dir = Path(settings.output_dir)
        self._clock = clock
        self._sleep = sleep
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._expired: "OrderedDict[str, float]" = OrderedDict()
        self._handles: Dict[str, ExternalJobHandle] = {}
        self._external_ids: Dict[str, str] = {}
        self._push_steps: Dict[str, Tuple[int, int]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._poller: Optional[asyncio.Task] = None

    # Lifecycle -------------------------------------------------------------------
    async def start(self) -> None:
        if self._poller is None:
            self._poller = asyncio.ensure_future(self._poll_loop())
            self.logger.info("Job poller started (interval %.1fs)", self.settings.poll_interval)

    async def stop(self) -> None:
        poller, self._poller = self._poller, None
        tasks = [task for task in (poller, *self._tasks) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def drain(self) -> None:
        """Wait for background submissions and interrupts started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Public operations -----------------------------------------------------------
    def submit(self, params: Mapping[str, Any]) -> Job:
        """Accept a generation request; submission happens in the background."""
        job_params = JobParams.from_mapping(params, default_quality=self.default_quality)
        self.expire_stale()
        self._make_room()
        job_id = f"job_{uuid.uuid4().hex[:16]}"
        job = Job(
            id=job_id,
            params=job_params,
            created_at=self._clock(),
            max_attempts=self.retry_policy.max_attempts,
        )
        self._jobs[job_id] = job
        self.logger.info("Accepted job %s (%s, %s)", job_id, job_params.scene_name, job_params.size)
        self._spawn(self._submit_external(job_id))
        return job

    def status(self, job_id: str) -> StatusResult:
        self.expire_stale()
        job = self._jobs.get(job_id)
        if job is not None:
            return StatusResult(Lookup.FOUND, job_id, job)
        if job_id in self._expired:
            return StatusResult(Lookup.EXPIRED, job_id)
        return StatusResult(Lookup.NOT_FOUND, job_id)

    def cancel(self, job_id: str) -> CancelResult:
        self.expire_stale()
        job = self._jobs.get(job_id)
        if job is None:
            lookup = Lookup.EXPIRED if job_id in self._expired else Lookup.NOT_FOUND
            return CancelResult(False, job_id, lookup.value, f"Job {job_id} {lookup.value.replace('_', ' ')}")
        if job.status.terminal:
            return CancelResult(False, job_id, job.status.value,
                                f"Job {job_id} is already {job.status.value}", job=job)

        cancelled = self._update(job_id, status=JobStatus.CANCELLED, current_stage="Cancelled")
        external_id = self._release(job_id)
        if external_id is not None:
            self._spawn(self.client.interrupt(external_id))
        self.logger.info("Cancelled job %s", job_id)
        self.bus.emit(EventTopic.JOB_CANCELLED, {"job_id": job_id})
        return CancelResult(True, job_id, JobStatus.CANCELLED.value,
                            "Map generation job cancelled.", job=cancelled)

    def list_jobs(self) -> List[Job]:
        self.expire_stale()
        return list(self._jobs.values())

    def external_handle(self, job_id: str) -> Optional[ExternalJobHandle]:
        external_id = self._external_ids.get(job_id)
        return self._handles.get(external_id) if external_id else None

    # Table maintenance -----------------------------------------------------------
    def expire_stale(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        retention = self.settings.retention_seconds
        stale = []
        for job_id, job in self._jobs.items():
            anchor = job.completed_at if job.completed_at is not None else job.created_at
            if now - anchor >= retention:
                stale.append(job_id)
        for job_id in stale:
            self._expire(job_id)
        return stale

    def _expire(self, job_id: str) -> None:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return
        external_id = self._release(job_id)
        if external_id is not None and not job.status.terminal:
            self._spawn(self.client.interrupt(external_id))
        self._push_steps.pop(job_id, None)
        self._expired[job_id] = self._clock()
        while len(self._expired) > self.settings.expired_memory:
            self._expired.popitem(last=False)
        self.logger.info("Expired job %s (%s)", job_id, job.status.value)

    def _make_room(self) -> None:
        while len(self._jobs) >= self.settings.max_jobs:
            finished = [job for job in self._jobs.values() if job.status.terminal]
            if not finished:
                raise JobValidationError(
                    f"Too many active jobs (limit {self.settings.max_jobs}); try again later.")
            oldest = min(finished, key=lambda job: job.completed_at or job.created_at)
            self._expire(oldest.id)

    def _update(self, job_id: str, **changes: Any) -> Job:
        job = self._jobs[job_id]
        status = changes.get("status", job.status)
        if "progress_percent" in changes:
            changes["progress_percent"] = max(job.progress_percent, changes["progress_percent"])
        if status.terminal and job.completed_at is None:
            changes.setdefault("completed_at", self._clock())
        updated = replace(job, **changes)
        self._jobs[job_id] = updated
        return updated

    def _live(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.status.terminal:
            return None
        return job

    def _bind(self, job_id: str, external_id: str) -> None:
        existing = self._handles.get(external_id)
        if existing is not None and existing.job_id != job_id:
            raise ComfyUIError(f"External id {external_id} already bound to job {existing.job_id}")
        self._handles[external_id] = ExternalJobHandle(external_id=external_id, job_id=job_id)
        self._external_ids[job_id] = external_id
        self.progress_callbacks[external_id] = partial(self._on_push_progress, job_id)

    def _release(self, job_id: str) -> Optional[str]:
        external_id = self._external_ids.pop(job_id, None)
        if external_id is not None:
            self._handles.pop(external_id, None)
            self.progress_callbacks.pop(external_id, None)
        return external_id

    # Submission ------------------------------------------------------------------
    async def _submit_external(self, job_id: str) -> None:
        job = self._live(job_id)
        if job is None:
            return
        params = job.params
        workflow = build_workflow(params.prompt, width=params.pixels, height=params.pixels,
                                  seed=params.seed, quality=params.quality)

        async def attempt() -> str:
            if self._live(job_id) is None:
                raise asyncio.CancelledError()
            current = self._jobs[job_id]
            self._update(job_id, attempts=current.attempts + 1, current_stage="Submitting to ComfyUI")
            await self.client.ensure_running()
            return await self.client.submit(workflow)

        def on_retry(attempt_no: int, delay: float, exc: BaseException) -> None:
            self.logger.warning("Submission of %s failed (attempt %d/%d): %s; retrying in %.2fs",
                                job_id, attempt_no, self.retry_policy.max_attempts, exc, delay)

        try:
            external_id = await retry_with_backoff(attempt, policy=self.retry_policy,
                                                   on_retry=on_retry, sleep=self._sleep)
        except asyncio.CancelledError:
            if self._live(job_id) is None:
                self.logger.debug("Submission of %s abandoned: job no longer active", job_id)
                return
            raise
        except Exception as exc:
            if self._live(job_id) is not None:
                self._fail(job_id, f"Submission failed after {self._jobs[job_id].attempts} attempts: {exc}")
            return

        if self._live(job_id) is None:
            # Cancelled or expired while the request was in flight.
            self.logger.info("Job %s ended during submission; interrupting %s", job_id, external_id)
            await self.client.interrupt(external_id)
            return
        try:
            self._bind(job_id, external_id)
        except ComfyUIError as exc:
            self._fail(job_id, str(exc))
            return
        self._update(job_id, current_stage="Waiting in ComfyUI queue")
        self.logger.info("Job %s submitted as %s", job_id, external_id)

    # Polling ---------------------------------------------------------------------
    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                self.logger.exception("Job poll cycle failed")
            await asyncio.sleep(self.settings.poll_interval)

    async def poll_once(self) -> None:
        """Advance every live job that has an external id by one observation."""
        self.expire_stale()
        for job_id, external_id in list(self._external_ids.items()):
            if self._live(job_id) is None:
                continue
            try:
                result = await self.client.poll_status(external_id)
            except ComfyUIError as exc:
                self.logger.warning("Status check for %s failed: %s", job_id, exc)
                continue
            await self._apply_poll(job_id, external_id, result)

    async def _apply_poll(self, job_id: str, external_id: str, result: PollResult) -> None:
        if self._live(job_id) is None:
            return
        if result.status is ExternalStatus.RUNNING:
            self._on_running(job_id, result.total_steps)
        elif result.status is ExternalStatus.COMPLETE:
            await self._complete(job_id, external_id)
        elif result.status is ExternalStatus.FAILED:
            self._fail(job_id, "ComfyUI reported the job as failed")

    def _on_running(self, job_id: str, total_steps: Optional[int] = None) -> None:
        job = self._jobs[job_id]
        if job.status is JobStatus.QUEUED:
            job = self._update(job_id, status=JobStatus.GENERATING, started_at=self._clock(),
                               current_stage="Generating map")
            self.logger.info("Job %s is generating", job_id)
        self._refresh_progress(job_id, total_steps)

    def _on_push_progress(self, job_id: str, current_step: int, total_steps: int) -> None:
        job = self._live(job_id)
        if job is None:
            return
        self._push_steps[job_id] = (current_step, total_steps)
        if job.status.active:
            self._refresh_progress(job_id, total_steps)

    def _refresh_progress(self, job_id: str, total_steps: Optional[int] = None) -> None:
        job = self._jobs[job_id]
        percent, current, total, remaining = self._estimate(job, total_steps)
        changes: Dict[str, Any] = {"progress_percent": percent}
        if job.status is JobStatus.GENERATING and max(percent, job.progress_percent) >= PROCESSING_THRESHOLD:
            changes.update(status=JobStatus.PROCESSING, current_stage="Finalizing map")
        job = self._update(job_id, **changes)
        self.bus.emit(EventTopic.JOB_PROGRESS, {
            "job_id": job_id,
            "progress": job.progress_percent,
            "status": job.current_stage,
            "queueInfo": {
                "currentStep": current,
                "totalSteps": total,
                "estimatedTimeRemaining": remaining,
            },
        })

    def _estimate(self, job: Job, total_steps: Optional[int]) -> Tuple[int, int, int, float]:
        per_step = self.settings.seconds_per_step
        pushed = self._push_steps.get(job.id)
        if pushed is not None:
            current, total = pushed
            total = max(total, 1)
            percent = int(current * 100 / total)
        else:
            # Approximation until the push channel reports real steps.
            total = max(total_steps or job.params.total_steps, 1)
            elapsed = max(self._clock() - (job.started_at or self._clock()), 0.0)
            current = min(total, int(elapsed / per_step)) if per_step > 0 else 0
            percent = int(elapsed * 100 / (total * per_step)) if per_step > 0 else 0
        current = min(current, total)
        percent = min(percent, MAX_ESTIMATED_PROGRESS)
        remaining = max(0.0, (total - current) * per_step)
        return percent, current, total, remaining

    # Terminal transitions --------------------------------------------------------
    async def _complete(self, job_id: str, external_id: str) -> None:
        try:
            artifacts = await self.client.fetch_artifacts(external_id)
        except ComfyUIError as exc:
            self.logger.warning("Could not list outputs for %s: %s", job_id, exc)
            return
        if self._live(job_id) is None:
            self.logger.info("Ignoring completion of inactive job %s", job_id)
            return
        if not artifacts:
            self._fail(job_id, "ComfyUI finished without producing an image")
            return
        self._update(job_id, current_stage="Downloading map")
        artifact = artifacts[0]
        try:
            data = await self.client.download_artifact(artifact)
            if self._live(job_id) is None:
                return
            image_path = self._store_image(job_id, artifact, data)
        except (ComfyUIError, OSError) as exc:
            if self._live(job_id) is not None:
                self._fail(job_id, f"Failed to retrieve generated image: {exc}")
            return

        job = self._jobs[job_id]
        scene = build_scene_payload(job.params, image_path)
        now = self._clock()
        result = {
            "image_path": image_path,
            "artifact": artifact.filename,
            "scene": scene,
            "generation_time_ms": int((now - job.created_at) * 1000),
        }
        self._release(job_id)
        self._push_steps.pop(job_id, None)
        self._update(job_id, status=JobStatus.COMPLETE, progress_percent=100,
                     current_stage="Complete", result=result, completed_at=now)
        self.logger.info("Job %s complete: %s", job_id, image_path)
        self.bus.emit(EventTopic.JOB_PROGRESS, {
            "job_id": job_id,
            "progress": 100,
            "status": "Complete",
            "queueInfo": None,
        })
        self.bus.emit(EventTopic.JOB_COMPLETED, {
            "job_id": job_id,
            "result": scene,
            "image_path": image_path,
        })

    def _store_image(self, job_id: str, artifact: ArtifactRef, data: bytes) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        target = self.output_dir / f"{job_id}_{Path(artifact.filename).name}"
        target.write_bytes(data)
        return target.as_posix()

    def _fail(self, job_id: str, error: str) -> None:
        self._release(job_id)
        self._push_steps.pop(job_id, None)
        self._update(job_id, status=JobStatus.FAILED, error=error, current_stage="Failed")
        self.logger.warning("Job %s failed: %s", job_id, error)
        self.bus.emit(EventTopic.JOB_FAILED, {"job_id": job_id, "error": error})

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                self.logger.error("Background job task failed: %s", finished.exception())

        task.add_done_callback(_done)


__all__ = ["JobOrchestrator", "build_scene_payload"]
