from __future__ import annotations

import asyncio
import socket
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mapbridge.constants import EventTopic, ExternalStatus  # noqa: E402
from mapbridge.core.backoff import BackoffPolicy  # noqa: E402
from mapbridge.core.event_bus import EventBus  # noqa: E402
from mapbridge.services.comfyui_client import ArtifactRef, PollResult  # noqa: E402
from mapbridge.services.job_orchestrator import JobOrchestrator  # noqa: E402
from mapbridge.settings import JobSettings  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stands in for ``asyncio.sleep`` and remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeComfyClient:
    """In-memory ComfyUI double driven by the test."""

    def __init__(self, progress_callbacks: Dict[str, Any]) -> None:
        self.progress_callbacks = progress_callbacks
        self.submitted: List[Tuple[str, Dict[str, Any]]] = []
        self.submit_errors: List[Exception] = []
        self.poll_errors: List[Exception] = []
        self.statuses: Dict[str, PollResult] = {}
        self.artifacts: Dict[str, List[ArtifactRef]] = {}
        self.interrupted: List[str] = []
        self.ensure_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self._counter = 0

    async def ensure_running(self) -> None:
        self.ensure_calls += 1

    async def submit(self, workflow: Dict[str, Any]) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        if self.gate is not None:
            self.entered.set()
            await self.gate.wait()
        self._counter += 1
        external_id = f"prompt-{self._counter}"
        self.submitted.append((external_id, workflow))
        return external_id

    async def poll_status(self, external_id: str) -> PollResult:
        if self.poll_errors:
            raise self.poll_errors.pop(0)
        return self.statuses.get(external_id, PollResult(ExternalStatus.QUEUED))

    async def fetch_artifacts(self, external_id: str) -> List[ArtifactRef]:
        return list(self.artifacts.get(external_id, []))

    async def download_artifact(self, ref: ArtifactRef) -> bytes:
        return b"\x89PNG\r\n\x1a\n" + ref.filename.encode("utf-8")

    async def interrupt(self, external_id: str) -> bool:
        self.interrupted.append(external_id)
        return True

    def push(self, external_id: str, value: int, maximum: int) -> None:
        self.progress_callbacks[external_id](value, maximum)


class JobHarness:
    def __init__(self, jobs: JobOrchestrator, clock: FakeClock, sleep: SleepRecorder) -> None:
        self.jobs = jobs
        self.clock = clock
        self.sleep = sleep
        self.events: List[Tuple[EventTopic, Dict[str, Any]]] = []
        for topic in EventTopic:
            jobs.bus.subscribe(topic, lambda event: self.events.append((event.topic, event.payload)))

    @property
    def client(self) -> FakeComfyClient:
        return self.jobs.client

    def payloads(self, topic: EventTopic) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.events if kind is topic]


def build_harness(tmp_path: Path, **overrides: Any) -> JobHarness:
    settings = JobSettings(output_dir=str(tmp_path / "generated-maps"), **overrides)
    clock = FakeClock()
    sleep = SleepRecorder()
    jobs = JobOrchestrator(
        settings,
        EventBus(),
        client_factory=FakeComfyClient,
        retry_policy=BackoffPolicy(base=0.25, factor=1.4, cap=2.0, max_attempts=settings.max_attempts),
        clock=clock,
        sleep=sleep,
    )
    return JobHarness(jobs, clock, sleep)


@pytest.fixture
def harness(tmp_path: Path) -> JobHarness:
    return build_harness(tmp_path)


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def harbor_request() -> Dict[str, Any]:
    return {
        "prompt": "a bustling harbor district with wooden piers",
        "scene_name": "Harbor District",
        "size": "medium",
        "grid_size": 70,
    }
