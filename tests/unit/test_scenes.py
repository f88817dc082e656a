from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from mapbridge.bridge.scenes import SceneCompletionHandler, format_progress_message, wall_documents
from mapbridge.constants import AI_MAPS_FOLDER


class FakeSurface:
    def __init__(self, *, folder_id: Optional[str] = None, scene_has_image: bool = True,
                 wall_error: Optional[Exception] = None) -> None:
        self.folder_id = folder_id
        self.scene_has_image = scene_has_image
        self.wall_error = wall_error
        self.folders: List[Dict[str, Any]] = []
        self.scenes: List[Dict[str, Any]] = []
        self.updates: List[Tuple[str, Dict[str, Any]]] = []
        self.walls: List[Tuple[str, List[Dict[str, Any]]]] = []
        self.activated: List[str] = []
        self.notifications: List[Tuple[str, str]] = []

    async def find_folder(self, name: str, kind: str) -> Optional[str]:
        return self.folder_id if name == AI_MAPS_FOLDER and kind == "Scene" else None

    async def create_folder(self, data: Dict[str, Any]) -> Optional[str]:
        self.folders.append(data)
        self.folder_id = "folder-1"
        return self.folder_id

    async def create_scene(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.scenes.append(data)
        scene = {"id": f"scene-{len(self.scenes)}"}
        if self.scene_has_image:
            scene["img"] = data.get("img")
        return scene

    async def update_scene(self, scene_id: str, changes: Dict[str, Any]) -> None:
        self.updates.append((scene_id, changes))

    async def create_walls(self, scene_id: str, walls: List[Dict[str, Any]]) -> None:
        if self.wall_error is not None:
            raise self.wall_error
        self.walls.append((scene_id, walls))

    async def activate_scene(self, scene_id: str) -> None:
        self.activated.append(scene_id)

    def notify(self, level: str, message: str) -> None:
        self.notifications.append((level, message))


def _completion(**scene_overrides: Any) -> Dict[str, Any]:
    scene = {
        "name": "Harbor District",
        "img": "generated-maps/job_1_battlemap.png",
        "background": {"src": "generated-maps/job_1_battlemap.png"},
        "width": 1536,
        "height": 1536,
        "grid": {"size": 70, "type": 1},
        "walls": [],
    }
    scene.update(scene_overrides)
    return {"job_id": "job_1", "result": scene, "image_path": scene["img"]}


def test_progress_banner_with_queue_info():
    message = format_progress_message({
        "progress": 45,
        "status": "Generating map",
        "queueInfo": {"currentStep": 4, "totalSteps": 8, "estimatedTimeRemaining": 72},
    })
    assert message == "Generating battlemap: 45% (Step 4/8) - 1m 12s remaining - Generating map"


def test_progress_banner_without_queue_info():
    assert format_progress_message({"progress": 100, "status": "Complete", "queueInfo": None}) == \
        "Generating battlemap: 100% - Complete"
    assert format_progress_message({"progress": 10, "queueInfo": {"estimatedTimeRemaining": 42.7}}) == \
        "Generating battlemap: 10% - 42s remaining"
    assert format_progress_message({}) is None


def test_wall_documents_keep_only_four_numeric_coordinates():
    walls = [
        {"c": [0, 0, 100, 0], "movement": 20, "sight": 20, "door": 1, "doorState": 0},
        {"c": [0, 0, 100]},
        {"c": [0, "a", 1, 2]},
        {"c": [0, True, 1, 2]},
        "not a wall",
    ]
    documents = wall_documents(walls)
    assert documents == [{
        "c": [0, 0, 100, 0],
        "move": 20,
        "sense": 20,
        "doorSound": "",
        "dir": 0,
        "door": 1,
        "ds": 0,
        "flags": {},
    }]


@pytest.mark.asyncio
async def test_completion_creates_folder_scene_and_activates():
    surface = FakeSurface()
    handler = SceneCompletionHandler(surface)

    scene_id = await handler.handle_completed(_completion())

    assert scene_id == "scene-1"
    assert surface.folders[0]["name"] == AI_MAPS_FOLDER
    assert surface.scenes[0]["folder"] == "folder-1"
    assert surface.updates == []
    assert surface.activated == ["scene-1"]
    assert ("info", 'Scene "Harbor District" created successfully!') in surface.notifications
    assert surface.notifications[-1] == ("info", 'Switched to "Harbor District" - Ready for token placement!')


@pytest.mark.asyncio
async def test_existing_folder_is_reused():
    surface = FakeSurface(folder_id="folder-existing")
    handler = SceneCompletionHandler(surface)

    await handler.handle_completed(_completion())
    await handler.handle_completed(_completion(name="Moonlit Tavern"))

    assert surface.folders == []
    assert [scene["folder"] for scene in surface.scenes] == ["folder-existing", "folder-existing"]


@pytest.mark.asyncio
async def test_missing_image_is_reapplied():
    surface = FakeSurface(scene_has_image=False)
    await SceneCompletionHandler(surface).handle_completed(_completion())

    image = "generated-maps/job_1_battlemap.png"
    assert surface.updates == [("scene-1", {"img": image, "background": {"src": image}})]


@pytest.mark.asyncio
async def test_walls_are_created_from_detection_data():
    surface = FakeSurface()
    walls = [{"c": [0, 0, 70, 0]}, {"c": [70, 0, 70, 70]}, {"c": [1, 2]}]
    await SceneCompletionHandler(surface).handle_completed(_completion(walls=walls))

    assert len(surface.walls) == 1
    assert [wall["c"] for wall in surface.walls[0][1]] == [[0, 0, 70, 0], [70, 0, 70, 70]]
    assert ("info", 'Created 2 walls in scene "Harbor District"') in surface.notifications


@pytest.mark.asyncio
async def test_wall_failures_do_not_abort_scene_creation():
    surface = FakeSurface(wall_error=RuntimeError("permission denied"))
    scene_id = await SceneCompletionHandler(surface).handle_completed(
        _completion(walls=[{"c": [0, 0, 70, 0]}]))

    assert scene_id == "scene-1"
    assert ("warn", "Some walls could not be created: permission denied") in surface.notifications
    assert surface.activated == ["scene-1"]


@pytest.mark.asyncio
async def test_missing_image_path_is_reported():
    surface = FakeSurface()
    data = _completion()
    data["image_path"] = ""

    assert await SceneCompletionHandler(surface).handle_completed(data) is None
    assert surface.scenes == []
    assert surface.notifications == [
        ("error", "Failed to create scene: No image path provided for scene creation"),
    ]


def test_progress_events_are_shown_on_surface():
    surface = FakeSurface()
    handler = SceneCompletionHandler(surface)

    handler.handle_progress({"progress": 30, "status": "Generating map"})
    handler.handle_progress(None)

    assert surface.notifications == [("info", "Generating battlemap: 30% - Generating map")]
