"""Visual-client side effects for generation events.

The handlers here turn ``job-completed`` and ``map-generation-progress``
events into operations on a :class:`PresentationSurface`, the narrow slice
of the virtual tabletop the bridge is allowed to touch.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Protocol

from ..constants import AI_MAPS_FOLDER, MessageType

FOLDER_DEFAULTS = {
    "type": "Scene",
    "description": "Scenes created by AI Map Generation",
    "color": "#4a90e2",
    "sorting": "a",
}


class PresentationSurface(Protocol):
    """Operations the completion handler needs from the visual client."""

    async def find_folder(self, name: str, kind: str) -> Optional[str]:
        ...

    async def create_folder(self, data: Dict[str, Any]) -> Optional[str]:
        ...

    async def create_scene(self, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update_scene(self, scene_id: str, changes: Dict[str, Any]) -> None:
        ...

    async def create_walls(self, scene_id: str, walls: List[Dict[str, Any]]) -> None:
        ...

    async def activate_scene(self, scene_id: str) -> None:
        ...

    def notify(self, level: str, message: str) -> None:
        ...


def format_progress_message(data: Optional[Dict[str, Any]]) -> Optional[str]:
    """Build the banner shown while a map is generating; ``None`` for empty updates."""
    if not data:
        return None
    message = f"Generating battlemap: {data.get('progress', 0)}%"
    queue_info = data.get("queueInfo") or {}
    current = queue_info.get("currentStep")
    total = queue_info.get("totalSteps")
    if current is not None and total is not None:
        message += f" (Step {current}/{total})"
    remaining = queue_info.get("estimatedTimeRemaining")
    if remaining:
        minutes, seconds = divmod(int(math.floor(float(remaining))), 60)
        if minutes > 0:
            message += f" - {minutes}m {seconds}s remaining"
        else:
            message += f" - {seconds}s remaining"
    status = data.get("status")
    if status:
        message += f" - {status}"
    return message


def _valid_wall(wall: Any) -> bool:
    if not isinstance(wall, dict):
        return False
    coords = wall.get("c")
    if not isinstance(coords, list) or len(coords) != 4:
        return False
    return all(
        isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)
        for value in coords
    )


def wall_documents(walls: Any) -> List[Dict[str, Any]]:
    """Keep walls with four numeric coordinates, mapped onto wall documents."""
    if not isinstance(walls, list):
        return []
    return [
        {
            "c": list(wall["c"]),
            "move": wall.get("movement") or 0,
            "sense": wall.get("sight") or 0,
            "doorSound": "",
            "dir": wall.get("direction") or 0,
            "door": wall.get("door") or 0,
            "ds": wall.get("doorState") or 0,
            "flags": wall.get("flags") or {},
        }
        for wall in walls
        if _valid_wall(wall)
    ]


class SceneCompletionHandler:
    """Create, populate and activate a scene when a generation job completes."""

    def __init__(self, surface: PresentationSurface, *, auto_activate: bool = True,
                 logger: Optional[logging.Logger] = None) -> None:
        self.surface = surface
        self.auto_activate = auto_activate
        self.logger = logger or logging.getLogger("bridge.scenes")

    def install(self, bridge: Any) -> None:
        """Register completion and progress handlers on a bridge."""
        bridge.on(MessageType.JOB_COMPLETED.value, self.handle_completed)
        bridge.on(MessageType.PROGRESS.value, self.handle_progress)

    def handle_progress(self, data: Optional[Dict[str, Any]]) -> None:
        message = format_progress_message(data)
        if message is None:
            return
        self.surface.notify("info", message)
        self.logger.debug("Progress: %s", message)

    async def handle_completed(self, data: Optional[Dict[str, Any]]) -> Optional[str]:
        """Returns the created scene id, or ``None`` when creation failed."""
        try:
            return await self._create_scene(data or {})
        except Exception as exc:
            self.logger.error("Failed to create scene from generated map: %s", exc)
            self.surface.notify("error", f"Failed to create scene: {exc}")
            return None

    async def _create_scene(self, data: Dict[str, Any]) -> str:
        scene_data = data.get("result")
        if not scene_data:
            raise ValueError("No scene result data provided")
        if not data.get("image_path"):
            raise ValueError("No image path provided for scene creation")
        scene_data = dict(scene_data)
        name = scene_data.get("name", "Generated map")

        folder_id = await self.ensure_folder()
        if folder_id:
            scene_data["folder"] = folder_id

        scene = await self.surface.create_scene(scene_data)
        scene_id = scene["id"]
        image = scene_data.get("img")
        if image and not scene.get("img"):
            await self.surface.update_scene(scene_id, {"img": image, "background": {"src": image}})

        if scene_data.get("walls"):
            await self._create_walls(scene_id, name, scene_data["walls"])

        self.surface.notify("info", f'Scene "{name}" created successfully!')
        if self.auto_activate:
            await self.surface.activate_scene(scene_id)
            self.surface.notify("info", f'Switched to "{name}" - Ready for token placement!')
        self.logger.info('Scene "%s" created and activated', name)
        return scene_id

    async def _create_walls(self, scene_id: str, name: str, walls: Any) -> None:
        documents = wall_documents(walls)
        total = len(walls) if isinstance(walls, list) else 0
        self.logger.info("%d valid walls out of %d total", len(documents), total)
        if not documents:
            self.surface.notify("warn", "No valid walls could be created from detection data")
            return
        try:
            await self.surface.create_walls(scene_id, documents)
        except Exception as exc:
            self.logger.warning("Failed to create walls: %s", exc)
            self.surface.notify("warn", f"Some walls could not be created: {exc}")
            return
        self.surface.notify("info", f'Created {len(documents)} walls in scene "{name}"')

    async def ensure_folder(self) -> Optional[str]:
        """Return the id of the generated-maps folder, creating it once."""
        try:
            existing = await self.surface.find_folder(AI_MAPS_FOLDER, FOLDER_DEFAULTS["type"])
            if existing:
                return existing
            self.logger.info("Creating %s folder", AI_MAPS_FOLDER)
            return await self.surface.create_folder({"name": AI_MAPS_FOLDER, **FOLDER_DEFAULTS})
        except Exception as exc:
            self.logger.warning("Error managing %s folder: %s", AI_MAPS_FOLDER, exc)
            return None


__all__ = [
    "PresentationSurface",
    "SceneCompletionHandler",
    "format_progress_message",
    "wall_documents",
]
