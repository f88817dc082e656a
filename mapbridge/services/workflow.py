"""ComfyUI prompt graph for battlemap generation."""

from __future__ import annotations

import random
from typing import Any, Dict, Optional

from ..constants import QUALITY_STEPS, SIZE_PIXELS

CHECKPOINT = "dDBattlemapsSDXL10_upscaleV10.safetensors"
VAE = "sdxl_vae.safetensors"
SAMPLER_NODE = "5"
NEGATIVE_PROMPT = (
    "grid, low angle, isometric, oblique, horizon, text, watermark, logo, caption, "
    "people, creatures, monsters, blurry, artifacts"
)
OUTPUT_PREFIX = "battlemap"


def size_pixels(size: str) -> int:
    try:
        return SIZE_PIXELS[size]
    except KeyError:
        raise ValueError(f"Unknown map size: {size}") from None


def quality_steps(quality: Optional[str]) -> int:
    return QUALITY_STEPS.get(quality or "low", QUALITY_STEPS["low"])


def enhance_prompt(prompt: str) -> str:
    return f"2d DnD battlemap of {prompt}, top-down view, overhead perspective, aerial"


def build_workflow(prompt: str, *, width: int, height: int, seed: Optional[int] = None,
                   quality: Optional[str] = None) -> Dict[str, Any]:
    """Return the node graph submitted to ``POST /prompt``.

    Node ``"5"`` is the sampler; its ``steps`` input is what the status poller
    reads back to learn the total step count of a running job.
    """
    if seed is None:
        seed = random.randrange(1_000_000)
    return {
        "1": {
            "inputs": {"ckpt_name": CHECKPOINT},
            "class_type": "CheckpointLoaderSimple",
        },
        "2": {
            "inputs": {"text": enhance_prompt(prompt), "clip": ["1", 1]},
            "class_type": "CLIPTextEncode",
        },
        "3": {
            "inputs": {"text": NEGATIVE_PROMPT, "clip": ["1", 1]},
            "class_type": "CLIPTextEncode",
        },
        "4": {
            "inputs": {"width": width, "height": height, "batch_size": 1},
            "class_type": "EmptyLatentImage",
        },
        SAMPLER_NODE: {
            "inputs": {
                "seed": seed,
                "steps": quality_steps(quality),
                "cfg": 2.5,
                "denoise": 1.0,
                "sampler_name": "dpmpp_2m_sde",
                "scheduler": "karras",
                "model": ["1", 0],
                "positive": ["2", 0],
                "negative": ["3", 0],
                "latent_image": ["4", 0],
            },
            "class_type": "KSampler",
        },
        "9": {
            "inputs": {"vae_name": VAE},
            "class_type": "VAELoader",
        },
        "6": {
            "inputs": {"samples": [SAMPLER_NODE, 0], "vae": ["9", 0]},
            "class_type": "VAEDecode",
        },
        "7": {
            "inputs": {"filename_prefix": OUTPUT_PREFIX, "images": ["6", 0]},
            "class_type": "SaveImage",
        },
    }


def workflow_steps(workflow: Any, default: int = QUALITY_STEPS["low"]) -> int:
    """Read the sampler step count back out of a submitted graph."""
    try:
        steps = workflow[SAMPLER_NODE]["inputs"]["steps"]
    except (KeyError, TypeError, IndexError):
        return default
    return int(steps) if isinstance(steps, (int, float)) and steps > 0 else default


__all__ = [
    "CHECKPOINT",
    "NEGATIVE_PROMPT",
    "SAMPLER_NODE",
    "build_workflow",
    "enhance_prompt",
    "quality_steps",
    "size_pixels",
    "workflow_steps",
]
