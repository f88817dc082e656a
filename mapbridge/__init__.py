"""Map-generation backend: job orchestration, ComfyUI access, and the scene bridge."""

__version__ = "0.3.0"
