"""Locate a local ComfyUI installation and the interpreter that runs it."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import List, Mapping, Optional

APP_DIR_NAME = "FoundryMCPServer"
HEADLESS_DIR = "ComfyUI-headless"
MAC_SYSTEM_PYTHON = "/Library/Frameworks/Python.framework/Versions/3.11/bin/python3"


def is_valid_path(path: str | Path) -> bool:
    """A directory is an installation when it holds a ``main.py`` file."""
    try:
        return (Path(path) / "main.py").is_file()
    except OSError:
        return False


def candidate_paths(platform: Optional[str] = None,
                    environ: Optional[Mapping[str, str]] = None) -> List[Path]:
    platform = platform or sys.platform
    env = os.environ if environ is None else environ
    home = env.get("HOME") or env.get("USERPROFILE") or str(Path.home())

    if platform.startswith("win"):
        local = env.get("LOCALAPPDATA") or r"C:\Users\Default\AppData\Local"
        return [
            Path(local) / APP_DIR_NAME / HEADLESS_DIR,
            Path(local) / "ComfyUI",
            Path(r"C:\ComfyUI"),
            Path(home) / "ComfyUI",
        ]
    if platform == "darwin":
        support = Path(home) / "Library" / "Application Support"
        return [
            Path(f"/Applications/{APP_DIR_NAME}.app/Contents/Resources/ComfyUI"),
            support / APP_DIR_NAME / HEADLESS_DIR,
            support / "ComfyUI",
            Path("/Applications/ComfyUI.app/Contents/Resources/ComfyUI"),
            Path(home) / "ComfyUI",
            Path("/opt/ComfyUI"),
            Path("/usr/local/ComfyUI"),
        ]
    return [
        Path(home) / ".local" / "share" / APP_DIR_NAME / HEADLESS_DIR,
        Path(home) / "ComfyUI",
        Path("/opt/ComfyUI"),
        Path("/usr/local/ComfyUI"),
    ]


def detect_installation(platform: Optional[str] = None,
                        environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    for path in candidate_paths(platform, environ):
        if is_valid_path(path):
            return path
    return None


def default_python_command(install_path: Optional[str | Path] = None,
                           platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    if platform.startswith("win"):
        # Portable builds ship an embedded interpreter.
        return "python/python.exe"
    if install_path:
        venv_python = Path(install_path) / "venv" / "bin" / "python"
        if venv_python.exists():
            return str(venv_python)
    if platform == "darwin" and Path(MAC_SYSTEM_PYTHON).exists():
        return MAC_SYSTEM_PYTHON
    return "python3"


__all__ = ["candidate_paths", "default_python_command", "detect_installation", "is_valid_path"]
