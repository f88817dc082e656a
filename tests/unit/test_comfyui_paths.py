from __future__ import annotations

from pathlib import Path

from mapbridge.services import comfyui_paths


def test_linux_candidates_start_with_app_install(tmp_path):
    candidates = comfyui_paths.candidate_paths("linux", {"HOME": str(tmp_path)})
    assert candidates[0] == tmp_path / ".local" / "share" / "FoundryMCPServer" / "ComfyUI-headless"
    assert tmp_path / "ComfyUI" in candidates


def test_windows_candidates_use_local_app_data(tmp_path):
    candidates = comfyui_paths.candidate_paths("win32", {"LOCALAPPDATA": str(tmp_path), "USERPROFILE": str(tmp_path)})
    assert candidates[0] == Path(str(tmp_path)) / "FoundryMCPServer" / "ComfyUI-headless"


def test_detect_installation_requires_main_py(tmp_path):
    install = tmp_path / "ComfyUI"
    install.mkdir()
    env = {"HOME": str(tmp_path)}
    assert comfyui_paths.detect_installation("linux", env) is None

    (install / "main.py").write_text("# ComfyUI entry point\n", encoding="utf-8")
    assert comfyui_paths.detect_installation("linux", env) == install


def test_python_command_prefers_install_venv(tmp_path):
    assert comfyui_paths.default_python_command(tmp_path, platform="linux") == "python3"

    venv_python = tmp_path / "venv" / "bin" / "python"
    venv_python.parent.mkdir(parents=True)
    venv_python.write_text("", encoding="utf-8")
    assert comfyui_paths.default_python_command(tmp_path, platform="linux") == str(venv_python)
    assert comfyui_paths.default_python_command(tmp_path, platform="win32") == "python/python.exe"
