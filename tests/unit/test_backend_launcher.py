from __future__ import annotations

import os
import sys

from frontend.services.backend_launcher import BUNDLE_ENV, backend_candidates, resolve_backend_command


def test_bundle_from_environment_comes_first(tmp_path):
    candidates = backend_candidates(tmp_path, {BUNDLE_ENV: "/opt/mapbridge/mapbridge-backend"})
    assert candidates[0] == ["/opt/mapbridge/mapbridge-backend"]
    assert candidates[-1] == [sys.executable, "-m", "mapbridge.main", "--root", str(tmp_path)]


def test_source_entry_point_when_no_bundle_exists(tmp_path):
    command = resolve_backend_command(tmp_path, {})
    assert command == [sys.executable, "-m", "mapbridge.main", "--root", str(tmp_path)]


def test_executable_bundle_in_dist_is_preferred(tmp_path):
    bundle = tmp_path / "dist" / "mapbridge-backend"
    bundle.parent.mkdir()
    bundle.write_text("#!/bin/sh\n", encoding="utf-8")
    os.chmod(bundle, 0o755)

    assert resolve_backend_command(tmp_path, {}) == [str(bundle)]
