from __future__ import annotations

import pytest

from mapbridge.services.workflow import (
    NEGATIVE_PROMPT,
    build_workflow,
    enhance_prompt,
    size_pixels,
    workflow_steps,
)


def test_workflow_graph_for_large_high_quality_map():
    graph = build_workflow("a ruined temple", width=2048, height=2048, seed=1234, quality="high")

    sampler = graph["5"]["inputs"]
    assert graph["5"]["class_type"] == "KSampler"
    assert sampler["seed"] == 1234
    assert sampler["steps"] == 35
    assert sampler["cfg"] == 2.5
    assert graph["4"]["inputs"] == {"width": 2048, "height": 2048, "batch_size": 1}
    assert graph["2"]["inputs"]["text"] == enhance_prompt("a ruined temple")
    assert graph["3"]["inputs"]["text"] == NEGATIVE_PROMPT
    assert graph["7"]["class_type"] == "SaveImage"


def test_prompt_enhancement_adds_top_down_trigger():
    text = enhance_prompt("a foggy swamp")
    assert text.startswith("2d DnD battlemap of a foggy swamp")
    assert "top-down view" in text


def test_random_seed_when_not_given():
    graph = build_workflow("docks", width=1024, height=1024)
    assert 0 <= graph["5"]["inputs"]["seed"] < 1_000_000
    assert graph["5"]["inputs"]["steps"] == 8


def test_step_count_read_back_from_graph():
    assert workflow_steps(build_workflow("docks", width=1024, height=1024, quality="medium")) == 20
    assert workflow_steps(None) == 8
    assert workflow_steps({"5": {"inputs": {"steps": 0}}}, default=12) == 12


def test_size_mapping():
    assert [size_pixels(size) for size in ("small", "medium", "large")] == [1024, 1536, 2048]
    with pytest.raises(ValueError):
        size_pixels("gigantic")
