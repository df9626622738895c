from __future__ import annotations

import asyncio

import pytest

from aifilmmaker.errors import MalformedResponse, ProviderRefused, QuotaExceeded
from aifilmmaker.project.model import Scene, SceneStatus, StoryboardSettings
from aifilmmaker.quota.gate import RateGate
from aifilmmaker.script_engine.engine import ScreenplayStage, lock_character
from aifilmmaker.script_engine.utils import duration_from_timestamps, extract_json_block

from fakes import FakeProvider, text

SCENES = [
    {"title": "The Discovery", "duration": 8, "videoPrompt": "A robot finds a flower", "audioDescription": "wind", "narration": ""},
    {"title": "", "videoPrompt": "The robot waters the flower"},
    {"title": "Bloom", "duration": 6, "videoPrompt": "The flower blooms at dawn", "narration": "Hope grows."},
]


def make_stage(*responses, limit: int = 250) -> tuple[ScreenplayStage, FakeProvider, RateGate]:
    provider = FakeProvider(text_responses=list(responses))
    gate = RateGate(daily_limit=limit)
    return ScreenplayStage(provider, gate), provider, gate


def test_generate_script_numbers_and_normalizes_scenes():
    stage, provider, gate = make_stage(text(SCENES))

    scenes = asyncio.run(stage.generate_script("A robot learns to garden", scene_count=3))

    assert [scene.scene_number for scene in scenes] == [1, 2, 3]
    assert all(scene.video_prompt for scene in scenes)
    assert all(scene.status == SceneStatus.IDLE for scene in scenes)
    assert scenes[1].title == "Scene 2"
    assert scenes[1].duration_seconds == 8
    assert len({scene.id for scene in scenes}) == 3
    assert gate.quota_info().daily_count == 1
    assert provider.text_requests[0].temperature == 0.8
    assert provider.text_requests[0].json_output


def test_generate_script_accepts_fenced_json():
    fenced = "```json\n" + text(SCENES).text + "\n```"
    stage, _, _ = make_stage(text(fenced))

    scenes = asyncio.run(stage.generate_script("idea", scene_count=3))

    assert len(scenes) == 3


@pytest.mark.parametrize(
    "response",
    [text([]), text({"title": "not a list"}), text("   "), text([{"title": "No prompt"}])],
)
def test_generate_script_rejects_malformed_output(response):
    stage, _, _ = make_stage(response)

    with pytest.raises(MalformedResponse):
        asyncio.run(stage.generate_script("idea"))


def test_generate_script_maps_safety_and_recitation():
    stage, _, _ = make_stage(text("", finish_reason="SAFETY"), text("", finish_reason="RECITATION"))

    with pytest.raises(ProviderRefused) as safety:
        asyncio.run(stage.generate_script("idea"))
    with pytest.raises(ProviderRefused) as recitation:
        asyncio.run(stage.generate_script("idea"))

    assert safety.value.kind == "safety"
    assert recitation.value.kind == "recitation"


def test_generate_script_validates_input_before_spending_quota():
    stage, provider, gate = make_stage(text(SCENES))

    with pytest.raises(ValueError):
        asyncio.run(stage.generate_script("   "))
    with pytest.raises(ValueError):
        asyncio.run(stage.generate_script("idea", scene_count=0))

    assert gate.quota_info().daily_count == 0
    assert provider.text_requests == []


def test_generate_script_stops_at_quota():
    stage, provider, _ = make_stage(text(SCENES), limit=1)
    asyncio.run(stage.generate_script("idea"))

    with pytest.raises(QuotaExceeded):
        asyncio.run(stage.generate_script("idea"))
    assert len(provider.text_requests) == 1


def test_import_script_uses_timestamps_when_duration_missing():
    payload = [
        {"title": "The Hook (0:00 - 0:03)", "videoPrompt": "Close-up of a tired student"},
        {"title": "The Turn", "duration": 5, "videoPrompt": "The student smiles"},
        {"title": "Outro", "videoPrompt": "Wide shot of the campus"},
    ]
    stage, provider, _ = make_stage(text(payload))

    scenes = asyncio.run(stage.import_script("pasted script text"))

    assert [scene.duration_seconds for scene in scenes] == [3, 5, 8]
    assert provider.text_requests[0].temperature == 0.2
    assert "pasted script text" in provider.text_requests[0].prompt


def test_storyboard_enforces_character_lock():
    payload = {
        "scenes": [
            {"title": "One", "action": "wakes", "imagePrompt": "A fox in a red scarf wakes up", "videoPrompt": "Dolly in"},
            {"title": "Two", "imagePrompt": "The forest at dawn", "videoPrompt": "Crane up"},
        ]
    }
    stage, provider, _ = make_stage(text(payload))
    settings = StoryboardSettings(scene_count=2, character_description="A fox in a red scarf")

    scenes = asyncio.run(stage.generate_storyboard("fox adventure", settings))

    assert scenes[0].image_prompt == "A fox in a red scarf wakes up"
    assert scenes[1].image_prompt.startswith("A fox in a red scarf. ")
    assert scenes[1].duration_seconds == 6
    assert provider.text_requests[0].temperature == 0.85


def test_regenerate_scene_keeps_identity_and_resets_state():
    original = Scene(scene_number=2, title="Old", video_prompt="old prompt", status=SceneStatus.FAILED, error="x")
    stage, _, _ = make_stage(text({"title": "New", "videoPrompt": "fresh prompt", "imagePrompt": "still"}))

    scene = asyncio.run(stage.regenerate_scene(original, "idea", StoryboardSettings()))

    assert (scene.id, scene.scene_number) == (original.id, 2)
    assert scene.video_prompt == "fresh prompt"
    assert scene.status == SceneStatus.IDLE
    assert scene.error is None


def test_json_helpers():
    assert extract_json_block('Sure! [{"a": 1}] hope that helps') == '[{"a": 1}]'
    assert extract_json_block('{"scenes": [1]}') == '{"scenes": [1]}'
    assert duration_from_timestamps("Intro (1:05 - 1:12)") == 7
    assert duration_from_timestamps("no timestamps") is None
    assert lock_character("prompt", "") == "prompt"
