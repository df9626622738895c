from __future__ import annotations

import asyncio

import pytest

from aifilmmaker.errors import MalformedResponse, ProviderRefused
from aifilmmaker.media_pipeline.images import ImageBatchStage
from aifilmmaker.project.model import Scene, StoryboardSettings, TaskStatus
from aifilmmaker.providers.base import ImageResponse, ReferenceImage
from aifilmmaker.quota.gate import RateGate
from aifilmmaker.quota.store import MemoryStore

from fakes import FakeProvider, RecordingSleep

PNG = b"\x89PNG" + b"\0" * 64


def make_stage(tmp_path, *responses):
    provider = FakeProvider(image_responses=list(responses))
    sleep = RecordingSleep()
    store = MemoryStore()
    stage = ImageBatchStage(provider, RateGate(daily_limit=50), tmp_path / "images", store=store, sleep=sleep)
    return stage, provider, sleep, store


def test_batch_generates_sequentially_with_gap(tmp_path):
    stage, provider, sleep, _ = make_stage(tmp_path, ImageResponse(image_bytes=PNG), ImageResponse(image_bytes=PNG))

    task = asyncio.run(stage.generate("a fox", "Claymation", "16:9", batch_size=2))

    assert task.status == TaskStatus.COMPLETED
    assert len(task.images) == 2
    assert all(image.path.read_bytes() == PNG for image in task.images)
    assert task.images[0].batch_id == task.images[1].batch_id is not None
    assert sleep.delays == [1.0]
    assert "claymation" in provider.image_requests[0].prompt.lower()
    assert [image.id for image in stage.history()] == [image.id for image in task.images]


def test_text_instead_of_image_is_a_refusal(tmp_path):
    stage, _, _, store = make_stage(tmp_path, ImageResponse(text="I can't draw that person."))

    with pytest.raises(ProviderRefused) as excinfo:
        asyncio.run(stage.generate("someone famous", "Pixar Classic", "1:1"))

    assert "text instead of image" in str(excinfo.value)
    assert stage.history() == []


def test_missing_candidates_and_empty_parts_are_malformed(tmp_path):
    stage, _, _, _ = make_stage(tmp_path, ImageResponse(has_candidates=False), ImageResponse())

    with pytest.raises(MalformedResponse):
        asyncio.run(stage.generate("x", "Pixar Classic", "1:1"))
    with pytest.raises(MalformedResponse):
        asyncio.run(stage.generate("x", "Pixar Classic", "1:1"))


def test_internal_error_is_retried(tmp_path):
    stage, provider, sleep, _ = make_stage(
        tmp_path,
        ImageResponse(finish_reason="OTHER"),
        ImageResponse(image_bytes=PNG),
    )

    task = asyncio.run(stage.generate("x", "Modern Disney", "9:16"))

    assert task.status == TaskStatus.COMPLETED
    assert len(provider.image_requests) == 2
    assert sleep.delays == [2.0]


def test_reference_image_switches_to_character_prompt(tmp_path):
    stage, provider, _, _ = make_stage(tmp_path, ImageResponse(image_bytes=PNG))
    reference = ReferenceImage(data=b"jpeg-bytes")

    asyncio.run(stage.generate("my cat", "Pixar Classic", "1:1", reference_image=reference))

    request = provider.image_requests[0]
    assert request.reference_image is reference
    assert "CHARACTER CONSISTENCY" in request.prompt


def test_favorites_toggle(tmp_path):
    stage, _, _, store = make_stage(tmp_path)

    assert stage.toggle_favorite("img-1") is True
    assert stage.toggle_favorite("img-2") is True
    assert stage.toggle_favorite("img-1") is False
    assert stage.favorites() == ["img-2"]
    assert "favorites" in store.values


def test_first_frame_uses_scene_image_prompt(tmp_path):
    stage, provider, _, _ = make_stage(tmp_path, ImageResponse(image_bytes=PNG))
    scene = Scene(scene_number=1, video_prompt="v", image_prompt="A fox on a hill")

    image = asyncio.run(stage.generate_first_frame(scene, StoryboardSettings(aspect_ratio="9:16")))

    assert image.path.exists()
    assert provider.image_requests[0].aspect_ratio == "9:16"
    assert "A fox on a hill" in provider.image_requests[0].prompt


def test_failed_tasks_stay_in_the_task_log(tmp_path):
    stage, _, _, store = make_stage(
        tmp_path,
        ImageResponse(image_bytes=PNG),
        ImageResponse(image_bytes=PNG),
        ImageResponse(text="Not this one."),
    )

    done = asyncio.run(stage.generate("a fox", "Pixar Classic", "1:1"))
    with pytest.raises(ProviderRefused):
        asyncio.run(stage.generate("two foxes", "Pixar Classic", "1:1", batch_size=2))

    failed, completed = stage.tasks()
    assert completed.id == done.id and completed.status == TaskStatus.COMPLETED
    assert failed.status == TaskStatus.FAILED
    assert failed.params.prompt == "two foxes"
    assert "text instead of image" in failed.error
    assert len(failed.images) == 1 and failed.images[0].path.exists()
    assert "image_tasks" in store.values
