from __future__ import annotations

import pytest

from aifilmmaker.errors import PhaseError
from aifilmmaker.events import EventBus, SceneProgress
from aifilmmaker.project.model import (
    FilmProject,
    LocalArtifact,
    ProjectPhase,
    RemoteReference,
    Scene,
    SceneStatus,
)


def test_scene_lifecycle_keeps_progress_invariants(tmp_path):
    scene = Scene(scene_number=1, video_prompt="x")
    scene.begin_attempt()
    scene.advance(40)
    scene.advance(20)
    assert scene.progress == 40
    scene.advance(150)
    assert scene.progress == 99

    scene.mark_done(LocalArtifact(path=tmp_path / "a.mp4", size_bytes=10))
    assert (scene.status, scene.progress) == (SceneStatus.DONE, 100)

    scene.begin_attempt()
    assert (scene.progress, scene.video_url, scene.error) == (0, None, None)
    scene.mark_failed("boom")
    assert scene.error == "boom"
    assert scene.video_url is None


def test_phase_moves_forward_with_one_way_back():
    project = FilmProject()
    project.accept_screenplay("idea", [Scene(scene_number=1, video_prompt="x")])
    project.advance_to(ProjectPhase.RENDERING)

    with pytest.raises(PhaseError):
        project.advance_to(ProjectPhase.SCRIPT_READY)
    with pytest.raises(PhaseError):
        project.accept_screenplay("other", [])
    with pytest.raises(PhaseError):
        project.return_to_rendering()

    project.advance_to(ProjectPhase.POST_PRODUCTION)
    project.return_to_rendering()
    assert project.phase == ProjectPhase.RENDERING


def test_completed_scenes_are_ordered_and_artifacts_round_trip(tmp_path):
    second = Scene(scene_number=2, video_prompt="b")
    first = Scene(scene_number=1, video_prompt="a")
    project = FilmProject(scenes=[second, first])
    second.mark_done(RemoteReference(uri="https://cdn.example.com/b.mp4"))
    first.mark_done(LocalArtifact(path=tmp_path / "a.mp4"))

    assert [scene.scene_number for scene in project.completed_scenes()] == [1, 2]
    with pytest.raises(KeyError):
        project.scene("missing")

    restored = FilmProject.load(project.save(tmp_path / "p.json"))
    assert isinstance(restored.scene(second.id).artifact, RemoteReference)
    assert restored.summary().done_count == 2


def test_event_bus_isolates_failing_subscribers():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(received.append)
    bus.publish(SceneProgress(scene_id="s", progress=5, status="rendering"))
    unsubscribe()
    bus.publish(SceneProgress(scene_id="s", progress=6, status="rendering"))

    assert [event.progress for event in received] == [5]
