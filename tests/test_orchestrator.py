from __future__ import annotations

import asyncio
import json

import pytest

from aifilmmaker import cli
from aifilmmaker.errors import (
    ClipLoadError,
    ConfigurationError,
    PhaseError,
    PostProductionTimeout,
    ProviderError,
    SceneBusy,
)
from aifilmmaker.events import PhaseProgress
from aifilmmaker.orchestrator import FilmPipeline, PipelineConfig
from aifilmmaker.project.model import LocalArtifact, ProjectPhase, SceneStatus
from aifilmmaker.providers.base import VideoJob

from fakes import FakeMedia, FakeProvider, text

SCENES = [
    {"title": "One", "duration": 8, "videoPrompt": "shot one"},
    {"title": "Two", "duration": 8, "videoPrompt": "shot two"},
]


def inline_clip() -> VideoJob:
    return VideoJob(name="done", done=True, inline_videos=[b"\0" * 2048])


def make_pipeline(
    tmp_path, video_outcomes=None, media=None, provider=None, **overrides
) -> tuple[FilmPipeline, FakeProvider]:
    config = PipelineConfig(
        data_root=tmp_path,
        poll_interval=0,
        poll_error_delay=0,
        submit_base_delay=0,
        scene_cooldown=0,
        default_scene_count=2,
        **overrides,
    )
    provider = provider or FakeProvider(
        text_responses=[text(SCENES)],
        video_outcomes=video_outcomes if video_outcomes is not None else [inline_clip(), inline_clip()],
    )
    media = media or FakeMedia({}, default_duration=2.0)
    return FilmPipeline.default(config, provider=provider, media=media), provider


def test_full_film_flow(tmp_path):
    pipeline, provider = make_pipeline(tmp_path)
    phases: list[PhaseProgress] = []
    pipeline.events.subscribe(lambda event: phases.append(event) if isinstance(event, PhaseProgress) else None)

    async def scenario():
        await pipeline.write_script("A robot learns to garden")
        assert pipeline.project.phase == ProjectPhase.SCRIPT_READY
        summary = await pipeline.render_scenes()
        assert summary.all_done
        assert pipeline.project.phase == ProjectPhase.RENDERING
        return await pipeline.post_produce()

    final = asyncio.run(scenario())

    project = pipeline.project
    assert project.phase == ProjectPhase.DONE
    assert final.endswith(".webm")
    assert "film_a_robot_learns_to_garden_" in final
    assert isinstance(project.final_artifact, LocalArtifact)
    assert project.final_video_url == final
    assert all(scene.status == SceneStatus.DONE for scene in project.scenes)
    assert pipeline.quota_info().daily_count == 3
    assert [film.id for film in pipeline.film_history()] == [project.id]
    assert any(event.phase == "post-production" and event.percent == 100 for event in phases)
    assert (tmp_path / "state.json").exists()


def test_post_production_failure_returns_to_rendering(tmp_path):
    pipeline, _ = make_pipeline(tmp_path, media=FakeMedia({}))

    async def scenario():
        await pipeline.write_script("idea")
        await pipeline.render_scenes()
        await pipeline.post_produce()

    with pytest.raises(ClipLoadError):
        asyncio.run(scenario())
    assert pipeline.project.phase == ProjectPhase.RENDERING
    assert all(scene.status == SceneStatus.DONE for scene in pipeline.project.scenes)


def test_post_production_timeout(tmp_path):
    pipeline, _ = make_pipeline(
        tmp_path,
        media=FakeMedia({}, default_duration=3000.0),
        post_production_timeout=0.2,
    )

    async def scenario():
        await pipeline.write_script("idea")
        await pipeline.render_scenes()
        await pipeline.post_produce()

    with pytest.raises(PostProductionTimeout):
        asyncio.run(scenario())
    assert pipeline.project.phase == ProjectPhase.RENDERING
    assert pipeline.project.final_video_url is None


def test_post_production_needs_a_finished_scene(tmp_path):
    failure = ProviderError("nope", retryable=False)
    pipeline, _ = make_pipeline(tmp_path, video_outcomes=[failure, failure])

    async def scenario():
        await pipeline.write_script("idea")
        summary = await pipeline.render_scenes()
        assert len(summary.failed) == 2
        await pipeline.post_produce()

    with pytest.raises(ValueError):
        asyncio.run(scenario())
    assert pipeline.project.phase == ProjectPhase.RENDERING


def test_retry_scene_by_id(tmp_path):
    failure = ProviderError("nope", retryable=False)
    pipeline, _ = make_pipeline(tmp_path, video_outcomes=[failure, inline_clip(), inline_clip()])

    async def scenario():
        await pipeline.write_script("idea")
        await pipeline.render_scenes()
        first = pipeline.project.ordered_scenes()[0]
        assert first.status == SceneStatus.FAILED
        await pipeline.retry_scene(first.id)
        return first

    first = asyncio.run(scenario())
    assert first.status == SceneStatus.DONE
    assert first.error is None


def test_phase_rules_and_reset(tmp_path):
    pipeline, _ = make_pipeline(tmp_path)

    with pytest.raises(PhaseError):
        asyncio.run(pipeline.render_scenes())
    with pytest.raises(PhaseError):
        asyncio.run(pipeline.post_produce())

    asyncio.run(pipeline.write_script("idea"))
    asyncio.run(pipeline.render_scenes())
    with pytest.raises(PhaseError):
        asyncio.run(pipeline.write_script("another idea"))

    pipeline.reset()
    assert pipeline.project.phase == ProjectPhase.IDEA
    assert pipeline.project.scenes == []


def test_save_and_load_project(tmp_path):
    pipeline, _ = make_pipeline(tmp_path)
    asyncio.run(pipeline.write_script("idea"))
    asyncio.run(pipeline.render_scenes())

    path = pipeline.save(tmp_path / "bundle" / "project.json")
    restored = pipeline.load(path)

    assert restored.phase == ProjectPhase.RENDERING
    assert isinstance(restored.scenes[0].artifact, LocalArtifact)
    assert restored.scenes[0].video_url == pipeline.project.scenes[0].video_url


def test_config_from_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("daily_quota: 10\naspect_ratio: '9:16'\nllm_provider: claude\n", encoding="utf-8")

    config = PipelineConfig.from_file(path)

    assert config.daily_quota == 10
    assert config.aspect_ratio == "9:16"
    assert config.llm_provider == "claude"


def test_config_from_json_and_unknown_llm(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"llm_provider": "mystery"}), encoding="utf-8")
    config = PipelineConfig.from_file(path)

    with pytest.raises(ConfigurationError):
        config.build_text_provider(FakeProvider())


def test_cli_quota_command_needs_no_api_key(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"data_root": str(tmp_path), "daily_quota": 7}), encoding="utf-8")

    exit_code = cli.main(["--config", str(config_path), "quota"])

    assert exit_code == 0
    assert "0/7 requests used today" in capsys.readouterr().out


def test_cli_reports_missing_key_in_one_line(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"data_root": str(tmp_path)}), encoding="utf-8")

    exit_code = cli.main(["--config", str(config_path), "image", "a fox"])

    assert exit_code == 1
    assert capsys.readouterr().out.strip() == "Missing Gemini API key. Set GEMINI_API_KEY in your environment."


def test_cli_reports_invalid_input_in_one_line(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"data_root": str(tmp_path)}), encoding="utf-8")

    exit_code = cli.main(["--config", str(config_path), "image", "a fox", "--batch", "9"])

    assert exit_code == 1
    assert capsys.readouterr().out.strip() == "Invalid input: batch_size must be between 1 and 4"


class GatedProvider(FakeProvider):
    """Holds every video submission until ``release`` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.active = 0
        self.max_active = 0
        self.started: asyncio.Event | None = None
        self.release: asyncio.Event | None = None

    async def submit_video(self, request):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.started.set()
            await self.release.wait()
            return await super().submit_video(request)
        finally:
            self.active -= 1


def test_retry_and_post_production_are_refused_during_a_render_pass(tmp_path):
    provider = GatedProvider(
        text_responses=[text(SCENES)],
        video_outcomes=[ProviderError("nope", retryable=False), inline_clip(), inline_clip()],
    )
    pipeline, _ = make_pipeline(tmp_path, provider=provider)

    async def scenario():
        provider.started = asyncio.Event()
        provider.release = asyncio.Event()
        await pipeline.write_script("idea")
        first, second = pipeline.project.ordered_scenes()

        batch = asyncio.create_task(pipeline.render_scenes())
        await provider.started.wait()
        assert pipeline.is_rendering

        with pytest.raises(SceneBusy):
            await pipeline.retry_scene(second.id)
        with pytest.raises(SceneBusy):
            await pipeline.post_produce()
        with pytest.raises(SceneBusy):
            await pipeline.render_scenes()
        with pytest.raises(SceneBusy):
            pipeline.reset()

        provider.release.set()
        summary = await batch
        assert not pipeline.is_rendering

        outcome = await pipeline.retry_scene(first.id)
        return summary, outcome, first

    summary, outcome, first = asyncio.run(scenario())

    assert provider.max_active == 1
    assert len(provider.video_requests) == 3
    assert len(summary.failed) == 1 and len(summary.done) == 1
    assert first.status == SceneStatus.DONE
    assert pipeline.project.phase == ProjectPhase.RENDERING
