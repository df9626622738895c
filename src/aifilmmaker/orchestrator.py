from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal, Optional

from pydantic import BaseModel

from aifilmmaker.errors import ConfigurationError, PhaseError, PostProductionTimeout, SceneBusy
from aifilmmaker.events import EventBus, PhaseProgress
from aifilmmaker.media_pipeline.artifacts import ArtifactFetcher, artifact_filename
from aifilmmaker.media_pipeline.images import ImageBatchStage
from aifilmmaker.media_pipeline.render import ProgressCallback, RenderOutcome, SceneRenderStage
from aifilmmaker.media_pipeline.sequencer import (
    CompleteCallback,
    ErrorCallback,
    RenderSummary,
    SequentialRenderOrchestrator,
)
from aifilmmaker.project.model import (
    FilmProject,
    FilmSummary,
    LocalArtifact,
    ProjectPhase,
    RenderSettings,
    Scene,
    StoryboardSettings,
)
from aifilmmaker.prompt_builder.builder import FilmPromptBuilder
from aifilmmaker.providers.base import GenerationProvider
from aifilmmaker.quota.gate import QuotaInfo, RateGate
from aifilmmaker.quota.store import JsonFileStore, KeyValueStore
from aifilmmaker.script_engine.engine import ScreenplayStage
from aifilmmaker.stitcher.assembler import MediaBackend, PostProductionStage

logger = logging.getLogger(__name__)

FILM_HISTORY_KEY = "films"


class PipelineConfig(BaseModel):
    data_root: Path = Path("data")
    llm_provider: str = "gemini"
    llm_model: str = "claude-sonnet-4-5"
    anthropic_api_key_env: str = "ANTHROPIC_API_KEY"
    gemini_api_key_env: str = "GEMINI_API_KEY"
    text_model: str = "gemini-2.5-flash"
    video_model: str = "veo-3.1-generate-preview"
    image_model: str = "gemini-3-pro-image-preview"
    use_vertex: bool = False
    vertex_project: Optional[str] = None
    vertex_location: str = "us-central1"
    vertex_credentials_path: Optional[Path] = None
    download_proxy_base: Optional[str] = None
    daily_quota: int = 250
    # Render timings
    poll_interval: float = 10.0
    poll_error_delay: float = 5.0
    max_polls: int = 60
    submit_attempts: int = 4
    submit_base_delay: float = 30.0
    scene_cooldown: float = 5.0
    # Image batches
    image_gap: float = 1.0
    image_retry_attempts: int = 3
    image_retry_base_delay: float = 2.0
    # Post-production
    post_production_timeout: float = 120.0
    fps: int = 30
    clip_load_timeout: float = 15.0
    # Film defaults
    default_scene_count: int = 3
    aspect_ratio: Literal["16:9", "9:16"] = "16:9"
    resolution: Literal["720p", "1080p"] = "720p"
    video_style: Optional[str] = None
    negative_prompt: Optional[str] = None

    @classmethod
    def from_file(cls, path: Path) -> "PipelineConfig":
        text = Path(path).read_text(encoding="utf-8")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            import yaml  # type: ignore[import-not-found]

            payload = yaml.safe_load(text)
        return cls.model_validate(payload or {})

    def open_store(self) -> JsonFileStore:
        return JsonFileStore(Path(self.data_root) / "state.json")

    def build_rate_gate(self, store: KeyValueStore | None = None) -> RateGate:
        return RateGate(daily_limit=self.daily_quota, store=store if store is not None else self.open_store())

    def build_provider(self) -> GenerationProvider:
        from aifilmmaker.providers.gemini import GeminiProvider

        api_key = os.getenv(self.gemini_api_key_env) or os.getenv("GOOGLE_API_KEY")
        if not api_key and not self.use_vertex:
            raise ConfigurationError(
                f"Missing Gemini API key. Set {self.gemini_api_key_env} in your environment."
            )
        return GeminiProvider(
            api_key=api_key,
            text_model=self.text_model,
            video_model=self.video_model,
            image_model=self.image_model,
            use_vertex=self.use_vertex,
            project=self.vertex_project,
            location=self.vertex_location,
            credentials_path=self.vertex_credentials_path,
        )

    def build_text_provider(self, media_provider: GenerationProvider) -> GenerationProvider:
        provider = self.llm_provider.lower()
        if provider == "gemini":
            return media_provider
        if provider == "claude":
            from anthropic import AsyncAnthropic

            from aifilmmaker.providers.claude import ClaudeProvider

            api_key = os.getenv(self.anthropic_api_key_env)
            if not api_key:
                raise ConfigurationError(
                    f"Missing Anthropic API key. Set {self.anthropic_api_key_env} in your environment."
                )
            return ClaudeProvider(client=AsyncAnthropic(api_key=api_key), model=self.llm_model)
        raise ConfigurationError(f"Unsupported llm_provider '{self.llm_provider}'")

    def build_prompt_builder(self) -> FilmPromptBuilder:
        return FilmPromptBuilder(video_style=self.video_style, negative_prompt=self.negative_prompt)


@dataclass
class FilmPipeline:
    """Owns one FilmProject and walks it from idea to finished film."""

    config: PipelineConfig
    rate_gate: RateGate
    store: KeyValueStore
    screenplay: ScreenplayStage
    sequencer: SequentialRenderOrchestrator
    post_production: PostProductionStage
    images: ImageBatchStage
    events: EventBus = field(default_factory=EventBus)
    project: FilmProject = field(default_factory=FilmProject)
    # Held by whichever render pass or scene retry is running; one at a time.
    _render_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def is_rendering(self) -> bool:
        return self._render_lock.locked()

    @classmethod
    def from_file(cls, path: Path) -> "FilmPipeline":
        return cls.default(PipelineConfig.from_file(path))

    @classmethod
    def default(
        cls,
        config: PipelineConfig | None = None,
        provider: GenerationProvider | None = None,
        text_provider: GenerationProvider | None = None,
        media: MediaBackend | None = None,
    ) -> "FilmPipeline":
        config = config or PipelineConfig()
        data_root = Path(config.data_root)
        store = config.open_store()
        rate_gate = config.build_rate_gate(store)
        provider = provider or config.build_provider()
        text_provider = text_provider or config.build_text_provider(provider)
        prompt_builder = config.build_prompt_builder()
        events = EventBus()

        render_stage = SceneRenderStage(
            provider=provider,
            rate_gate=rate_gate,
            fetcher=ArtifactFetcher(
                asset_dir=data_root / "media/scenes",
                api_key=provider.download_credentials(),
                proxy_base=config.download_proxy_base,
            ),
            prompt_builder=prompt_builder,
            poll_interval=config.poll_interval,
            poll_error_delay=config.poll_error_delay,
            max_polls=config.max_polls,
            submit_attempts=config.submit_attempts,
            submit_base_delay=config.submit_base_delay,
            events=events,
        )
        return cls(
            config=config,
            rate_gate=rate_gate,
            store=store,
            screenplay=ScreenplayStage(text_provider, rate_gate, prompt_builder),
            sequencer=SequentialRenderOrchestrator(render_stage, cooldown=config.scene_cooldown, events=events),
            post_production=PostProductionStage(
                export_dir=data_root / "exports",
                fps=config.fps,
                load_timeout=config.clip_load_timeout,
                media=media,
            ),
            images=ImageBatchStage(
                provider=provider,
                rate_gate=rate_gate,
                output_dir=data_root / "media/images",
                prompt_builder=prompt_builder,
                gap=config.image_gap,
                store=store,
                max_attempts=config.image_retry_attempts,
                base_delay=config.image_retry_base_delay,
            ),
            events=events,
            project=FilmProject(
                settings=RenderSettings(aspect_ratio=config.aspect_ratio, resolution=config.resolution),
            ),
        )

    # Screenplay ---------------------------------------------------------

    async def write_script(self, idea: str, scene_count: int | None = None) -> list[Scene]:
        self._require(ProjectPhase.IDEA, ProjectPhase.SCRIPT_READY)
        scenes = await self.screenplay.generate_script(idea, scene_count or self.config.default_scene_count)
        self.project.accept_screenplay(idea.strip(), scenes)
        return scenes

    async def import_script(self, raw_text: str, idea: str | None = None) -> list[Scene]:
        self._require(ProjectPhase.IDEA, ProjectPhase.SCRIPT_READY)
        scenes = await self.screenplay.import_script(raw_text)
        self.project.accept_screenplay(idea or scenes[0].title, scenes)
        return scenes

    async def write_storyboard(self, idea: str, settings: StoryboardSettings) -> list[Scene]:
        self._require(ProjectPhase.IDEA, ProjectPhase.SCRIPT_READY)
        scenes = await self.screenplay.generate_storyboard(idea, settings)
        self.project.settings = self.project.settings.model_copy(update={"aspect_ratio": settings.aspect_ratio})
        self.project.accept_screenplay(idea.strip(), scenes)
        return scenes

    # Rendering ----------------------------------------------------------

    async def render_scenes(
        self,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> RenderSummary:
        self._require(ProjectPhase.SCRIPT_READY, ProjectPhase.RENDERING)
        self._require_idle("start another render pass")
        async with self._render_lock:
            self.project.advance_to(ProjectPhase.RENDERING)
            return await self.sequencer.render_all(
                self.project.scenes,
                self.project.settings,
                on_progress=on_progress,
                on_complete=on_complete,
                on_error=on_error,
            )

    async def retry_scene(self, scene_id: str, on_progress: Optional[ProgressCallback] = None) -> RenderOutcome:
        self._require(ProjectPhase.RENDERING)
        scene = self.project.scene(scene_id)
        self._require_idle(f"retry scene {scene.scene_number}")
        async with self._render_lock:
            return await self.sequencer.retry_scene(scene, self.project.settings, on_progress=on_progress)

    # Post-production ----------------------------------------------------

    async def post_produce(self, on_progress: Optional[Callable[[int], None]] = None) -> str:
        self._require(ProjectPhase.RENDERING)
        self._require_idle("start post-production")
        completed = self.project.completed_scenes()
        if not completed:
            raise ValueError("No rendered scenes to assemble")

        def report(percent: int) -> None:
            self.events.publish(PhaseProgress(phase=ProjectPhase.POST_PRODUCTION.value, percent=percent))
            if on_progress is not None:
                on_progress(percent)

        self.project.advance_to(ProjectPhase.POST_PRODUCTION)
        basename = artifact_filename("film", self.project.idea)
        timeout = self.config.post_production_timeout
        try:
            reference = await asyncio.wait_for(
                self.post_production.concatenate(
                    [scene.video_url for scene in completed],
                    on_progress=report,
                    basename=basename,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            self.project.return_to_rendering()
            logger.error("Post-production exceeded %.0fs", timeout)
            raise PostProductionTimeout(
                f"Post-production took longer than {timeout:.0f}s and was abandoned."
            ) from exc
        except Exception:
            self.project.return_to_rendering()
            raise

        output = Path(reference)
        artifact = LocalArtifact(path=output, size_bytes=output.stat().st_size) if output.is_file() else None
        self.project.finish(artifact, reference)
        self._record_film(self.project.summary())
        logger.info("Film %s finished: %s", self.project.id, reference)
        return reference

    # Project management -------------------------------------------------

    def reset(self) -> None:
        self._require_idle("reset the project")
        logger.info("Resetting film project %s", self.project.id)
        self.project.reset()

    def save(self, path: Path) -> Path:
        return self.project.save(path)

    def load(self, path: Path) -> FilmProject:
        self._require_idle("load another project")
        self.project = FilmProject.load(path)
        return self.project

    def quota_info(self) -> QuotaInfo:
        return self.rate_gate.quota_info()

    def film_history(self) -> list[FilmSummary]:
        raw = self.store.get_json(FILM_HISTORY_KEY, default=[]) or []
        return [FilmSummary.model_validate(item) for item in raw]

    def _record_film(self, summary: FilmSummary) -> None:
        stored = self.store.get_json(FILM_HISTORY_KEY, default=[]) or []
        stored.insert(0, summary.model_dump(mode="json"))
        self.store.set_json(FILM_HISTORY_KEY, stored)

    def _require_idle(self, action: str) -> None:
        if self._render_lock.locked():
            raise SceneBusy(f"Cannot {action} while scenes are still rendering.")

    def _require(self, *phases: ProjectPhase) -> None:
        if self.project.phase not in phases:
            allowed = ", ".join(phase.value for phase in phases)
            raise PhaseError(
                f"Action not allowed while the project is in '{self.project.phase.value}' (needs {allowed})."
            )
