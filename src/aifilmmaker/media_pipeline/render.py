from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from aifilmmaker.errors import MalformedResponse, ProviderError, RenderTimeout, SceneBusy
from aifilmmaker.events import EventBus, SceneProgress
from aifilmmaker.project.model import Artifact, RenderSettings, Scene, SceneStatus
from aifilmmaker.prompt_builder.builder import FilmPromptBuilder
from aifilmmaker.providers.base import GenerationProvider, ReferenceImage, VideoJob, VideoRequest
from aifilmmaker.quota.gate import RateGate, with_retry

from .artifacts import ArtifactFetcher

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SceneProgress], None]

SUBMITTING_PROGRESS = 5
SUBMITTED_PROGRESS = 15
POLL_PROGRESS_CAP = 90
DOWNLOADING_PROGRESS = 92


@dataclass(frozen=True)
class RenderOutcome:
    scene_id: str
    artifact: Artifact
    video_url: str


def error_message(exc: BaseException) -> str:
    return getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__


def veo_duration(seconds: float) -> int:
    # Veo renders 4, 6 or 8 second clips; pick the shortest that fits.
    approx = max(4.0, min(8.0, float(seconds or 8)))
    for candidate in (4, 6, 8):
        if approx <= candidate:
            return candidate
    return 8


class SceneRenderStage:
    """Submits one scene to the video provider, polls it to completion and fetches the clip."""

    def __init__(
        self,
        provider: GenerationProvider,
        rate_gate: RateGate,
        fetcher: ArtifactFetcher,
        prompt_builder: FilmPromptBuilder | None = None,
        poll_interval: float = 10.0,
        poll_error_delay: float = 5.0,
        max_polls: int = 60,
        submit_attempts: int = 4,
        submit_base_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        events: EventBus | None = None,
    ) -> None:
        self.provider = provider
        self.rate_gate = rate_gate
        self.fetcher = fetcher
        self.prompt_builder = prompt_builder or FilmPromptBuilder()
        self.poll_interval = poll_interval
        self.poll_error_delay = poll_error_delay
        self.max_polls = max_polls
        self.submit_attempts = submit_attempts
        self.submit_base_delay = submit_base_delay
        self.sleep = sleep
        self.events = events or EventBus()
        self._in_flight: set[str] = set()

    def is_rendering(self, scene_id: str) -> bool:
        return scene_id in self._in_flight

    async def render_scene(
        self,
        scene: Scene,
        settings: RenderSettings,
        on_progress: Optional[ProgressCallback] = None,
        character_ref: Optional[ReferenceImage] = None,
    ) -> RenderOutcome:
        if scene.id in self._in_flight:
            raise SceneBusy(f"Scene {scene.scene_number} is already rendering.")
        self._in_flight.add(scene.id)
        try:
            scene.begin_attempt()
            self._emit(scene, on_progress)
            try:
                artifact = await self._render(scene, settings, on_progress, character_ref)
            except asyncio.CancelledError:
                scene.mark_failed("Render cancelled")
                self._emit(scene, on_progress)
                raise
            except Exception as exc:
                logger.error("Scene %d render failed: %s", scene.scene_number, exc)
                scene.mark_failed(error_message(exc))
                self._emit(scene, on_progress)
                raise
            scene.mark_done(artifact)
            self._emit(scene, on_progress)
            logger.info("Scene %d ready at %s", scene.scene_number, scene.video_url)
            return RenderOutcome(scene_id=scene.id, artifact=artifact, video_url=artifact.reference)
        finally:
            self._in_flight.discard(scene.id)

    async def _render(
        self,
        scene: Scene,
        settings: RenderSettings,
        on_progress: Optional[ProgressCallback],
        character_ref: Optional[ReferenceImage],
    ) -> Artifact:
        if not scene.is_renderable:
            raise ValueError(f"Scene {scene.scene_number} has no video prompt.")
        if character_ref is None and settings.character_reference:
            character_ref = await asyncio.to_thread(ReferenceImage.from_path, settings.character_reference)

        request = VideoRequest(
            prompt=self.prompt_builder.video_prompt(scene.video_prompt),
            aspect_ratio=settings.aspect_ratio,
            resolution=settings.resolution,
            duration_seconds=veo_duration(scene.duration_seconds),
            reference_image=character_ref,
            negative_prompt=self.prompt_builder.negative_prompt,
        )

        async def submit() -> VideoJob:
            self.rate_gate.try_consume()
            return await self.provider.submit_video(request)

        self._advance(scene, SUBMITTING_PROGRESS, on_progress)
        job = await with_retry(
            submit,
            max_attempts=self.submit_attempts,
            base_delay=self.submit_base_delay,
            sleep=self.sleep,
            label=f"Scene {scene.scene_number} submit",
        )
        self._advance(scene, SUBMITTED_PROGRESS, on_progress, SceneStatus.POLLING)
        job = await self._poll(scene, job, on_progress)

        if job.error:
            raise ProviderError(f"Video generation failed: {job.error}", retryable=False)
        if not job.video_uris and not job.inline_videos:
            raise MalformedResponse("Video generation finished without returning a video.")

        self._advance(scene, DOWNLOADING_PROGRESS, on_progress)
        return await self.fetcher.fetch(job, scene.id)

    async def _poll(self, scene: Scene, job: VideoJob, on_progress: Optional[ProgressCallback]) -> VideoJob:
        polls = 0
        while not job.done:
            if polls >= self.max_polls:
                raise RenderTimeout(
                    f"Scene {scene.scene_number} did not finish after {self.max_polls} status checks."
                )
            await self.sleep(self.poll_interval)
            polls += 1
            try:
                job = await self.provider.poll_video(job)
            except Exception as exc:
                logger.warning("Poll %d for scene %d failed: %s", polls, scene.scene_number, exc)
                await self.sleep(self.poll_error_delay)
            progress = min(POLL_PROGRESS_CAP, int(SUBMITTED_PROGRESS + polls / self.max_polls * 75))
            self._advance(scene, progress, on_progress)
        logger.debug("Scene %d job %s finished after %d polls", scene.scene_number, job.name, polls)
        return job

    def _advance(
        self,
        scene: Scene,
        progress: int,
        on_progress: Optional[ProgressCallback],
        status: SceneStatus | None = None,
    ) -> None:
        scene.advance(progress, status)
        self._emit(scene, on_progress)

    def _emit(self, scene: Scene, on_progress: Optional[ProgressCallback]) -> None:
        event = SceneProgress(scene_id=scene.id, progress=scene.progress, status=scene.status.value)
        self.events.publish(event)
        if on_progress is not None:
            on_progress(event)
