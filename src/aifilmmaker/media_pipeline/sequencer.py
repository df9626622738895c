from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from aifilmmaker.events import EventBus, PhaseProgress
from aifilmmaker.project.model import ProjectPhase, RenderSettings, Scene, SceneStatus
from aifilmmaker.providers.base import ReferenceImage

from .render import ProgressCallback, RenderOutcome, SceneRenderStage, error_message

logger = logging.getLogger(__name__)

CompleteCallback = Callable[[Scene, RenderOutcome], None]
ErrorCallback = Callable[[Scene, BaseException], None]


@dataclass
class RenderSummary:
    outcomes: list[RenderOutcome] = field(default_factory=list)
    done: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def all_done(self) -> bool:
        return not self.failed


def progress_snapshot(completed: int, total: int, width: int = 20) -> str:
    total = max(1, total)
    completed = max(0, min(completed, total))
    filled = min(width, int(round((completed / total) * width)))
    return f"[{'=' * filled}{'.' * (width - filled)}] {completed}/{total}"


class SequentialRenderOrchestrator:
    """Renders scenes one at a time with a cool-down between submissions.

    A failing scene is recorded and reported; the remaining scenes still render.
    """

    def __init__(
        self,
        render_stage: SceneRenderStage,
        cooldown: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        events: EventBus | None = None,
    ) -> None:
        self.render_stage = render_stage
        self.cooldown = cooldown
        self.sleep = sleep
        self.events = events or render_stage.events

    async def render_all(
        self,
        scenes: Iterable[Scene],
        settings: RenderSettings,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        character_ref: Optional[ReferenceImage] = None,
    ) -> RenderSummary:
        ordered = sorted(scenes, key=lambda scene: scene.scene_number)
        total = len(ordered)
        summary = RenderSummary()
        rendered_any = False

        logger.info("🎬  Starting sequential render of %d scene%s.", total, "" if total == 1 else "s")
        for index, scene in enumerate(ordered):
            if scene.status == SceneStatus.DONE and scene.video_url:
                logger.info("⏭️  Scene %d already rendered; skipping.", scene.scene_number)
                summary.done.append(scene.id)
                continue
            if not scene.is_renderable:
                scene.mark_failed("Scene has no video prompt.")
                summary.failed.append(scene.id)
                if on_error is not None:
                    on_error(scene, ValueError(scene.error))
                continue

            if rendered_any and self.cooldown > 0:
                logger.debug("Cooling down %.1fs before scene %d", self.cooldown, scene.scene_number)
                await self.sleep(self.cooldown)
            rendered_any = True

            logger.info("🚀  %s  Rendering scene %d.", progress_snapshot(index, total), scene.scene_number)
            try:
                outcome = await self.render_stage.render_scene(
                    scene,
                    settings,
                    on_progress=on_progress,
                    character_ref=character_ref,
                )
            except Exception as exc:
                logger.error("❌  Scene %d failed: %s", scene.scene_number, error_message(exc))
                summary.failed.append(scene.id)
                if on_error is not None:
                    on_error(scene, exc)
            else:
                summary.outcomes.append(outcome)
                summary.done.append(scene.id)
                if on_complete is not None:
                    on_complete(scene, outcome)
            self.events.publish(
                PhaseProgress(phase=ProjectPhase.RENDERING.value, percent=int((index + 1) / total * 100))
            )

        logger.info(
            "🏁  %s  Render pass finished: %d done, %d failed.",
            progress_snapshot(total, total),
            len(summary.done),
            len(summary.failed),
        )
        return summary

    async def retry_scene(
        self,
        scene: Scene,
        settings: RenderSettings,
        on_progress: Optional[ProgressCallback] = None,
        character_ref: Optional[ReferenceImage] = None,
    ) -> RenderOutcome:
        logger.info("🔁  Retrying scene %d.", scene.scene_number)
        return await self.render_stage.render_scene(
            scene,
            settings,
            on_progress=on_progress,
            character_ref=character_ref,
        )
