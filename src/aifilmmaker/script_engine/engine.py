from __future__ import annotations

import json
import logging
from typing import Any

from aifilmmaker.errors import MalformedResponse
from aifilmmaker.project.model import Scene, StoryboardSettings
from aifilmmaker.prompt_builder.builder import FilmPromptBuilder, style_pipeline
from aifilmmaker.providers.base import GenerationProvider, TextRequest, check_finish_reason
from aifilmmaker.quota.gate import RateGate

from .prompts import (
    SCREENPLAY_SYSTEM_INSTRUCTION,
    STORYBOARD_SCENE_SCHEMA,
    STORYBOARD_SCHEMA,
    STORYBOARD_SYSTEM_INSTRUCTION,
    render_import_prompt,
    render_regenerate_prompt,
    render_screenplay_prompt,
    render_storyboard_prompt,
)
from .utils import duration_from_timestamps, load_json_with_repair

logger = logging.getLogger(__name__)

MAX_SCENES = 12
SCREENPLAY_TEMPERATURE = 0.8
IMPORT_TEMPERATURE = 0.2
STORYBOARD_TEMPERATURE = 0.85
REGENERATE_TEMPERATURE = 0.9
STORYBOARD_DEFAULT_DURATION = 6


class ScreenplayStage:
    """Turns an idea (or a pasted script) into an ordered list of renderable scenes."""

    def __init__(
        self,
        provider: GenerationProvider,
        rate_gate: RateGate,
        prompt_builder: FilmPromptBuilder | None = None,
        default_duration: int = 8,
    ) -> None:
        self.provider = provider
        self.rate_gate = rate_gate
        self.prompt_builder = prompt_builder or FilmPromptBuilder()
        self.default_duration = default_duration

    async def generate_script(self, idea: str, scene_count: int = 3) -> list[Scene]:
        idea = (idea or "").strip()
        if not idea:
            raise ValueError("idea must not be empty")
        if not 1 <= scene_count <= MAX_SCENES:
            raise ValueError(f"scene_count must be between 1 and {MAX_SCENES}")

        payload = await self._ask(
            TextRequest(
                prompt=render_screenplay_prompt(idea, scene_count),
                temperature=SCREENPLAY_TEMPERATURE,
                system_instruction=SCREENPLAY_SYSTEM_INSTRUCTION,
            ),
            subject="Screenplay generation",
        )
        scenes = self._normalize(_as_scene_list(payload), default_duration=self.default_duration)
        if len(scenes) != scene_count:
            logger.warning("Requested %d scenes but the screenplay has %d", scene_count, len(scenes))
        logger.info("Screenplay ready with %d scenes", len(scenes))
        return scenes

    async def import_script(self, raw_text: str) -> list[Scene]:
        raw_text = (raw_text or "").strip()
        if not raw_text:
            raise ValueError("script text must not be empty")

        payload = await self._ask(
            TextRequest(prompt=render_import_prompt(raw_text), temperature=IMPORT_TEMPERATURE),
            subject="Script import",
        )
        scenes = self._normalize(
            _as_scene_list(payload),
            default_duration=self.default_duration,
            timestamps_from_title=True,
        )
        logger.info("Imported %d scenes from pasted script", len(scenes))
        return scenes

    async def generate_storyboard(self, idea: str, settings: StoryboardSettings) -> list[Scene]:
        idea = (idea or "").strip()
        if not idea:
            raise ValueError("idea must not be empty")
        pipeline = style_pipeline(settings.style)
        payload = await self._ask(
            TextRequest(
                prompt=render_storyboard_prompt(
                    idea,
                    settings.scene_count,
                    settings.aspect_ratio,
                    pipeline,
                    self.prompt_builder.negative_prompt,
                    settings.character_description,
                ),
                temperature=STORYBOARD_TEMPERATURE,
                system_instruction=STORYBOARD_SYSTEM_INSTRUCTION,
                response_schema=STORYBOARD_SCHEMA,
            ),
            subject="Storyboard generation",
        )
        items = payload.get("scenes") if isinstance(payload, dict) else payload
        scenes = self._normalize(_as_scene_list(items), default_duration=STORYBOARD_DEFAULT_DURATION)
        for scene in scenes:
            scene.image_prompt = lock_character(scene.image_prompt, settings.character_description)
        return scenes

    async def regenerate_scene(self, scene: Scene, idea: str, settings: StoryboardSettings) -> Scene:
        payload = await self._ask(
            TextRequest(
                prompt=render_regenerate_prompt(
                    idea,
                    scene.scene_number,
                    scene.title,
                    style_pipeline(settings.style),
                    self.prompt_builder.negative_prompt,
                    settings.character_description,
                ),
                temperature=REGENERATE_TEMPERATURE,
                system_instruction=STORYBOARD_SYSTEM_INSTRUCTION,
                response_schema=STORYBOARD_SCENE_SCHEMA,
            ),
            subject="Scene regeneration",
        )
        if isinstance(payload, list) and payload:
            payload = payload[0]
        if not isinstance(payload, dict):
            raise MalformedResponse("Scene regeneration returned an invalid scene.")
        video_prompt = str(payload.get("videoPrompt") or "").strip()
        if not video_prompt:
            raise MalformedResponse("Scene regeneration returned a scene without a video prompt.")
        # Same identity and position; runtime state starts over.
        return Scene(
            id=scene.id,
            scene_number=scene.scene_number,
            title=str(payload.get("title") or scene.title),
            action=str(payload.get("action") or ""),
            video_prompt=video_prompt,
            image_prompt=lock_character(str(payload.get("imagePrompt") or ""), settings.character_description),
            audio_description=str(payload.get("audioDescription") or ""),
            narration=str(payload.get("narration") or ""),
            duration_seconds=_coerce_duration(payload.get("duration")) or scene.duration_seconds,
        )

    async def _ask(self, request: TextRequest, *, subject: str) -> Any:
        self.rate_gate.try_consume()
        response = await self.provider.generate_text(request)
        check_finish_reason(response.finish_reason, subject=subject)
        if not response.text or not response.text.strip():
            raise MalformedResponse(f"{subject} returned an empty response.")
        logger.debug("%s raw response: %s", subject, response.text)
        try:
            return load_json_with_repair(response.text, logger=logger)
        except json.JSONDecodeError as exc:
            raise MalformedResponse(f"{subject} returned invalid JSON.") from exc

    @staticmethod
    def _normalize(
        items: list[dict[str, Any]],
        *,
        default_duration: int,
        timestamps_from_title: bool = False,
    ) -> list[Scene]:
        scenes: list[Scene] = []
        for index, item in enumerate(items, start=1):
            video_prompt = str(item.get("videoPrompt") or "").strip()
            if not video_prompt:
                raise MalformedResponse(f"Scene {index} has no video prompt.")
            title = str(item.get("title") or "").strip() or f"Scene {index}"
            duration = _coerce_duration(item.get("duration"))
            if duration is None and timestamps_from_title:
                duration = duration_from_timestamps(title)
            scenes.append(
                Scene(
                    scene_number=index,
                    title=title,
                    action=str(item.get("action") or ""),
                    video_prompt=video_prompt,
                    image_prompt=str(item.get("imagePrompt") or ""),
                    audio_description=str(item.get("audioDescription") or ""),
                    narration=str(item.get("narration") or ""),
                    duration_seconds=duration or default_duration,
                )
            )
        return scenes


def lock_character(image_prompt: str, character_description: str) -> str:
    """Prefix the character description when the prompt dropped it."""
    description = (character_description or "").strip()
    if not description:
        return image_prompt
    lock_words = " ".join(description.lower().split(" ")[:3])
    if lock_words in image_prompt.lower():
        return image_prompt
    logger.warning("Injecting missing character lock into image prompt")
    return f"{description}. {image_prompt}"


def _as_scene_list(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, list) or not payload:
        raise MalformedResponse("The screenplay is empty or not a list of scenes.")
    if not all(isinstance(item, dict) for item in payload):
        raise MalformedResponse("The screenplay contains entries that are not scenes.")
    return payload


def _coerce_duration(value: Any) -> float | None:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return None
    return duration if duration > 0 else None
