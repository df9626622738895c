from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional

from aifilmmaker.errors import MalformedResponse
from aifilmmaker.project.model import (
    GeneratedImage,
    GenerationParams,
    GenerationTask,
    Scene,
    StoryboardSettings,
)
from aifilmmaker.prompt_builder.builder import FilmPromptBuilder
from aifilmmaker.providers.base import GenerationProvider, ImageRequest, ReferenceImage, extract_image
from aifilmmaker.quota.gate import RateGate, with_retry
from aifilmmaker.quota.store import KeyValueStore, MemoryStore

from .render import error_message

logger = logging.getLogger(__name__)

FAVORITES_KEY = "favorites"
HISTORY_KEY = "images"
TASKS_KEY = "image_tasks"
MAX_BATCH = 4

EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


class ImageBatchStage:
    """Generates styled still images one after another and keeps their history."""

    def __init__(
        self,
        provider: GenerationProvider,
        rate_gate: RateGate,
        output_dir: Path,
        prompt_builder: FilmPromptBuilder | None = None,
        gap: float = 1.0,
        store: KeyValueStore | None = None,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.rate_gate = rate_gate
        self.output_dir = Path(output_dir)
        self.prompt_builder = prompt_builder or FilmPromptBuilder()
        self.gap = gap
        self.store = store or MemoryStore()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep

    async def generate(
        self,
        prompt: str,
        style: str,
        aspect_ratio: str,
        batch_size: int = 1,
        reference_image: Optional[ReferenceImage] = None,
    ) -> GenerationTask:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        if not 1 <= batch_size <= MAX_BATCH:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH}")

        task = GenerationTask(params=GenerationParams(prompt=prompt, style=style, aspect_ratio=aspect_ratio))
        batch_id = f"batch-{uuid.uuid4().hex[:12]}" if batch_size > 1 else None
        request = ImageRequest(
            prompt=self.prompt_builder.image_prompt(prompt, style, with_reference=reference_image is not None),
            aspect_ratio=aspect_ratio,
            reference_image=reference_image,
        )

        images: list[GeneratedImage] = []
        try:
            for index in range(batch_size):
                if index > 0 and self.gap > 0:
                    await self.sleep(self.gap)
                data, mime_type = await with_retry(
                    lambda: self._generate_one(request),
                    max_attempts=self.max_attempts,
                    base_delay=self.base_delay,
                    sleep=self.sleep,
                    label="Image generation",
                )
                images.append(
                    await asyncio.to_thread(
                        self._save, data, mime_type, prompt, style, aspect_ratio, batch_id
                    )
                )
        except Exception as exc:
            task.images = list(images)
            task.fail(error_message(exc))
            self._remember(images)
            self._record_task(task)
            logger.error("Image task %s failed after %d image(s): %s", task.id, len(images), exc)
            raise

        task.complete(images)
        self._remember(images)
        self._record_task(task)
        logger.info("Image task %s completed with %d image(s)", task.id, len(images))
        return task

    async def generate_first_frame(self, scene: Scene, settings: StoryboardSettings) -> GeneratedImage:
        """Preview still for a storyboard scene, rendered from its image prompt."""
        if not scene.image_prompt.strip():
            raise ValueError(f"Scene {scene.scene_number} has no image prompt.")
        task = await self.generate(scene.image_prompt, settings.style, settings.aspect_ratio)
        if not task.images:
            raise MalformedResponse(f"No image generated for Scene {scene.scene_number}")
        return task.images[0]

    async def _generate_one(self, request: ImageRequest) -> tuple[bytes, str]:
        self.rate_gate.try_consume()
        response = await self.provider.generate_image(request)
        return extract_image(response), response.mime_type

    def _save(
        self,
        data: bytes,
        mime_type: str,
        prompt: str,
        style: str,
        aspect_ratio: str,
        batch_id: Optional[str],
    ) -> GeneratedImage:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        image = GeneratedImage(
            path=self.output_dir / "pending",
            prompt=prompt,
            style=style,
            aspect_ratio=aspect_ratio,
            batch_id=batch_id,
        )
        image.path = self.output_dir / f"{image.id}.{EXTENSIONS.get(mime_type, 'png')}"
        image.path.write_bytes(data)
        return image

    # History & favorites ----------------------------------------------

    def history(self) -> list[GeneratedImage]:
        raw = self.store.get_json(HISTORY_KEY, default=[]) or []
        return [GeneratedImage.model_validate(item) for item in raw]

    def _remember(self, images: list[GeneratedImage]) -> None:
        stored = self.store.get_json(HISTORY_KEY, default=[]) or []
        # Newest first.
        stored = [image.model_dump(mode="json") for image in images] + stored
        self.store.set_json(HISTORY_KEY, stored)

    def tasks(self) -> list[GenerationTask]:
        """Every finished request, failed ones included, newest first."""
        raw = self.store.get_json(TASKS_KEY, default=[]) or []
        return [GenerationTask.model_validate(item) for item in raw]

    def _record_task(self, task: GenerationTask) -> None:
        stored = self.store.get_json(TASKS_KEY, default=[]) or []
        stored.insert(0, task.model_dump(mode="json"))
        self.store.set_json(TASKS_KEY, stored)

    def favorites(self) -> list[str]:
        return list(self.store.get_json(FAVORITES_KEY, default=[]) or [])

    def toggle_favorite(self, image_id: str) -> bool:
        """Flip the favorite flag; returns True when the image is now a favorite."""
        favorites = self.favorites()
        if image_id in favorites:
            favorites.remove(image_id)
            is_favorite = False
        else:
            favorites.append(image_id)
            is_favorite = True
        self.store.set_json(FAVORITES_KEY, favorites)
        return is_favorite
