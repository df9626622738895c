from __future__ import annotations

import logging
from typing import Any, Iterable

from anthropic import APIStatusError, AsyncAnthropic

from aifilmmaker.errors import ProviderError

from .base import (
    GenerationProvider,
    ImageRequest,
    ImageResponse,
    TextRequest,
    TextResponse,
    VideoJob,
    VideoRequest,
)

logger = logging.getLogger(__name__)

STOP_REASONS = {
    "end_turn": "STOP",
    "stop_sequence": "STOP",
    "max_tokens": "MAX_TOKENS",
    "refusal": "SAFETY",
}

JSON_DIRECTIVE = "Return only valid JSON with no markdown fences and no commentary."


class ClaudeProvider(GenerationProvider):
    """Claude screenwriter; text only."""

    name = "claude"

    def __init__(
        self,
        client: AsyncAnthropic,
        model: str = "claude-sonnet-4-5",
        max_tokens: int = 8192,
    ) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def generate_text(self, request: TextRequest) -> TextResponse:
        system = request.system_instruction or "You are a cinematic screenplay writer."
        if request.json_output:
            system = f"{system}\n\n{JSON_DIRECTIVE}"
        try:
            response = await self.client.messages.create(
                model=self.model,
                system=system,
                max_tokens=self.max_tokens,
                temperature=min(1.0, request.temperature),
                messages=[
                    {
                        "role": "user",
                        "content": [{"type": "text", "text": request.prompt}],
                    }
                ],
            )
        except APIStatusError as exc:
            raise ProviderError(
                f"Claude request failed ({exc.status_code}): {exc.message}",
                status=exc.status_code,
                retryable=exc.status_code in (429, 503, 529),
            ) from exc

        stop_reason = getattr(response, "stop_reason", None)
        if stop_reason == "max_tokens":
            logger.warning(
                "Claude response truncated by max_tokens; consider increasing limit (current=%s)",
                self.max_tokens,
            )
        finish_reason = STOP_REASONS.get(stop_reason, "STOP" if stop_reason is None else str(stop_reason).upper())
        return TextResponse(text=_collect_text(response.content), finish_reason=finish_reason)

    async def submit_video(self, request: VideoRequest) -> VideoJob:
        raise NotImplementedError("Claude does not generate video")

    async def poll_video(self, job: VideoJob) -> VideoJob:
        raise NotImplementedError("Claude does not generate video")

    async def generate_image(self, request: ImageRequest) -> ImageResponse:
        raise NotImplementedError("Claude does not generate images")


def _collect_text(blocks: Iterable[Any]) -> str:
    parts: list[str] = []
    for block in blocks:
        if getattr(block, "type", None) == "text":
            parts.append(getattr(block, "text", ""))
    return "".join(parts)
