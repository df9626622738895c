from __future__ import annotations

import abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from aifilmmaker.errors import MalformedResponse, ProviderError, ProviderRefused

REFUSAL_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "IMAGE_SAFETY"}


@dataclass(frozen=True)
class ReferenceImage:
    data: bytes
    mime_type: str = "image/jpeg"

    @classmethod
    def from_path(cls, path: Path) -> "ReferenceImage":
        path = Path(path)
        mime_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        return cls(data=path.read_bytes(), mime_type=mime_type)


@dataclass
class TextRequest:
    prompt: str
    temperature: float = 0.7
    system_instruction: Optional[str] = None
    json_output: bool = True
    response_schema: Optional[dict[str, Any]] = None


@dataclass
class TextResponse:
    text: Optional[str]
    finish_reason: Optional[str] = None


@dataclass
class VideoRequest:
    prompt: str
    aspect_ratio: str = "16:9"
    resolution: str = "720p"
    duration_seconds: int = 8
    reference_image: Optional[ReferenceImage] = None
    person_generation: str = "allow_adult"
    negative_prompt: Optional[str] = None


@dataclass
class VideoJob:
    """Handle for a provider-side video job, refreshed by each poll."""

    name: str
    done: bool = False
    video_uris: list[str] = field(default_factory=list)
    inline_videos: list[bytes] = field(default_factory=list)
    error: Optional[str] = None
    handle: Any = None


@dataclass
class ImageRequest:
    prompt: str
    aspect_ratio: str = "1:1"
    reference_image: Optional[ReferenceImage] = None


@dataclass
class ImageResponse:
    image_bytes: Optional[bytes] = None
    mime_type: str = "image/png"
    text: Optional[str] = None
    finish_reason: Optional[str] = None
    has_candidates: bool = True


class GenerationProvider(abc.ABC):
    """The three generation capabilities the pipeline depends on."""

    name = "provider"

    @abc.abstractmethod
    async def generate_text(self, request: TextRequest) -> TextResponse:
        raise NotImplementedError

    @abc.abstractmethod
    async def submit_video(self, request: VideoRequest) -> VideoJob:
        raise NotImplementedError

    @abc.abstractmethod
    async def poll_video(self, job: VideoJob) -> VideoJob:
        raise NotImplementedError

    @abc.abstractmethod
    async def generate_image(self, request: ImageRequest) -> ImageResponse:
        raise NotImplementedError

    def download_credentials(self) -> Optional[str]:
        """API key used to fetch provider-hosted artifacts, if any."""
        return None


def normalize_finish_reason(value: Any) -> Optional[str]:
    if value is None:
        return None
    raw = getattr(value, "value", value)
    text = str(raw).strip()
    if "." in text:
        text = text.rsplit(".", 1)[-1]
    return text.upper() or None


def check_finish_reason(reason: Optional[str], *, subject: str = "Generation") -> None:
    """Map a non-STOP finish reason to the matching pipeline error."""
    if reason in (None, "STOP", "FINISH_REASON_UNSPECIFIED"):
        return
    if reason in REFUSAL_REASONS:
        raise ProviderRefused(
            f"{subject} blocked by safety filters. Try rephrasing your prompt.",
            kind="safety",
        )
    if reason == "RECITATION":
        raise ProviderRefused(
            f"{subject} blocked due to recitation policy. Try a more original prompt.",
            kind="recitation",
        )
    if reason == "MAX_TOKENS":
        raise MalformedResponse(f"{subject} was truncated before the response finished.")
    if reason == "OTHER":
        raise ProviderError(f"{subject} hit an internal provider error (OTHER).", retryable=True)
    raise ProviderError(f"{subject} failed: {reason}.", retryable=False)


def extract_image(response: ImageResponse) -> bytes:
    """Return image bytes or raise the error that explains their absence."""
    check_finish_reason(response.finish_reason, subject="Image generation")
    if not response.has_candidates:
        raise MalformedResponse("No candidates returned by the image provider.")
    if response.image_bytes:
        return response.image_bytes
    if response.text:
        snippet = response.text.strip()[:100]
        raise ProviderRefused(f'AI returned text instead of image: "{snippet}..."', kind="refusal")
    raise MalformedResponse("No image data found in the response.")
