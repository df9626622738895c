from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

import google.auth as google_auth
from google.oauth2 import service_account

from aifilmmaker.errors import ConfigurationError, ProviderError

from .base import (
    GenerationProvider,
    ImageRequest,
    ImageResponse,
    TextRequest,
    TextResponse,
    VideoJob,
    VideoRequest,
    normalize_finish_reason,
)

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# Creative screenplays trip the default filters far too often.
PERMISSIVE_SAFETY_SETTINGS = [
    types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
    for category in (
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
]


def _wrap_api_error(exc: genai_errors.APIError, action: str) -> ProviderError:
    code = getattr(exc, "code", None)
    status = getattr(exc, "status", None) or ""
    message = getattr(exc, "message", None) or str(exc)
    retryable = code in (429, 503) or "RESOURCE_EXHAUSTED" in str(status)
    return ProviderError(
        f"{action} failed ({code} {status}): {message}".strip(),
        status=code if isinstance(code, int) else None,
        retryable=retryable,
    )


class GeminiProvider(GenerationProvider):
    """Gemini text, Veo video and Gemini image generation via the google-genai SDK."""

    name = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        text_model: str = "gemini-2.5-flash",
        video_model: str = "veo-3.1-generate-preview",
        image_model: str = "gemini-3-pro-image-preview",
        use_vertex: bool = False,
        project: str | None = None,
        location: str | None = None,
        credentials_path: Path | None = None,
    ) -> None:
        self.api_key = api_key
        self.text_model = text_model
        self.video_model = video_model
        self.image_model = image_model
        self.use_vertex = use_vertex
        self.project = project
        self.location = location or "us-central1"
        self.credentials_path = Path(credentials_path) if credentials_path else None
        self.client = self._build_client()

    # Capabilities ------------------------------------------------------

    async def generate_text(self, request: TextRequest) -> TextResponse:
        config = types.GenerateContentConfig(
            temperature=request.temperature,
            system_instruction=request.system_instruction,
            safety_settings=PERMISSIVE_SAFETY_SETTINGS,
        )
        if request.json_output:
            config.response_mime_type = "application/json"
        if request.response_schema:
            config.response_schema = request.response_schema
        try:
            response = await self.client.aio.models.generate_content(
                model=self.text_model,
                contents=request.prompt,
                config=config,
            )
        except genai_errors.APIError as exc:
            raise _wrap_api_error(exc, "Text generation") from exc

        candidates = response.candidates or []
        finish_reason = normalize_finish_reason(candidates[0].finish_reason) if candidates else None
        if not candidates:
            finish_reason = self._block_reason(response) or finish_reason
        text = response.text if candidates else None
        logger.debug("Gemini text response (finish=%s): %s", finish_reason, text)
        return TextResponse(text=text, finish_reason=finish_reason)

    async def submit_video(self, request: VideoRequest) -> VideoJob:
        config_kwargs: dict[str, Any] = dict(
            aspect_ratio=request.aspect_ratio,
            resolution=request.resolution,
            duration_seconds=request.duration_seconds,
            person_generation=request.person_generation,
        )
        if request.negative_prompt:
            config_kwargs["negative_prompt"] = request.negative_prompt
        if request.reference_image is not None:
            config_kwargs["reference_images"] = [
                types.VideoGenerationReferenceImage(
                    image=types.Image(
                        image_bytes=request.reference_image.data,
                        mime_type=request.reference_image.mime_type,
                    ),
                    reference_type="asset",
                )
            ]
        try:
            operation = await self.client.aio.models.generate_videos(
                model=self.video_model,
                prompt=request.prompt,
                config=types.GenerateVideosConfig(**config_kwargs),
            )
        except genai_errors.APIError as exc:
            raise _wrap_api_error(exc, "Video submission") from exc
        logger.info("Submitted Veo job %s (%ss, %s)", operation.name, request.duration_seconds, request.aspect_ratio)
        return self._to_job(operation)

    async def poll_video(self, job: VideoJob) -> VideoJob:
        try:
            operation = await self.client.aio.operations.get(job.handle)
        except genai_errors.APIError as exc:
            raise _wrap_api_error(exc, "Video poll") from exc
        return self._to_job(operation)

    async def generate_image(self, request: ImageRequest) -> ImageResponse:
        parts = [types.Part.from_text(text=request.prompt)]
        if request.reference_image is not None:
            parts.insert(
                0,
                types.Part.from_bytes(
                    data=request.reference_image.data,
                    mime_type=request.reference_image.mime_type,
                ),
            )
        try:
            response = await self.client.aio.models.generate_content(
                model=self.image_model,
                contents=types.Content(role="user", parts=parts),
                config=types.GenerateContentConfig(
                    image_config=types.ImageConfig(aspect_ratio=request.aspect_ratio),
                ),
            )
        except genai_errors.APIError as exc:
            raise _wrap_api_error(exc, "Image generation") from exc

        candidates = response.candidates or []
        if not candidates:
            return ImageResponse(has_candidates=False, finish_reason=self._block_reason(response))

        candidate = candidates[0]
        result = ImageResponse(finish_reason=normalize_finish_reason(candidate.finish_reason))
        content_parts = (candidate.content.parts if candidate.content else None) or []
        for part in content_parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                result.image_bytes = inline.data
                result.mime_type = inline.mime_type or result.mime_type
                break
            if getattr(part, "text", None) and result.text is None:
                result.text = part.text
        return result

    def download_credentials(self) -> Optional[str]:
        return None if self.use_vertex else self.api_key

    # Helpers -----------------------------------------------------------

    @staticmethod
    def _block_reason(response: Any) -> Optional[str]:
        feedback = getattr(response, "prompt_feedback", None)
        reason = getattr(feedback, "block_reason", None) if feedback else None
        if reason is None:
            return None
        normalized = normalize_finish_reason(reason)
        return "SAFETY" if normalized in (None, "SAFETY", "OTHER", "BLOCKED_REASON_UNSPECIFIED") else normalized

    @staticmethod
    def _to_job(operation: types.GenerateVideosOperation) -> VideoJob:
        job = VideoJob(name=operation.name or "veo-operation", done=bool(operation.done), handle=operation)
        if not job.done:
            return job
        if operation.error:
            job.error = str(operation.error.get("message") if isinstance(operation.error, dict) else operation.error)
            return job
        response = getattr(operation, "response", None) or getattr(operation, "result", None)
        for generated in getattr(response, "generated_videos", None) or []:
            video = getattr(generated, "video", None)
            if video is None:
                continue
            if video.uri:
                job.video_uris.append(video.uri)
            elif video.video_bytes:
                job.inline_videos.append(video.video_bytes)
        return job

    def _build_client(self) -> genai.Client:
        if self.use_vertex:
            return self._build_vertex_client()
        if not self.api_key:
            raise ConfigurationError("Gemini API key is required unless Vertex AI is enabled")
        logger.info("Using Gemini API key authentication")
        return genai.Client(api_key=self.api_key)

    def _build_vertex_client(self) -> genai.Client:
        project = self.project
        if self.credentials_path and self.credentials_path.exists():
            logger.info("Loading Vertex credentials from %s", self.credentials_path)
            credentials = service_account.Credentials.from_service_account_file(
                str(self.credentials_path),
                scopes=[CLOUD_PLATFORM_SCOPE],
            )
            project = project or getattr(credentials, "project_id", None)
        else:
            logger.info("Falling back to application default credentials for Vertex")
            credentials, default_project = google_auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
            project = project or default_project

        if not project:
            raise ConfigurationError("Vertex AI configuration requires a project ID")

        self.project = project
        logger.info("Initialized Vertex AI client for project %s in %s", project, self.location)
        return genai.Client(
            vertexai=True,
            project=project,
            location=self.location,
            credentials=credentials,
        )
