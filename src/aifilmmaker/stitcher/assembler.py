from __future__ import annotations

import abc
import asyncio
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import imageio_ffmpeg
from moviepy import VideoFileClip
from moviepy.video.io.ffmpeg_writer import FFMPEG_VideoWriter

from aifilmmaker.errors import ClipLoadError, ClipLoadTimeout, PostProductionError

logger = logging.getLogger(__name__)

PercentCallback = Callable[[int], None]

DEFAULT_SIZE = (1280, 720)
MIN_OUTPUT_BYTES = 1000
CLIP_END_EPSILON = 0.1


@dataclass(frozen=True)
class CodecChoice:
    codec: str
    extension: str


DEFAULT_CODECS: tuple[CodecChoice, ...] = (
    CodecChoice("libvpx-vp9", "webm"),
    CodecChoice("libvpx", "webm"),
)
FALLBACK_CODEC = CodecChoice("mpeg4", "mp4")


class MediaBackend(abc.ABC):
    """Decoding and encoding primitives used by post-production.

    Clips expose ``duration``, ``size``, ``get_frame(t)`` and ``close()``;
    writers expose ``write_frame(frame)`` and ``close()``.
    """

    @abc.abstractmethod
    def open_clip(self, reference: str) -> Any:
        raise NotImplementedError

    @abc.abstractmethod
    def fit(self, clip: Any, size: tuple[int, int]) -> Any:
        raise NotImplementedError

    @abc.abstractmethod
    def open_writer(self, path: Path, size: tuple[int, int], fps: int, codec: str) -> Any:
        raise NotImplementedError

    @abc.abstractmethod
    def available_encoders(self) -> set[str]:
        raise NotImplementedError


class MoviepyBackend(MediaBackend):
    def __init__(self) -> None:
        self._encoders: Optional[set[str]] = None

    def open_clip(self, reference: str) -> VideoFileClip:
        return VideoFileClip(reference, audio=False)

    def fit(self, clip: VideoFileClip, size: tuple[int, int]) -> VideoFileClip:
        if tuple(clip.size) == tuple(size):
            return clip
        return clip.resized(new_size=size)

    def open_writer(self, path: Path, size: tuple[int, int], fps: int, codec: str) -> FFMPEG_VideoWriter:
        return FFMPEG_VideoWriter(str(path), size, fps, codec=codec)

    def available_encoders(self) -> set[str]:
        if self._encoders is None:
            self._encoders = _probe_encoders()
        return self._encoders


def _probe_encoders() -> set[str]:
    try:
        result = subprocess.run(
            [imageio_ffmpeg.get_ffmpeg_exe(), "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            timeout=15,
            check=True,
        )
    except (OSError, RuntimeError, subprocess.SubprocessError) as exc:
        logger.warning("Could not list ffmpeg encoders: %s", exc)
        return set()
    encoders: set[str] = set()
    for line in result.stdout.splitlines():
        parts = line.split()
        # Encoder rows look like " V....D libvpx-vp9  libvpx VP9".
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS":
            encoders.add(parts[1])
    return encoders


class PostProductionStage:
    """Concatenates rendered scene clips into one silent film, frame by frame."""

    def __init__(
        self,
        export_dir: Path,
        fps: int = 30,
        load_timeout: float = 15.0,
        codec_preferences: Sequence[CodecChoice] = DEFAULT_CODECS,
        media: MediaBackend | None = None,
    ) -> None:
        self._export_dir = Path(export_dir)
        self.fps = fps
        self.load_timeout = load_timeout
        self.codec_preferences = tuple(codec_preferences)
        self.media = media or MoviepyBackend()

    @property
    def export_dir(self) -> Path:
        return self._export_dir

    @export_dir.setter
    def export_dir(self, value: Path) -> None:
        self._export_dir = Path(value)

    def choose_codec(self) -> CodecChoice:
        available = self.media.available_encoders()
        for choice in self.codec_preferences:
            if choice.codec in available:
                return choice
        logger.warning("None of %s available; falling back to %s", [c.codec for c in self.codec_preferences], FALLBACK_CODEC.codec)
        return FALLBACK_CODEC

    async def concatenate(
        self,
        video_refs: Sequence[str],
        on_progress: Optional[PercentCallback] = None,
        basename: str = "final_film",
    ) -> str:
        refs = list(video_refs)
        if not refs:
            raise ValueError("No clips supplied for concatenation")
        reporter = _ProgressReporter(on_progress)
        if len(refs) == 1:
            reporter(100)
            return refs[0]

        clips: list[Any] = []
        writer = None
        output_path: Optional[Path] = None
        finished = False
        try:
            reporter(5)
            total_duration = 0.0
            for index, ref in enumerate(refs):
                clip = await self._load(index, ref)
                clips.append(clip)
                total_duration += float(clip.duration)
                reporter(int(5 + (index + 1) / len(refs) * 10))
            reporter(15)

            size = tuple(clips[0].size) if clips[0].size else DEFAULT_SIZE
            choice = self.choose_codec()
            self.export_dir.mkdir(parents=True, exist_ok=True)
            output_path = self.export_dir / f"{basename}.{choice.extension}"
            logger.info(
                "Concatenating %d clips (%.1fs) into %s with %s at %dfps",
                len(clips),
                total_duration,
                output_path,
                choice.codec,
                self.fps,
            )
            writer = self.media.open_writer(output_path, size, self.fps, choice.codec)

            elapsed = 0.0
            step = 1.0 / self.fps
            for clip in clips:
                fitted = self.media.fit(clip, size)
                end = max(float(clip.duration) - CLIP_END_EPSILON, step)
                frame_index = 0
                while True:
                    t = frame_index * step
                    if t >= end:
                        break
                    writer.write_frame(fitted.get_frame(t))
                    frame_index += 1
                    reporter(min(95, int(15 + (elapsed + t) / total_duration * 80)))
                    await asyncio.sleep(0)
                elapsed += float(clip.duration)

            writer.close()
            writer = None
            size_bytes = output_path.stat().st_size if output_path.exists() else 0
            if size_bytes < MIN_OUTPUT_BYTES:
                raise PostProductionError(
                    f"Post-production produced an unusable file ({size_bytes} bytes)."
                )
            finished = True
            reporter(100)
            logger.info("Final film written to %s (%d bytes)", output_path, size_bytes)
            return str(output_path)
        finally:
            if writer is not None:
                _close_quietly(writer, "writer")
            for clip in clips:
                _close_quietly(clip, "clip")
            if not finished and output_path is not None and output_path.exists():
                output_path.unlink(missing_ok=True)

    async def _load(self, index: int, ref: str) -> Any:
        try:
            clip = await asyncio.wait_for(
                asyncio.to_thread(self.media.open_clip, ref),
                timeout=self.load_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ClipLoadTimeout(
                f"Clip {index + 1} did not load within {self.load_timeout:.0f}s."
            ) from exc
        except Exception as exc:
            raise ClipLoadError(f"Clip {index + 1} could not be decoded: {exc}") from exc
        if not clip.duration or clip.duration <= 0:
            _close_quietly(clip, "clip")
            raise ClipLoadError(f"Clip {index + 1} has no playable duration.")
        return clip


class _ProgressReporter:
    """Forwards percentages to a callback, never going backwards."""

    def __init__(self, callback: Optional[PercentCallback]) -> None:
        self.callback = callback
        self.last = -1

    def __call__(self, percent: int) -> None:
        if percent <= self.last:
            return
        self.last = percent
        if self.callback is not None:
            self.callback(percent)


def _close_quietly(resource: Any, label: str) -> None:
    try:
        resource.close()
    except Exception as exc:
        logger.warning("Failed to close %s: %s", label, exc)
