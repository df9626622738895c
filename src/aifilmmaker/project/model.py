from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from aifilmmaker.errors import PhaseError


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SceneStatus(str, Enum):
    IDLE = "idle"
    RENDERING = "rendering"
    POLLING = "polling"
    DONE = "done"
    FAILED = "failed"


class ProjectPhase(str, Enum):
    IDEA = "idea"
    SCRIPT_READY = "script-ready"
    RENDERING = "rendering"
    POST_PRODUCTION = "post-production"
    DONE = "done"


PHASE_ORDER = list(ProjectPhase)


class LocalArtifact(BaseModel):
    """Rendered media owned by this process, stored on local disk."""

    kind: Literal["local"] = "local"
    path: Path
    size_bytes: int = 0

    @property
    def reference(self) -> str:
        return str(self.path)


class RemoteReference(BaseModel):
    """Provider-hosted media that could not be downloaded.

    The URI may expire or require the provider's credentials to open.
    """

    kind: Literal["remote"] = "remote"
    uri: str
    reason: Optional[str] = None

    @property
    def reference(self) -> str:
        return self.uri


Artifact = Annotated[Union[LocalArtifact, RemoteReference], Field(discriminator="kind")]


class Scene(BaseModel):
    """One narrative beat with its own render job."""

    id: str = Field(default_factory=lambda: _new_id("scene"))
    scene_number: int = Field(ge=1)
    title: str = ""
    action: str = ""
    video_prompt: str = ""
    image_prompt: str = ""
    audio_description: str = ""
    narration: str = ""
    duration_seconds: float = Field(default=8.0, gt=0)
    status: SceneStatus = SceneStatus.IDLE
    progress: int = Field(default=0, ge=0, le=100)
    video_url: Optional[str] = None
    artifact: Optional[Artifact] = None
    error: Optional[str] = None

    @property
    def is_renderable(self) -> bool:
        return bool(self.video_prompt.strip())

    @property
    def is_terminal(self) -> bool:
        return self.status in (SceneStatus.DONE, SceneStatus.FAILED)

    # Runtime transitions; only the render stage calls these.

    def begin_attempt(self) -> None:
        self.status = SceneStatus.RENDERING
        self.progress = 0
        self.error = None
        self.video_url = None
        self.artifact = None

    def advance(self, progress: int, status: SceneStatus | None = None) -> None:
        if status is not None:
            self.status = status
        # Progress only moves forward within an attempt; 100 is reserved for done.
        self.progress = max(self.progress, min(99, int(progress)))

    def mark_done(self, artifact: Artifact) -> None:
        self.status = SceneStatus.DONE
        self.artifact = artifact
        self.video_url = artifact.reference
        self.progress = 100
        self.error = None

    def mark_failed(self, message: str) -> None:
        self.status = SceneStatus.FAILED
        self.error = message or "Render failed"
        self.video_url = None
        self.artifact = None
        if self.progress >= 100:
            self.progress = 99


class RenderSettings(BaseModel):
    aspect_ratio: Literal["16:9", "9:16"] = "16:9"
    resolution: Literal["720p", "1080p"] = "720p"
    character_reference: Optional[Path] = None


class FilmSummary(BaseModel):
    id: str
    idea: str
    scene_count: int
    done_count: int
    phase: ProjectPhase
    final_video_url: Optional[str] = None
    created_at: datetime


class FilmProject(BaseModel):
    """Owns the scene list and the pipeline phase of one short film."""

    id: str = Field(default_factory=lambda: _new_id("film"))
    idea: str = ""
    scenes: List[Scene] = Field(default_factory=list)
    phase: ProjectPhase = ProjectPhase.IDEA
    settings: RenderSettings = Field(default_factory=RenderSettings)
    final_video_url: Optional[str] = None
    final_artifact: Optional[LocalArtifact] = None
    created_at: datetime = Field(default_factory=_utc_now)

    def scene(self, scene_id: str) -> Scene:
        for scene in self.scenes:
            if scene.id == scene_id:
                return scene
        raise KeyError(f"Unknown scene {scene_id}")

    def ordered_scenes(self) -> list[Scene]:
        return sorted(self.scenes, key=lambda scene: scene.scene_number)

    def completed_scenes(self) -> list[Scene]:
        return [
            scene
            for scene in self.ordered_scenes()
            if scene.status == SceneStatus.DONE and scene.video_url
        ]

    def accept_screenplay(self, idea: str, scenes: list[Scene]) -> None:
        if self.phase not in (ProjectPhase.IDEA, ProjectPhase.SCRIPT_READY):
            raise PhaseError(
                f"Cannot replace the screenplay while the project is in '{self.phase.value}'. Reset first."
            )
        self.idea = idea
        self.scenes = list(scenes)
        self.final_video_url = None
        self.final_artifact = None
        self.phase = ProjectPhase.SCRIPT_READY

    def advance_to(self, phase: ProjectPhase) -> None:
        if PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.phase):
            raise PhaseError(f"Cannot move project back from '{self.phase.value}' to '{phase.value}'")
        self.phase = phase

    def return_to_rendering(self) -> None:
        """Undo a failed post-production step without touching scene results."""
        if self.phase != ProjectPhase.POST_PRODUCTION:
            raise PhaseError(f"Project is not in post-production (phase '{self.phase.value}')")
        self.phase = ProjectPhase.RENDERING

    def finish(self, artifact: LocalArtifact | None, reference: str) -> None:
        self.final_artifact = artifact
        self.final_video_url = reference
        self.advance_to(ProjectPhase.DONE)

    def reset(self) -> None:
        self.idea = ""
        self.scenes = []
        self.final_video_url = None
        self.final_artifact = None
        self.phase = ProjectPhase.IDEA

    def summary(self) -> FilmSummary:
        return FilmSummary(
            id=self.id,
            idea=self.idea,
            scene_count=len(self.scenes),
            done_count=len(self.completed_scenes()),
            phase=self.phase,
            final_video_url=self.final_video_url,
            created_at=self.created_at,
        )

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.model_dump(mode="json"), indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path) -> "FilmProject":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(data)


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationParams(BaseModel):
    prompt: str
    style: str
    aspect_ratio: str


class GeneratedImage(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("img"))
    path: Path
    prompt: str
    style: str
    aspect_ratio: str
    timestamp: datetime = Field(default_factory=_utc_now)
    batch_id: Optional[str] = None


class GenerationTask(BaseModel):
    """Audit trail entry for one image-generation request."""

    id: str = Field(default_factory=lambda: _new_id("task"))
    status: TaskStatus = TaskStatus.PENDING
    params: GenerationParams
    images: List[GeneratedImage] = Field(default_factory=list)
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)

    def complete(self, images: list[GeneratedImage]) -> None:
        self.images = list(images)
        self.status = TaskStatus.COMPLETED

    def fail(self, message: str) -> None:
        self.error = message
        self.status = TaskStatus.FAILED


class StoryboardSettings(BaseModel):
    scene_count: int = Field(default=4, ge=1, le=12)
    aspect_ratio: Literal["16:9", "9:16"] = "16:9"
    style: str = "Pixar Classic"
    character_description: str = ""
