from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from textwrap import dedent


class ModelStyle(str, Enum):
    PIXAR_CLASSIC = "Pixar Classic"
    MODERN_DISNEY = "Modern Disney"
    CLAYMATION = "Claymation"


@dataclass(frozen=True)
class StylePipeline:
    name: str
    aesthetic: str


STYLE_PIPELINES: dict[ModelStyle, StylePipeline] = {
    ModelStyle.PIXAR_CLASSIC: StylePipeline(
        name="Classic Pixar 3D Animation",
        aesthetic=(
            "Pixar 3D animation style, masterpiece, vibrant warm colors, smooth tactile surfaces, "
            "soft glowing subsurface scattering on skin, cinematic lighting, joyful and expressive, "
            "deep depth of field, high-end C4D render."
        ),
    ),
    ModelStyle.MODERN_DISNEY: StylePipeline(
        name="Modern Disney Hyper-Detailed 3D",
        aesthetic=(
            "Modern Disney 3D animation style, highly detailed particle effects, magical bioluminescent "
            "volumetric lighting, ultra-detailed hair and fabric textures, expressive big eyes, dreamy and "
            "ethereal atmosphere, Octane render."
        ),
    ),
    ModelStyle.CLAYMATION: StylePipeline(
        name="Stop-Motion Claymation",
        aesthetic=(
            "Aardman stop-motion claymation style, physical miniature diorama look, visible fingerprint "
            "textures on clay, tactile felt and wood materials, physical studio lighting, macro photography "
            "depth of field."
        ),
    ),
}

NEGATIVE_CONSTRAINTS = (
    "photograph", "realistic", "live action", "DSLR",
    "2D drawing", "anime", "flat shading", "sketch",
    "ugly", "deformed", "creepy", "uncanny valley", "lifeless eyes",
    "bad anatomy", "blurry", "noise", "text", "watermark",
)

DEFAULT_VIDEO_STYLE = (
    "Disney Pixar 3D animation style, soft smooth lighting, vibrant colors, "
    "expressive character animation, cinematic quality."
)

CHARACTER_REFERENCE_INSTRUCTION = dedent(
    """
    [IMPORTANT: CHARACTER CONSISTENCY]
    Analyze the provided character reference and perfectly recreate their core identity in 3D animation style.
    Maintain their EXACT:
    - Hair color, style, and silhouette
    - Eye color and distinctive facial features (freckles, glasses, etc.)
    - Signature clothing colors and aesthetic
    Convert them into a cute, expressive Pixar-style 3D character. Do NOT make it a realistic photo.
    """
).strip()


def resolve_style(style: ModelStyle | str | None) -> ModelStyle:
    if isinstance(style, ModelStyle):
        return style
    if style:
        for candidate in ModelStyle:
            if style in (candidate.value, candidate.name, candidate.name.lower()):
                return candidate
    return ModelStyle.PIXAR_CLASSIC


def style_pipeline(style: ModelStyle | str | None) -> StylePipeline:
    return STYLE_PIPELINES[resolve_style(style)]


class FilmPromptBuilder:
    """Turns scene and image requests into provider-ready prompts."""

    def __init__(
        self,
        video_style: str | None = None,
        negative_prompt: str | None = None,
    ) -> None:
        self.video_style = video_style or DEFAULT_VIDEO_STYLE
        self.negative_prompt = negative_prompt or ", ".join(NEGATIVE_CONSTRAINTS)

    def video_prompt(self, scene_prompt: str) -> str:
        base = scene_prompt.strip().rstrip(".")
        return f"{base}. {self.video_style}"

    def image_prompt(
        self,
        subject: str,
        style: ModelStyle | str | None,
        with_reference: bool = False,
    ) -> str:
        pipeline = style_pipeline(style)
        sections = [f"SUBJECT & ACTION: {subject.strip()}"]
        if with_reference:
            sections.append(CHARACTER_REFERENCE_INSTRUCTION)
            details = (
                "ADDITIONAL DETAILS:\n"
                "- Lighting: Cinematic, volumetric rays, glowing skin subsurface scattering.\n"
                "- Camera: High-end 3D animation movie still, sharp focus."
            )
        else:
            details = (
                "ADDITIONAL DETAILS:\n"
                "- Lighting: 3-point cinematic lighting, subtle rim light, volumetric glow.\n"
                "- Camera: High-quality 3D render, sharp focus on subject, beautiful bokeh background."
            )
        sections.append(f"ART STYLE: {pipeline.aesthetic}")
        sections.append(details)
        sections.append(f"NEGATIVE: {self.negative_prompt}")
        return "\n\n".join(sections)
