from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from .errors import FilmPipelineError
from .orchestrator import FilmPipeline, PipelineConfig
from .project.model import RemoteReference, StoryboardSettings
from .providers.base import ReferenceImage

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Turn a one-line idea into an animated short film with Gemini and Veo."
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Optional path to pipeline configuration JSON/YAML",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    film = subparsers.add_parser("film", help="Write, render and assemble a short film")
    film.add_argument("idea", nargs="?", help="One-line idea for the film")
    film.add_argument("--script-file", type=Path, help="Import a pre-written screenplay instead of writing one")
    film.add_argument("--scenes", type=int, help="Number of scenes to write")
    film.add_argument("--aspect-ratio", choices=["16:9", "9:16"])
    film.add_argument("--resolution", choices=["720p", "1080p"])
    film.add_argument("--character-ref", type=Path, help="Reference image that keeps the character consistent")
    film.add_argument(
        "--script-only",
        action="store_true",
        help="Stop after the screenplay and write it to disk without rendering",
    )
    film.add_argument(
        "--output",
        type=Path,
        default=Path("data/project.json"),
        help="Where to write the project bundle",
    )

    storyboard = subparsers.add_parser("storyboard", help="Generate a storyboard with image and video prompts")
    storyboard.add_argument("idea")
    storyboard.add_argument("--scenes", type=int, default=4)
    storyboard.add_argument("--style", default="Pixar Classic")
    storyboard.add_argument("--aspect-ratio", choices=["16:9", "9:16"], default="16:9")
    storyboard.add_argument("--character", default="", help="Character description locked into every prompt")
    storyboard.add_argument("--first-frames", action="store_true", help="Also render a preview still per scene")
    storyboard.add_argument("--output", type=Path, default=Path("data/storyboard.json"))

    image = subparsers.add_parser("image", help="Generate a batch of styled images")
    image.add_argument("prompt")
    image.add_argument("--style", default="Pixar Classic")
    image.add_argument("--aspect-ratio", default="1:1")
    image.add_argument("--batch", type=int, default=1)
    image.add_argument("--reference", type=Path, help="Character reference image")

    subparsers.add_parser("quota", help="Show today's request quota")
    return parser


async def _run_film(pipeline: FilmPipeline, args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    updates = {}
    if args.aspect_ratio:
        updates["aspect_ratio"] = args.aspect_ratio
    if args.resolution:
        updates["resolution"] = args.resolution
    if args.character_ref:
        updates["character_reference"] = args.character_ref
    if updates:
        pipeline.project.settings = pipeline.project.settings.model_copy(update=updates)

    if args.script_file:
        raw = args.script_file.read_text(encoding="utf-8")
        scenes = await pipeline.import_script(raw, idea=args.idea)
    else:
        if not args.idea:
            parser.error("Either an idea or --script-file must be provided")
        scenes = await pipeline.write_script(args.idea, args.scenes)
    print(f"Screenplay ready with {len(scenes)} scenes")
    if args.script_only:
        return

    def on_progress(event) -> None:
        logger.debug("Scene %s at %d%% (%s)", event.scene_id, event.progress, event.status)

    summary = await pipeline.render_scenes(on_progress=on_progress)
    print(f"Rendered {len(summary.done)} scene(s), {len(summary.failed)} failed")
    for scene in pipeline.project.ordered_scenes():
        if scene.error:
            print(f"  Scene {scene.scene_number}: {scene.error}")
        elif isinstance(scene.artifact, RemoteReference):
            print(f"  Scene {scene.scene_number}: not downloaded, left at {scene.artifact.uri}")
    if summary.done:
        final = await pipeline.post_produce()
        print(f"Final film: {final}")


async def _run_storyboard(pipeline: FilmPipeline, args: argparse.Namespace) -> dict:
    settings = StoryboardSettings(
        scene_count=args.scenes,
        aspect_ratio=args.aspect_ratio,
        style=args.style,
        character_description=args.character,
    )
    scenes = await pipeline.write_storyboard(args.idea, settings)
    frames: dict[str, str] = {}
    if args.first_frames:
        for scene in scenes:
            image = await pipeline.images.generate_first_frame(scene, settings)
            frames[scene.id] = str(image.path)
    return {
        "idea": args.idea,
        "settings": settings.model_dump(mode="json"),
        "scenes": [scene.model_dump(mode="json") for scene in scenes],
        "first_frames": frames,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = PipelineConfig.from_file(args.config) if args.config else PipelineConfig()
    try:
        if args.command == "quota":
            info = config.build_rate_gate().quota_info()
            print(f"{info.daily_count}/{info.daily_limit} requests used today ({info.remaining} remaining)")
            return 0

        pipeline = FilmPipeline.default(config)
        if args.command == "film":
            try:
                asyncio.run(_run_film(pipeline, args, parser))
            finally:
                output_path = pipeline.save(args.output)
                print(f"Wrote project bundle to {output_path}")
        elif args.command == "storyboard":
            payload = asyncio.run(_run_storyboard(pipeline, args))
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            print(f"Wrote storyboard to {args.output}")
        elif args.command == "image":
            reference = ReferenceImage.from_path(args.reference) if args.reference else None
            task = asyncio.run(
                pipeline.images.generate(
                    args.prompt,
                    args.style,
                    args.aspect_ratio,
                    batch_size=args.batch,
                    reference_image=reference,
                )
            )
            for image in task.images:
                print(image.path)
    except FilmPipelineError as exc:
        print(exc.user_message)
        return 1
    except ValueError as exc:
        logger.debug("Rejected input", exc_info=True)
        print(f"Invalid input: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
