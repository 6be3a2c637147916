"""Command-line interface for slidedeck."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from slidedeck import __version__
from slidedeck.constants import (
    DEFAULT_MAX_SLIDES,
    DEFAULT_MIN_DURATION_SECONDS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SCENE_THRESHOLD,
)
from slidedeck.errors import SlidesError
from slidedeck.events import LoggingObserver
from slidedeck.models import SlideSource
from slidedeck.pipeline import SlideExtractor
from slidedeck.process import ProcessError
from slidedeck.settings import resolve_slide_settings
from slidedeck.source import is_url, resolve_local_source, resolve_slide_source_from_url

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging output.

    Args:
        verbose: If True, set log level to DEBUG, otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )


def resolve_input(input_str: str) -> SlideSource:
    """Turn a CLI input (URL or local path) into a slide source.

    Raises:
        FileNotFoundError: If a local path does not exist.
        ValueError: If a URL has no slide-able video.
    """
    if is_url(input_str):
        source = resolve_slide_source_from_url(input_str)
        if source is None:
            raise ValueError(f"No video found for slides at {input_str}")
        return source

    video_path = Path(input_str)
    if not video_path.is_file():
        raise FileNotFoundError(f"Video file not found: {video_path}")
    return resolve_local_source(video_path)


def handle_extract(args: argparse.Namespace) -> None:
    """Handle 'slidedeck extract' command."""
    try:
        source = resolve_input(args.input)
        settings = resolve_slide_settings(
            slides=True,
            ocr=args.slides_ocr,
            output_dir=args.slides_dir,
            scene_threshold=args.slides_scene_threshold,
            max_slides=args.slides_max,
            min_duration=args.slides_min_duration,
            auto_tune_threshold=not args.no_auto_tune,
        )
        if settings is None:
            raise ValueError("Slide extraction is disabled for this request.")

        extractor = SlideExtractor()
        result = extractor.extract(
            source,
            settings,
            no_cache=args.no_cache,
            observer=LoggingObserver(),
        )

    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)
    except (SlidesError, ProcessError) as e:
        logger.error(f"Slide extraction failed: {e}")
        if args.verbose:
            logger.exception("Full traceback:")
        sys.exit(1)

    if args.json:
        print(json.dumps(result.to_manifest(), ensure_ascii=False, indent=2))
        return

    print(f"\n✓ Extracted {len(result.slides)} slides")
    print(f"  Source:     {result.source_url}")
    print(f"  Threshold:  {result.auto_tune.chosen_threshold} ({result.auto_tune.strategy})")
    print(f"  Output dir: {result.slides_dir}")
    for warning in result.warnings:
        print(f"  Warning:    {warning}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slidedeck",
        description="Extract slide images (and optional OCR text) from lecture videos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Extract slides from a local recording
  slidedeck extract lecture.mp4

  # Extract slides from a YouTube video with OCR
  slidedeck extract "https://www.youtube.com/watch?v=dQw4w9WgXcQ" --slides-ocr

  # More slides, more sensitive detection, fresh run
  slidedeck extract talk.mp4 --slides-max 30 --slides-scene-threshold 0.15 --no-cache
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    extract_parser = subparsers.add_parser(
        "extract",
        help="Extract slides from a video file or URL"
    )
    extract_parser.add_argument(
        "input",
        help="Local video file, YouTube URL or direct media URL"
    )
    extract_parser.add_argument(
        "--slides-dir",
        type=Path,
        default=Path(DEFAULT_OUTPUT_DIR),
        help=f"Base output directory (default: {DEFAULT_OUTPUT_DIR}/)"
    )
    extract_parser.add_argument(
        "--slides-ocr",
        action="store_true",
        help="Run Tesseract OCR on every slide"
    )
    extract_parser.add_argument(
        "--slides-scene-threshold",
        metavar="NUM",
        help=f"Base scene threshold 0.1-1, lower=more sensitive (default: {DEFAULT_SCENE_THRESHOLD})"
    )
    extract_parser.add_argument(
        "--slides-max",
        metavar="N",
        help=f"Maximum number of slides (default: {DEFAULT_MAX_SLIDES})"
    )
    extract_parser.add_argument(
        "--slides-min-duration",
        metavar="SEC",
        help=f"Minimum seconds between slides (default: {DEFAULT_MIN_DURATION_SECONDS})"
    )
    extract_parser.add_argument(
        "--no-auto-tune",
        action="store_true",
        help="Use the scene threshold as given instead of calibrating per video"
    )
    extract_parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Ignore an existing slides.json and extract again"
    )
    extract_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the manifest as JSON instead of a summary"
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(args.verbose)

    if args.command == "extract":
        handle_extract(args)


if __name__ == "__main__":
    main()
