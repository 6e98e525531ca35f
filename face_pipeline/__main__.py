"""
Command line entry point.

    python -m face_pipeline --health
    python -m face_pipeline --event-id 1 photo1.jpg photo2.jpg
"""

import argparse
import sys
from pathlib import Path

from .config import Config, print_config
from .errors import ModelUnavailable
from .logging_config import get_logger, setup_logging
from .processor import FacePipeline
from .schemas import RecognitionContext

logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Face detection and recognition for event photos")
    parser.add_argument("images", nargs="*", type=Path, help="Image files to process")
    parser.add_argument("--event-id", type=int, default=1, help="Event scope for gallery matching")
    parser.add_argument("--first-photo-id", type=int, default=1, help="Photo id of the first image")
    parser.add_argument("--database-url", default=Config.DATABASE_URL, help="SQLAlchemy database URL")
    parser.add_argument("--health", action="store_true", help="Check that the models load, then exit")
    parser.add_argument("--show-config", action="store_true", help="Print the active configuration")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(debug=args.debug or Config.DEBUG)

    if args.show_config:
        print_config()

    pipeline = FacePipeline.from_config(args.database_url)
    try:
        if args.health:
            status = pipeline.health()
            print(f"{'✓' if status['ok'] else '✗'} detector: {status['detector']}")
            print(f"{'✓' if status['embedder']['ok'] else '✗'} embedder: {status['embedder']}")
            return 0 if status["ok"] else 1

        context = RecognitionContext(event_id=args.event_id)
        for offset, path in enumerate(args.images):
            photo_id = args.first_photo_id + offset
            try:
                result = pipeline.process_photo(photo_id, path.read_bytes(), context)
            except (OSError, ValueError) as e:
                logger.error(f"Skipping {path}: {e}")
                continue

            if result.timed_out:
                print(f"{path.name}: timed out after {result.processing_time_ms}ms (retry later)")
                continue
            print(f"{path.name}: {len(result.faces)} faces in {result.processing_time_ms}ms")
            for face in result.faces:
                label = face.recognized_tag_id if face.recognized_tag_id is not None else face.match_reason
                score = f"{face.fused_score:.3f}" if face.fused_score is not None else "-"
                print(f"  face {face.id}: score={face.score:.2f} tag={label} fused={score}")
            for warning in result.warnings:
                print(f"  ⚠ {warning}")
        return 0
    except ModelUnavailable as e:
        logger.error(f"Model unavailable: {e}")
        return 2
    finally:
        pipeline.shutdown()


if __name__ == "__main__":
    sys.exit(main())
