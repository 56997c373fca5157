#!/usr/bin/env python3
"""
CLI entry point for the batch ingestion pipeline.

Runs one batch for a folder, waits for background AI analysis to finish,
and prints a summary.

Usage:
    python run_pipeline.py /path/to/photos
    python run_pipeline.py /path/to/photos --thumbnail-size 400 --quality 90
    python run_pipeline.py /path/to/photos --allow-duplicates --parallel 4
    python run_pipeline.py /path/to/photos --fallback -v
"""

import argparse
import logging
import sys

from db.database import dispose_engine, verify_connection
from pipeline.batch_registry import BatchOptions
from pipeline.processor import BatchProcessor, InvalidPathError, summarize


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Configure logging for the pipeline run."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers
    )


def build_options(args: argparse.Namespace) -> BatchOptions:
    """Translate CLI flags into batch options (env defaults where unset)."""
    values = {
        "thumbnail_size": args.thumbnail_size,
        "analysis_image_size": args.analysis_size,
        "quality": args.quality,
        "skip_duplicates": not args.allow_duplicates,
        "use_fallback": args.fallback,
        "parallel_connections": args.parallel,
        "custom_prompt": args.prompt,
    }
    return BatchOptions.from_dict(values)


def run_pipeline(args: argparse.Namespace) -> int:
    """Run one batch and report the outcome."""
    # Verify database connection
    print("Verifying database connection...")
    if not verify_connection():
        print("ERROR: Could not connect to database.")
        print("Please check your .env configuration and ensure the database is running.")
        return 1

    print("Database connection OK\n")

    try:
        options = build_options(args)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    # Print configuration
    print("Pipeline Configuration:")
    print(f"  Input path: {args.path}")
    print(f"  Thumbnail size: {options.thumbnail_size}")
    print(f"  Analysis image size: {options.analysis_image_size}")
    print(f"  JPEG quality: {options.quality}")
    print(f"  Skip duplicates: {options.skip_duplicates}")
    print(f"  Parallel files: {options.parallel_connections}")
    print(f"  Fallback analysis: {options.use_fallback}")
    print()

    with BatchProcessor() as processor:
        print("Starting pipeline...\n")
        try:
            result = processor.run(args.path, options)
        except InvalidPathError as e:
            print(f"ERROR: {e}")
            return 1

        print("Waiting for AI analysis to finish...")
        processor.wait_for_enrichment()

    # Print results
    print("\n" + summarize(result))

    # Return appropriate exit code
    if result["status"] == "error" or result["error_files"] > 0:
        return 1
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Ingest a folder of images: thumbnails, metadata, database records, AI analysis.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Options default to THUMBNAIL_SIZE / AI_IMAGE_SIZE from the environment
(300 / 1024 if unset). Supported formats: JPEG, PNG, TIFF and camera RAW
(CR2, NEF, ARW, DNG, RAF, ORF, RW2).

Examples:
  python run_pipeline.py /path/to/photos
  python run_pipeline.py /path/to/photos --thumbnail-size 400
  python run_pipeline.py /path/to/photos --allow-duplicates --parallel 4
  python run_pipeline.py /path/to/photos --fallback -v --log-file run.log
        """
    )

    parser.add_argument(
        "path",
        help="Path to directory containing images"
    )

    # Processing options
    parser.add_argument(
        "--thumbnail-size",
        type=int,
        help="Thumbnail bounding box in pixels (100-800)"
    )
    parser.add_argument(
        "--analysis-size",
        type=int,
        help="Bounding box of the image sent for AI analysis (512-2048)"
    )
    parser.add_argument(
        "--quality",
        type=int,
        default=85,
        help="JPEG quality for RAW previews and analysis images (50-100, default: 85)"
    )
    parser.add_argument(
        "--allow-duplicates",
        action="store_true",
        help="Process files whose name and size match an existing image"
    )
    parser.add_argument(
        "--parallel",
        type=int,
        default=1,
        help="Number of files processed concurrently (1-16, default: 1)"
    )
    parser.add_argument(
        "--fallback",
        action="store_true",
        help="Use placeholder analysis instead of calling the vision model"
    )
    parser.add_argument(
        "--prompt",
        help="Custom instructions sent to the vision model instead of the default prompt"
    )

    # Output options
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show detailed progress output"
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to file"
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging(args.verbose, args.log_file)

    try:
        return run_pipeline(args)
    except KeyboardInterrupt:
        print("\n\nPipeline interrupted by user.")
        return 130
    except Exception as e:
        print(f"\nERROR: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1
    finally:
        dispose_engine()


if __name__ == "__main__":
    sys.exit(main())
