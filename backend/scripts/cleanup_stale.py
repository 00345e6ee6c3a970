#!/usr/bin/env python3
"""
CLI tool to delete stale working files left behind by crashed jobs.

Usage:
    python scripts/cleanup_stale.py [--older-than-hours <hours>] [--dry-run]

Example:
    python scripts/cleanup_stale.py --older-than-hours 6
"""
import argparse
import logging
import sys
import time
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from shortsmith.config import settings
from shortsmith.pipeline.job import sweep_stale_files


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger(__name__)


def list_stale_files(directories, max_age_seconds: float):
    """Files a sweep would delete, without deleting them."""
    now = time.time()
    stale = []
    for directory in directories:
        directory = Path(directory)
        if not directory.is_dir():
            continue
        for path in directory.iterdir():
            if path.is_file() and now - path.stat().st_mtime > max_age_seconds:
                stale.append(path)
    return stale


def main():
    parser = argparse.ArgumentParser(
        description="Delete stale files from the processing and output directories"
    )
    parser.add_argument(
        "--older-than-hours",
        type=float,
        default=settings.stale_file_max_age_seconds / 3600,
        help="Delete files older than this many hours",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list the files that would be deleted",
    )

    args = parser.parse_args()

    if args.older_than_hours <= 0:
        logger.error("--older-than-hours must be positive")
        sys.exit(1)

    directories = [settings.processing_dir, settings.output_dir]
    max_age_seconds = args.older_than_hours * 3600

    if args.dry_run:
        stale = list_stale_files(directories, max_age_seconds)
        for path in stale:
            print(path)
        logger.info(f"{len(stale)} files would be deleted")
        return

    removed = sweep_stale_files(directories, max_age_seconds)
    logger.info(f"Deleted {removed} files older than {args.older_than_hours:g}h")


if __name__ == "__main__":
    main()
