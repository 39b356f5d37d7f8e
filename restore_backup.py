#!/usr/bin/env python3
"""
Restore a backup archive into a target directory.

The archive is verified first. Each top-level directory inside it is then
extracted into the target directory; a directory that already exists there is
moved aside to <name>_Old (with a suffix when necessary to avoid collisions)
so the restore can be reverted by hand.
"""
from __future__ import annotations

import argparse
import logging
import shutil
import sys
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from backup_manager import (
    ArchiveError,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    compression_for_path,
    verify_archive,
)


logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Restore a .tar.gz or .tar.bz2 backup into a directory."
    )
    parser.add_argument(
        "archive",
        type=Path,
        help="Path to the backup archive to restore.",
    )
    parser.add_argument(
        "target_dir",
        type=Path,
        help="Directory that receives the archived top-level directory.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned actions without modifying any files.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )


def _next_old_path(destination: Path) -> Path:
    base = destination.with_name(f"{destination.name}_Old")
    if not base.exists():
        return base

    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    candidate = destination.with_name(f"{destination.name}_Old_{timestamp}")
    counter = 1
    while candidate.exists():
        candidate = destination.with_name(
            f"{destination.name}_Old_{timestamp}_{counter}"
        )
        counter += 1
    return candidate


def restore_backup_archive(
    archive_path: Path, target_dir: Path, *, dry_run: bool = False
) -> List[Path]:
    """Restore ``archive_path`` into ``target_dir``.

    Returns the restored top-level directories (the planned ones on a dry
    run).
    """
    archive_path = archive_path.expanduser().resolve()
    target_dir = target_dir.expanduser().resolve()

    if not archive_path.is_file():
        raise FileNotFoundError(f"Archive {archive_path} does not exist.")
    fmt = compression_for_path(archive_path)
    if fmt is None:
        raise ValueError(
            f"Archive {archive_path} is not a .tar.gz or .tar.bz2 file."
        )

    if not target_dir.exists():
        raise FileNotFoundError(f"Target directory {target_dir} does not exist.")
    if not target_dir.is_dir():
        raise NotADirectoryError(f"Target directory {target_dir} is not a directory.")

    members = verify_archive(archive_path, fmt)
    logger.info(
        "Restoring %s (%d entries) into %s", archive_path.name, len(members), target_dir
    )

    restored: List[Path] = []
    with tempfile.TemporaryDirectory() as temp_dir:
        extraction_root = Path(temp_dir)
        with tarfile.open(archive_path, fmt.read_mode) as tar:
            tar.extractall(extraction_root, filter="data")

        top_level_dirs = sorted(
            path for path in extraction_root.iterdir() if path.is_dir()
        )

        if not top_level_dirs:
            logger.warning("No directories found in archive %s", archive_path)

        for extracted_dir in top_level_dirs:
            destination_dir = target_dir / extracted_dir.name

            if destination_dir.exists():
                old_path = _next_old_path(destination_dir)
                logger.info("Moving existing %s to %s", destination_dir, old_path)
                if not dry_run:
                    destination_dir.rename(old_path)
            else:
                logger.debug("%s does not exist yet, nothing to move.", destination_dir)

            logger.info("Restoring %s into %s", extracted_dir.name, destination_dir)
            if not dry_run:
                shutil.move(str(extracted_dir), str(destination_dir))
            restored.append(destination_dir)

    return restored


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        restore_backup_archive(
            archive_path=args.archive,
            target_dir=args.target_dir,
            dry_run=args.dry_run,
        )
    except ArchiveError as error:
        logger.error("Archive is not usable: %s", error)
        return 1
    except (OSError, ValueError, tarfile.TarError) as error:
        logger.error("Restore failed: %s", error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
