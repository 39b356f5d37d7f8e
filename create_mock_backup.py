#!/usr/bin/env python3
"""
Utility to create mock backup archives with back-dated names.

Useful for checking rotation by hand without waiting for real backups to age
out of the retention window.
"""
from __future__ import annotations

import argparse
import io
import tarfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Tuple

from backup_manager import (
    DEFAULT_COMPRESSION,
    DEFAULT_PREFIX,
    archive_name,
    resolve_compression,
)


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create mock backup archives named like real backups."
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        required=True,
        help="Directory where the mock archives should be placed.",
    )
    parser.add_argument(
        "--prefix",
        default=DEFAULT_PREFIX,
        help=f"Archive name prefix (default: {DEFAULT_PREFIX}).",
    )
    parser.add_argument(
        "--compression",
        default=DEFAULT_COMPRESSION,
        choices=["gzip", "bzip2"],
        help=f"Compression to use (default: {DEFAULT_COMPRESSION}).",
    )
    parser.add_argument(
        "--source-name",
        default="source",
        help="Name of the top-level directory to mimic inside the archive.",
    )
    parser.add_argument(
        "--extra-file",
        action="append",
        default=[],
        metavar="PATH=CONTENT",
        help=(
            "Additional file entries to include inside the archive, "
            "formatted as relative_path=content. Can be passed multiple times."
        ),
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of archives to create (default: 1).",
    )
    parser.add_argument(
        "--age",
        default="0d",
        help="Age of the first archive, e.g. 10d or 36h (default: 0d).",
    )
    parser.add_argument(
        "--timestamp-step",
        default="1d",
        help="Age difference between successive archives (default: 1d).",
    )
    return parser.parse_args(argv)


def parse_extra_files(entries: Iterable[str]) -> Iterable[Tuple[str, bytes]]:
    for entry in entries:
        if "=" not in entry:
            raise ValueError(f"Invalid --extra-file entry (missing '='): {entry}")
        path, content = entry.split("=", 1)
        path = path.strip()
        if not path:
            raise ValueError(f"Invalid --extra-file entry (empty path): {entry}")
        yield path, content.encode("utf-8")


def parse_duration(value: str, *, allow_zero: bool = False) -> timedelta:
    units = {
        "s": 1,
        "m": 60,
        "h": 60 * 60,
        "d": 24 * 60 * 60,
    }

    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("Duration value must not be empty.")

    suffix = normalized[-1]
    if suffix in units:
        number_part = normalized[:-1]
        multiplier = units[suffix]
    else:
        number_part = normalized
        multiplier = 1

    try:
        number = int(number_part)
    except ValueError as error:
        raise ValueError(f"Invalid duration value: {value}") from error

    if number < 0 or (number == 0 and not allow_zero):
        raise ValueError(f"Duration value must be positive: {value}")

    return timedelta(seconds=number * multiplier)


def _add_bytes(tar: tarfile.TarFile, name: str, content: bytes, mtime: float) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mtime = int(mtime)
    tar.addfile(info, io.BytesIO(content))


def make_mock_backup(
    backup_dir: Path,
    *,
    prefix: str = DEFAULT_PREFIX,
    compression: str = DEFAULT_COMPRESSION,
    source_name: str = "source",
    extra_files: Iterable[Tuple[str, bytes]] = (),
    timestamp: datetime | None = None,
) -> Path:
    fmt = resolve_compression(compression)
    timestamp = timestamp or datetime.now()
    backup_dir.mkdir(parents=True, exist_ok=True)

    archive_path = backup_dir / archive_name(prefix, fmt.extension, timestamp)

    default_files = [
        ("notes.txt", b"mock notes"),
        ("docs/readme.md", b"# mock readme\n"),
    ]

    with tarfile.open(archive_path, fmt.write_mode) as tar:
        for relative_path, content in [*default_files, *extra_files]:
            _add_bytes(
                tar, f"{source_name}/{relative_path}", content, timestamp.timestamp()
            )

    return archive_path


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        extra_files = list(parse_extra_files(args.extra_file))
        age = parse_duration(args.age, allow_zero=True)
        step = parse_duration(args.timestamp_step)
    except ValueError as error:
        print(f"Error: {error}")
        return 2

    if args.count <= 0:
        print("Error: --count must be a positive integer.")
        return 2

    backup_dir = args.backup_dir.resolve()
    current_timestamp = datetime.now() - age

    for _ in range(args.count):
        archive_path = make_mock_backup(
            backup_dir,
            prefix=args.prefix,
            compression=args.compression,
            source_name=args.source_name,
            extra_files=extra_files,
            timestamp=current_timestamp,
        )
        print(f"Created mock backup: {archive_path}")
        current_timestamp -= step
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
