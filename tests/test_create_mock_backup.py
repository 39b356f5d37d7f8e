import tarfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

import create_mock_backup
from backup_manager import find_archives, parse_archive_name, rotate_backups


def test_make_mock_backup_uses_backup_naming(tmp_path: Path) -> None:
    timestamp = datetime(2024, 2, 29, 23, 59, 58)

    archive = create_mock_backup.make_mock_backup(
        tmp_path,
        prefix="nightly",
        compression="bzip2",
        extra_files=[("extra/file.txt", b"extra")],
        timestamp=timestamp,
    )

    assert archive.name == "nightly_20240229_235958.tar.bz2"
    assert parse_archive_name(archive.name, "nightly") == timestamp
    with tarfile.open(archive, "r:bz2") as tar:
        names = set(tar.getnames())
        content = tar.extractfile("source/extra/file.txt")
        assert content is not None and content.read() == b"extra"
    assert {"source/notes.txt", "source/docs/readme.md"} <= names


def test_main_creates_back_dated_archives_that_rotate(tmp_path: Path) -> None:
    backup_dir = tmp_path / "backups"

    exit_code = create_mock_backup.main(
        [
            "--backup-dir",
            str(backup_dir),
            "--prefix",
            "job",
            "--count",
            "3",
            "--age",
            "10d",
            "--timestamp-step",
            "1d",
        ]
    )

    assert exit_code == 0
    archives, strays = find_archives(backup_dir, "job")
    assert len(archives) == 3
    assert strays == []

    summary = rotate_backups(backup_dir, "job", 7)
    assert summary.deleted_count == 3


def test_main_rejects_non_positive_count(tmp_path: Path) -> None:
    assert create_mock_backup.main(["--backup-dir", str(tmp_path), "--count", "0"]) == 2


@pytest.mark.parametrize(
    "value, expected",
    [("30m", timedelta(minutes=30)), ("2d", timedelta(days=2)), ("45", timedelta(seconds=45))],
)
def test_parse_duration(value: str, expected: timedelta) -> None:
    assert create_mock_backup.parse_duration(value) == expected


def test_parse_duration_rejects_zero_unless_allowed() -> None:
    with pytest.raises(ValueError):
        create_mock_backup.parse_duration("0d")
    assert create_mock_backup.parse_duration("0d", allow_zero=True) == timedelta(0)


def test_parse_extra_files_requires_separator() -> None:
    with pytest.raises(ValueError):
        list(create_mock_backup.parse_extra_files(["no-separator"]))
