import tarfile
from datetime import datetime
from pathlib import Path
from typing import Dict

import pytest

import restore_backup
from backup_manager import ArchiveIntegrityFailed, create_archive


def make_backup(tmp_path: Path, files: Dict[str, bytes], name: str = "world") -> Path:
    source = tmp_path / "live" / name
    for relative, content in files.items():
        target = source / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir(exist_ok=True)
    archive = create_archive(
        source, backup_dir, "prefix", "gzip", now=datetime(2024, 1, 1, 0, 0, 0)
    )
    return archive.path


def test_restore_backup_replaces_existing_directory(tmp_path: Path) -> None:
    archive = make_backup(
        tmp_path, {"new.txt": b"new world", "nested/deep.txt": b"deep"}
    )

    target_dir = tmp_path / "target"
    existing = target_dir / "world"
    existing.mkdir(parents=True)
    (existing / "old.txt").write_text("old world")

    restored = restore_backup.restore_backup_archive(archive, target_dir)

    assert restored == [existing.resolve()]
    old_world = target_dir / "world_Old"
    assert (old_world / "old.txt").read_text() == "old world"
    assert (existing / "new.txt").read_bytes() == b"new world"
    assert (existing / "nested" / "deep.txt").read_bytes() == b"deep"
    assert not (existing / "old.txt").exists()


def test_restore_backup_dry_run(tmp_path: Path) -> None:
    archive = make_backup(tmp_path, {"file.txt": b"archive"})
    target_dir = tmp_path / "target"
    existing = target_dir / "world"
    existing.mkdir(parents=True)
    (existing / "file.txt").write_text("live")

    restore_backup.restore_backup_archive(archive, target_dir, dry_run=True)

    assert not (target_dir / "world_Old").exists()
    assert (existing / "file.txt").read_text() == "live"


def test_restore_backup_picks_unused_old_name(tmp_path: Path) -> None:
    archive = make_backup(tmp_path, {"file.txt": b"archive"})
    target_dir = tmp_path / "target"
    (target_dir / "world").mkdir(parents=True)
    (target_dir / "world_Old").mkdir()

    restore_backup.restore_backup_archive(archive, target_dir)

    moved = [p.name for p in target_dir.iterdir() if p.name.startswith("world_Old_")]
    assert len(moved) == 1
    assert (target_dir / "world" / "file.txt").read_bytes() == b"archive"


def test_restore_backup_rejects_truncated_archive(tmp_path: Path) -> None:
    archive = make_backup(tmp_path, {"file.txt": b"archive" * 100})
    size = archive.stat().st_size
    with open(archive, "r+b") as handle:
        handle.truncate(size // 2)
    target_dir = tmp_path / "target"
    target_dir.mkdir()

    with pytest.raises(ArchiveIntegrityFailed):
        restore_backup.restore_backup_archive(archive, target_dir)

    assert list(target_dir.iterdir()) == []
    assert restore_backup.main([str(archive), str(target_dir)]) == 1


def test_restore_backup_rejects_unknown_format(tmp_path: Path) -> None:
    archive = tmp_path / "backup.tar"
    with tarfile.open(archive, "w"):
        pass
    target_dir = tmp_path / "target"
    target_dir.mkdir()

    with pytest.raises(ValueError):
        restore_backup.restore_backup_archive(archive, target_dir)


def test_restore_backup_main_success(tmp_path: Path) -> None:
    archive = make_backup(tmp_path, {"file.txt": b"archive"})
    target_dir = tmp_path / "target"
    target_dir.mkdir()

    assert restore_backup.main([str(archive), str(target_dir)]) == 0
    assert (target_dir / "world" / "file.txt").read_bytes() == b"archive"


def test_restore_backup_refuses_member_outside_target(tmp_path: Path) -> None:
    payload = tmp_path / "payload.txt"
    payload.write_bytes(b"escape")
    archive = tmp_path / "prefix_20240101_000000.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(payload, arcname="world/file.txt")
        tar.add(payload, arcname="../escape.txt")
    target_dir = tmp_path / "target"
    target_dir.mkdir()

    with pytest.raises(tarfile.FilterError):
        restore_backup.restore_backup_archive(archive, target_dir)

    assert list(target_dir.iterdir()) == []
    assert restore_backup.main([str(archive), str(target_dir)]) == 1
