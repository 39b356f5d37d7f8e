#!/usr/bin/env python3
"""
Directory backup manager.

Creates a compressed, integrity-checked snapshot of a source directory,
removes snapshots that have aged out of the retention window and reports the
outcome. A PID-tagged lock file keeps overlapping runs (for example a
scheduled run and a manual one) from working on the same backup job at once.
"""
from __future__ import annotations

import argparse
import bz2
import configparser
import enum
import gzip
import logging
import os
import re
import shutil
import signal
import socket
import subprocess
import sys
import tarfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from string import Template
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Protocol,
    Tuple,
    cast,
)


CONFIG_SECTION = "backup"
CONFIG_ENV_VAR = "BACKUP_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "~/.backup/backup.conf"
DEFAULT_LOG_FILE = "~/.backup/backup.log"
DEFAULT_LOCK_FILE = "~/.backup/backup.lock"
DEFAULT_PREFIX = "backup"
DEFAULT_COMPRESSION = "gzip"
DEFAULT_EMAIL_SUBJECT = "Backup Report"

ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
READ_CHUNK_SIZE = 1024 * 1024

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"

_SECTION_HEADER = re.compile(r"^\s*\[[^\]]+\]", re.MULTILINE)
_UNSIGNED_INT = re.compile(r"^\d+$")
_INLINE_COMMENT = re.compile(r"\s+#")

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Base class for every failure a backup run can report."""


class ConfigurationError(BackupError):
    """Raised when required configuration is missing or invalid."""


class ConfigNotFound(ConfigurationError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"Configuration file not found: {path}")
        self.path = path


class ConfigInvalid(ConfigurationError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__(
            f"Configuration validation failed with {len(errors)} error(s)."
        )
        self.errors = list(errors)

    @property
    def error_count(self) -> int:
        return len(self.errors)


class DirectoryCreateFailed(ConfigurationError):
    def __init__(self, path: Path, reason: object) -> None:
        super().__init__(f"Failed to create directory {path}: {reason}")
        self.path = path


class LockError(BackupError):
    """Raised when the run lock cannot be taken."""


class LockHeld(LockError):
    def __init__(self, pid: Optional[int]) -> None:
        holder = f"PID: {pid}" if pid is not None else "unknown PID"
        super().__init__(f"Another backup process is running ({holder})")
        self.pid = pid


class LockWriteFailed(LockError):
    def __init__(self, path: Path, reason: object) -> None:
        super().__init__(f"Failed to create lock file {path}: {reason}")
        self.path = path


class ArchiveError(BackupError):
    """Raised when no usable archive could be produced."""


class ArchiveCreationFailed(ArchiveError):
    def __init__(self, path: Path, reason: object) -> None:
        super().__init__(f"Failed to create archive {path.name}: {reason}")
        self.path = path


class ArchiveIntegrityFailed(ArchiveError):
    def __init__(self, path: Path, reason: object) -> None:
        super().__init__(f"Integrity check failed for {path.name}: {reason}")
        self.path = path


class BackupInterrupted(BackupError):
    def __init__(self, signum: int) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Backup interrupted by {name}")
        self.signum = signum


@dataclass(frozen=True)
class BackupConfig:
    source_dir: Optional[Path]
    backup_dir: Optional[Path]
    retention_days: Optional[int]
    retention_text: str = ""
    compression: str = DEFAULT_COMPRESSION
    backup_prefix: str = DEFAULT_PREFIX
    log_file: Path = Path(DEFAULT_LOG_FILE).expanduser()
    lock_file: Path = Path(DEFAULT_LOCK_FILE).expanduser()
    email_enabled: bool = False
    email_to: str = ""
    email_subject: str = DEFAULT_EMAIL_SUBJECT


class CompressionFormat(NamedTuple):
    name: str
    extension: str
    write_mode: str
    read_mode: str
    opener: Callable


COMPRESSION_FORMATS: Dict[str, CompressionFormat] = {
    "gzip": CompressionFormat("gzip", "tar.gz", "w:gz", "r:gz", gzip.open),
    "bzip2": CompressionFormat("bzip2", "tar.bz2", "w:bz2", "r:bz2", bz2.open),
}


@dataclass
class Archive:
    path: Path
    size: int
    created: datetime
    compression: str
    verified: bool = False
    members: List[str] = field(default_factory=list)


@dataclass
class RetentionSummary:
    deleted_count: int = 0
    bytes_freed: int = 0
    deleted: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)


@dataclass
class BackupStatistics:
    total_backups: int
    total_size: int
    oldest: Optional[Path] = None
    newest: Optional[Path] = None


class RunState(enum.Enum):
    INIT = "init"
    LOCKING = "locking"
    VALIDATING = "validating"
    ARCHIVING = "archiving"
    ROTATING = "rotating"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


class RunOutcome(enum.Enum):
    SUCCESS = "success"
    LOCK_FAILURE = "lock_failure"
    VALIDATION_FAILURE = "validation_failure"
    ARCHIVE_FAILURE = "archive_failure"
    INTERRUPTED = "interrupted"
    UNEXPECTED_FAILURE = "unexpected_failure"

    @property
    def notify_status(self) -> str:
        return STATUS_SUCCESS if self is RunOutcome.SUCCESS else STATUS_FAILED


@dataclass
class RunResult:
    outcome: RunOutcome
    message: str
    state: RunState
    archive: Optional[Archive] = None
    retention: Optional[RetentionSummary] = None
    statistics: Optional[BackupStatistics] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome is RunOutcome.SUCCESS else 1


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Create a compressed, verified backup of a directory and prune "
            "archives older than the retention window."
        )
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help=(
            "Path to the backup configuration file "
            f"(default: ${CONFIG_ENV_VAR} or {DEFAULT_CONFIG_FILE})."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


# Configuration


def resolve_config_path(
    cli_value: Optional[Path], environ: Mapping[str, str]
) -> Path:
    if cli_value is not None:
        return cli_value.expanduser()
    override = environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(DEFAULT_CONFIG_FILE).expanduser()


def read_config_file(config_path: Path) -> Dict[str, str]:
    """Read ``KEY=value`` settings without evaluating them.

    Files written for the shell (no section header) are read as if they were
    the ``[backup]`` section of an INI file.
    """
    if not config_path.is_file():
        raise ConfigNotFound(config_path)

    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigurationError(
            f"Config file {config_path} could not be read: {error}"
        ) from error

    if not _SECTION_HEADER.search(text):
        text = f"[{CONFIG_SECTION}]\n{text}"

    # Repeated keys keep the last assignment, as when the file is sourced.
    parser = configparser.ConfigParser(
        interpolation=None, delimiters=("=",), strict=False
    )
    try:
        parser.read_string(text, source=str(config_path))
    except configparser.Error as error:
        raise ConfigurationError(
            f"Config file {config_path} is malformed: {error}"
        ) from error

    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {key: _unquote(value) for key, value in parser[CONFIG_SECTION].items()}


def _unquote(value: str) -> str:
    """Strip surrounding quotes, or a trailing ``# comment`` from a bare value."""
    value = value.strip()
    if value[:1] in ("\"", "'"):
        closing = value.find(value[0], 1)
        if closing != -1:
            return value[1:closing]
    return _INLINE_COMMENT.split(value, 1)[0].strip()


def _expand_path(value: str, environ: Mapping[str, str]) -> Path:
    # $VAR and ${VAR} only; anything else is taken literally.
    expanded = Template(value).safe_substitute(environ)
    return Path(expanded).expanduser()


def build_config(
    file_cfg: Mapping[str, str], environ: Optional[Mapping[str, str]] = None
) -> BackupConfig:
    env: Mapping[str, str] = environ if environ is not None else {}

    def optional_path(key: str) -> Optional[Path]:
        value = file_cfg.get(key, "").strip()
        return _expand_path(value, env) if value else None

    retention_text = file_cfg.get("retention_days", "").strip()
    retention_days = int(retention_text) if _UNSIGNED_INT.match(retention_text) else None

    email_value = file_cfg.get("enable_email", "").strip()
    email_enabled = parse_bool(email_value) if email_value else False

    return BackupConfig(
        source_dir=optional_path("source_dir"),
        backup_dir=optional_path("backup_dir"),
        retention_days=retention_days,
        retention_text=retention_text,
        compression=file_cfg.get("compression", "").strip().lower() or DEFAULT_COMPRESSION,
        backup_prefix=file_cfg.get("backup_prefix", "").strip() or DEFAULT_PREFIX,
        log_file=optional_path("log_file") or _expand_path(DEFAULT_LOG_FILE, env),
        lock_file=optional_path("lock_file") or _expand_path(DEFAULT_LOCK_FILE, env),
        email_enabled=email_enabled,
        email_to=file_cfg.get("email_to", "").strip(),
        email_subject=file_cfg.get("email_subject", "").strip() or DEFAULT_EMAIL_SUBJECT,
    )


def load_config(
    config_path: Path, environ: Optional[Mapping[str, str]] = None
) -> BackupConfig:
    return build_config(read_config_file(config_path), environ)


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def ensure_directory(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise DirectoryCreateFailed(path, error) from error


def validate_config(config: BackupConfig) -> List[str]:
    """Run every configuration check and return one message per failure.

    Checks do not stop at the first problem so a single failed run reports
    everything that needs fixing. The backup directory is created when it
    does not exist yet.
    """
    errors: List[str] = []

    def report(message: str) -> None:
        logger.error("%s", message)
        errors.append(message)

    source = config.source_dir
    if source is None:
        report("SOURCE_DIR is not configured")
    elif not source.is_dir():
        report(f"Source directory does not exist: {source}")
    elif not os.access(source, os.R_OK | os.X_OK):
        report(f"Source directory is not readable: {source}")

    destination = config.backup_dir
    if destination is None:
        report("BACKUP_DIR is not configured")
    else:
        created = True
        if not destination.is_dir():
            logger.info("Creating backup directory: %s", destination)
            try:
                ensure_directory(destination)
            except DirectoryCreateFailed as error:
                report(str(error))
                created = False
        if created and not os.access(destination, os.W_OK):
            report(f"Backup directory is not writable: {destination}")

    if config.retention_days is None or config.retention_days < 1:
        report(f"Invalid retention days: {config.retention_text or '<unset>'}")

    return errors


def ensure_valid(config: BackupConfig) -> None:
    errors = validate_config(config)
    if errors:
        raise ConfigInvalid(errors)


# Locking


def read_lock_pid(lock_path: Path) -> Optional[int]:
    try:
        content = lock_path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    if not _UNSIGNED_INT.match(content):
        return None
    pid = int(content)
    return pid if pid > 0 else None


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


class BackupLock:
    """Lock file holding the PID of the run that owns a backup job.

    A lock left behind by a process that is no longer running is treated as
    stale and replaced. Checking the holder and creating the new file are two
    separate steps, so two runs starting in the same instant on different
    hosts sharing the lock path can both get past the check; the exclusive
    create only guarantees that one of them writes the file.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.acquired = False

    def acquire(self) -> None:
        if self.path.exists():
            pid = read_lock_pid(self.path)
            if pid is not None and is_process_alive(pid):
                logger.error("Another backup process is running (PID: %d)", pid)
                raise LockHeld(pid)
            logger.warning("Removing stale lock file %s", self.path)
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as error:
                logger.error("Failed to remove stale lock file: %s", error)
                raise LockWriteFailed(self.path, error) from error

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            descriptor = os.open(
                self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644
            )
        except FileExistsError as error:
            pid = read_lock_pid(self.path)
            logger.error("Lock file %s was taken by another process", self.path)
            raise LockHeld(pid) from error
        except OSError as error:
            logger.error("Failed to create lock file: %s", error)
            raise LockWriteFailed(self.path, error) from error

        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()}\n")
        self.acquired = True
        logger.info("Lock acquired (PID: %d)", os.getpid())

    def release(self) -> None:
        if not self.acquired:
            return
        self.acquired = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as error:
            logger.warning("Failed to remove lock file %s: %s", self.path, error)
            return
        logger.info("Lock released")

    def __enter__(self) -> "BackupLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


# Archiving


def resolve_compression(name: str) -> CompressionFormat:
    normalized = (name or "").strip().lower()
    fmt = COMPRESSION_FORMATS.get(normalized)
    if fmt is None:
        logger.warning(
            "Unknown compression type '%s', using %s", name, DEFAULT_COMPRESSION
        )
        return COMPRESSION_FORMATS[DEFAULT_COMPRESSION]
    return fmt


def compression_for_path(path: Path) -> Optional[CompressionFormat]:
    for fmt in COMPRESSION_FORMATS.values():
        if path.name.endswith(f".{fmt.extension}"):
            return fmt
    return None


def archive_name(prefix: str, extension: str, timestamp: datetime) -> str:
    return f"{prefix}_{timestamp.strftime(ARCHIVE_TIMESTAMP_FORMAT)}.{extension}"


def _write_tar(archive_path: Path, source_dir: Path, write_mode: str) -> None:
    with tarfile.open(archive_path, write_mode) as tar:
        tar.add(str(source_dir), arcname=source_dir.name, recursive=True)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as error:
        logger.warning("Failed to remove incomplete archive %s: %s", path, error)


def verify_archive(archive_path: Path, fmt: CompressionFormat) -> List[str]:
    """Return the member names of ``archive_path`` after reading it end to end.

    The compressed stream is drained first so truncation and checksum errors
    surface even when the tar index itself still parses.
    """
    try:
        with fmt.opener(archive_path, "rb") as stream:
            while stream.read(READ_CHUNK_SIZE):
                pass
        with tarfile.open(archive_path, fmt.read_mode) as tar:
            members = tar.getnames()
    except (tarfile.TarError, EOFError, OSError, zlib.error) as error:
        raise ArchiveIntegrityFailed(archive_path, error) from error

    if not members:
        raise ArchiveIntegrityFailed(archive_path, "archive contains no entries")
    return members


def create_archive(
    source_dir: Path,
    backup_dir: Path,
    prefix: str,
    compression: str,
    *,
    now: Optional[datetime] = None,
) -> Archive:
    fmt = resolve_compression(compression)
    created = (now or datetime.now()).replace(microsecond=0)
    archive_path = backup_dir / archive_name(prefix, fmt.extension, created)

    logger.info("Starting backup of %s", source_dir)
    logger.info("Backup file: %s", archive_path)

    try:
        _write_tar(archive_path, source_dir, fmt.write_mode)
    except (OSError, tarfile.TarError) as error:
        logger.error("Failed to create backup: %s", error)
        _discard(archive_path)
        raise ArchiveCreationFailed(archive_path, error) from error
    except BaseException:
        _discard(archive_path)
        raise

    try:
        members = verify_archive(archive_path, fmt)
    except ArchiveIntegrityFailed as error:
        logger.error("Backup integrity check failed: %s", error)
        _discard(archive_path)
        raise
    except BaseException:
        _discard(archive_path)
        raise

    size = archive_path.stat().st_size
    logger.info(
        "Backup created and verified (Size: %s, %d entries)",
        format_size(size),
        len(members),
    )
    return Archive(
        path=archive_path,
        size=size,
        created=created,
        compression=fmt.name,
        verified=True,
        members=members,
    )


# Retention


def archive_pattern(prefix: str) -> "re.Pattern[str]":
    extensions = "|".join(
        re.escape(fmt.extension) for fmt in COMPRESSION_FORMATS.values()
    )
    return re.compile(rf"^{re.escape(prefix)}_(\d{{8}}_\d{{6}})\.(?:{extensions})$")


def parse_archive_name(name: str, prefix: str) -> Optional[datetime]:
    match = archive_pattern(prefix).match(name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), ARCHIVE_TIMESTAMP_FORMAT)
    except ValueError:
        return None


def find_archives(
    backup_dir: Path, prefix: str
) -> Tuple[List[Tuple[datetime, Path]], List[Path]]:
    """Split the job's files in ``backup_dir`` into archives and strays.

    Only names starting with ``{prefix}_`` are considered. Those whose
    timestamp cannot be parsed are returned separately and never treated as
    archives.
    """
    archives: List[Tuple[datetime, Path]] = []
    strays: List[Path] = []
    if not backup_dir.is_dir():
        return archives, strays

    for candidate in backup_dir.iterdir():
        if not candidate.name.startswith(f"{prefix}_") or not candidate.is_file():
            continue
        timestamp = parse_archive_name(candidate.name, prefix)
        if timestamp is None:
            strays.append(candidate)
            continue
        archives.append((timestamp, candidate))

    archives.sort(key=lambda item: item[0])
    strays.sort()
    return archives, strays


def rotate_backups(
    backup_dir: Path,
    prefix: str,
    retention_days: int,
    *,
    now: Optional[datetime] = None,
) -> RetentionSummary:
    logger.info("Starting backup rotation (retention: %d days)", retention_days)

    cutoff = ((now or datetime.now()) - timedelta(days=retention_days)).date()
    summary = RetentionSummary()

    archives, strays = find_archives(backup_dir, prefix)
    for stray in strays:
        logger.warning("Skipping file with non-conforming name: %s", stray.name)
    summary.skipped = strays

    for timestamp, path in archives:
        if timestamp.date() >= cutoff:
            continue

        try:
            size = path.stat().st_size
        except OSError as error:
            logger.warning(
                "Could not read size of %s (%s); counting it as 0 bytes",
                path.name,
                error,
            )
            size = 0

        try:
            path.unlink()
        except OSError as error:
            logger.error("Failed to delete old backup %s: %s", path.name, error)
            continue

        logger.info("Deleted old backup: %s", path.name)
        summary.deleted_count += 1
        summary.bytes_freed += size
        summary.deleted.append(path)

    if summary.deleted_count:
        logger.info(
            "Rotation complete: %d old backup(s) deleted, %s freed",
            summary.deleted_count,
            format_size(summary.bytes_freed),
        )
    else:
        logger.info("No old backups to delete")
    return summary


def collect_statistics(backup_dir: Path, prefix: str) -> BackupStatistics:
    archives, _ = find_archives(backup_dir, prefix)
    total_size = 0
    for _, path in archives:
        try:
            total_size += path.stat().st_size
        except OSError:
            continue
    return BackupStatistics(
        total_backups=len(archives),
        total_size=total_size,
        oldest=archives[0][1] if archives else None,
        newest=archives[-1][1] if archives else None,
    )


def log_statistics(stats: BackupStatistics) -> None:
    logger.info("=== Backup Statistics ===")
    logger.info("Total backups: %d", stats.total_backups)
    logger.info("Total size: %s", format_size(stats.total_size))
    if stats.oldest is not None:
        logger.info("Oldest backup: %s", stats.oldest.name)
    if stats.newest is not None:
        logger.info("Newest backup: %s", stats.newest.name)
    logger.info("=========================")


def format_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    value = float(num_bytes)
    for unit in ("KiB", "MiB", "GiB", "TiB"):
        value /= 1024
        if value < 1024 or unit == "TiB":
            return f"{value:.1f} {unit}"
    return f"{num_bytes} B"


# Notification


class Notifier(Protocol):
    def notify(self, status: str, message: str) -> None:
        ...


def format_notification(status: str, message: str, hostname: str) -> str:
    timestamp = datetime.now().strftime(LOG_DATE_FORMAT)
    return (
        f"Backup Status: {status}\n\n"
        f"Timestamp: {timestamp}\n"
        f"Hostname: {hostname}\n\n"
        f"{message}\n"
    )


class MailNotifier:
    """Send run reports through the system ``mail`` command."""

    def __init__(self, config: BackupConfig) -> None:
        self.config = config

    def notify(self, status: str, message: str) -> None:
        if not self.config.email_enabled:
            logger.info("Email notifications disabled")
            return
        if not self.config.email_to:
            logger.warning("EMAIL_TO is not set, skipping email notification")
            return

        mail_command = shutil.which("mail")
        if mail_command is None:
            logger.warning("No mail command available, skipping email notification")
            return

        subject = f"{self.config.email_subject} - {status}"
        body = format_notification(status, message, socket.gethostname())
        try:
            completed = subprocess.run(
                [mail_command, "-s", subject, self.config.email_to],
                input=body,
                text=True,
                capture_output=True,
                timeout=60,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as error:
            logger.warning("Failed to send email notification: %s", error)
            return

        if completed.returncode != 0:
            logger.warning(
                "Failed to send email notification (exit code %d): %s",
                completed.returncode,
                completed.stderr.strip(),
            )
            return
        logger.info("Email notification sent to %s", self.config.email_to)


# Controller


class BackupController:
    """Run one backup job from lock acquisition to notification.

    ``run`` never raises for lock, validation or archive problems; they end
    the run in ``RunState.FAILED`` with the matching ``RunOutcome``. Teardown
    (failure notification and lock release) happens exactly once, including
    when the run is cut short by ``BackupInterrupted`` or ``SystemExit``.
    """

    def __init__(
        self,
        config: BackupConfig,
        *,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.notifier: Notifier = notifier or MailNotifier(config)
        self.clock = clock
        self.state = RunState.INIT
        self.lock = BackupLock(config.lock_file)
        self._torn_down = False

    def run(self) -> RunResult:
        result: Optional[RunResult] = None
        try:
            result = self._execute()
        except BackupInterrupted as error:
            result = self._fail(RunOutcome.INTERRUPTED, str(error))
        except Exception as error:
            logger.exception("Unexpected error during backup")
            result = self._fail(
                RunOutcome.UNEXPECTED_FAILURE,
                f"Backup process encountered an error: {error}. "
                f"Please check logs at {self.config.log_file}",
            )
        finally:
            self._teardown(result)
        return result

    def _transition(self, state: RunState) -> None:
        logger.debug("Backup state %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, outcome: RunOutcome, message: str) -> RunResult:
        self._transition(RunState.FAILED)
        logger.error("%s", message)
        return RunResult(outcome=outcome, message=message, state=self.state)

    def _execute(self) -> RunResult:
        config = self.config

        self._transition(RunState.LOCKING)
        try:
            self.lock.acquire()
        except LockError as error:
            return self._fail(
                RunOutcome.LOCK_FAILURE,
                f"Could not acquire lock - another backup may be running ({error})",
            )

        self._transition(RunState.VALIDATING)
        try:
            ensure_valid(config)
        except ConfigInvalid as error:
            return self._fail(
                RunOutcome.VALIDATION_FAILURE,
                f"Configuration validation failed with {error.error_count} "
                f"error(s). Check logs at {config.log_file}",
            )
        logger.info("Configuration validated")

        source_dir = cast(Path, config.source_dir)
        backup_dir = cast(Path, config.backup_dir)
        retention_days = cast(int, config.retention_days)

        self._transition(RunState.ARCHIVING)
        try:
            archive = create_archive(
                source_dir,
                backup_dir,
                config.backup_prefix,
                config.compression,
                now=self.clock(),
            )
        except ArchiveError as error:
            return self._fail(
                RunOutcome.ARCHIVE_FAILURE,
                f"Backup creation failed: {error}. Check logs at {config.log_file}",
            )
        logger.info("Backup process completed successfully")

        self._transition(RunState.ROTATING)
        retention = rotate_backups(
            backup_dir, config.backup_prefix, retention_days, now=self.clock()
        )

        self._transition(RunState.REPORTING)
        statistics = collect_statistics(backup_dir, config.backup_prefix)
        log_statistics(statistics)

        message = (
            "Backup completed successfully\n\n"
            f"Backup file: {archive.path}\n"
            f"Size: {format_size(archive.size)}\n"
            f"Source: {source_dir}\n"
            f"Destination: {backup_dir}"
        )
        self._notify(STATUS_SUCCESS, message)

        self._transition(RunState.DONE)
        logger.info("All operations completed successfully")
        return RunResult(
            outcome=RunOutcome.SUCCESS,
            message=message,
            state=self.state,
            archive=archive,
            retention=retention,
            statistics=statistics,
        )

    def _notify(self, status: str, message: str) -> None:
        try:
            self.notifier.notify(status, message)
        except Exception as error:
            logger.warning("Failed to send %s notification: %s", status, error)

    def _teardown(self, result: Optional[RunResult]) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        try:
            if result is None:
                if self.state is not RunState.DONE:
                    self._transition(RunState.FAILED)
                logger.error("Backup process terminated before completion")
                self._notify(
                    STATUS_FAILED,
                    "Backup process terminated before completion. "
                    f"Please check logs at {self.config.log_file}",
                )
            elif result.outcome is not RunOutcome.SUCCESS:
                self._notify(result.outcome.notify_status, result.message)
        finally:
            self.lock.release()


# Entry point


def configure_logging(log_level: str, log_file: Optional[Path] = None) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    logging.addLevelName(logging.WARNING, "WARN")
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        ensure_directory(log_file.parent)
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


@contextmanager
def raise_on_termination_signals() -> Iterator[None]:
    """Turn SIGINT/SIGTERM into ``BackupInterrupted`` while the block runs."""

    def _interrupt(signum: int, frame: object) -> None:
        raise BackupInterrupted(signum)

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _interrupt)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def main(
    argv: Optional[Iterable[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    args = parse_args(argv)
    env: Mapping[str, str] = os.environ if environ is None else environ

    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    config_path = resolve_config_path(args.config, env)
    try:
        config = load_config(config_path, env)
    except ConfigNotFound as error:
        logger.error("%s", error)
        logger.error(
            "Please create it or set the %s environment variable", CONFIG_ENV_VAR
        )
        return 2
    except ConfigurationError as error:
        logger.error("%s", error)
        return 2

    try:
        configure_logging(args.log_level, config.log_file)
    except DirectoryCreateFailed as error:
        logger.error("Failed to create log directory: %s", error)
        return 1

    logger.info("=========================================")
    logger.info("Backup process started")
    logger.info("Configuration: %s", config_path)
    logger.info("=========================================")

    with raise_on_termination_signals():
        result = BackupController(config).run()

    if result.exit_code:
        logger.error("Backup failed with exit code %d", result.exit_code)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
