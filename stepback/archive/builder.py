# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Archive Builder - Multi-part zip archives built in bounded batches.

start_archive() walks the source directory once and stores the file list
in the progress record. Every archive_step() call then adds at most
``archive_chunk_size`` entries to the current part, rolling over to a new
part when the next file would push the part past ``max_part_size``.

Parts are named ``filesystem.zip``, ``filesystem_part2.zip``,
``filesystem_part3.zip``, ... and each one is a complete zip archive.
The current part is closed at the end of every call, so the parts on disk
are valid between calls.
"""

import os
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Sequence

import structlog

from stepback.config import EngineConfig
from stepback.errors import explain_step_before_start
from stepback.exceptions import (
    ArchiveInvalidError,
    NoFilesFoundError,
    ProgressError,
    ResourceUnavailableError,
    ValidationError,
)
from stepback.progress import ProgressRecord, ProgressStore
from stepback.session import Session, SessionStatus, mark_session

logger = structlog.get_logger()

ARCHIVE_PROGRESS_NAME = "backup_progress.json"


@dataclass
class FileEntry:
    """One file or directory captured by the initial walk."""

    path: str
    relative: str
    is_dir: bool
    size: int = 0

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "relative": self.relative,
            "isDir": self.is_dir,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileEntry":
        return cls(
            path=data["path"],
            relative=data["relative"],
            is_dir=bool(data["isDir"]),
            size=int(data.get("size", 0)),
        )


@dataclass
class ArchiveProgress(ProgressRecord):
    """Progress of one archive session. totalUnits counts file list entries."""

    file_index: int = field(default=0, metadata={"cursor": True})
    part_index: int = 0
    source_dir: str = ""
    file_list: List[FileEntry] = field(default_factory=list, metadata={"item": FileEntry})
    parts: List[str] = field(default_factory=list)
    backed_up: int = 0
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ArchiveStartResult:
    resumed: bool
    total_files: int
    current_index: int


@dataclass
class ArchiveStepResult:
    """Outcome of one archive_step() call."""

    done: bool
    current_index: int
    total_files: int
    processed_count: int
    skipped_count: int
    backed_up_count: int
    skipped_total: int
    error_count: int
    parts: List[str]
    errors: List[str]
    percent: float


def _store(session: Session) -> ProgressStore[ArchiveProgress]:
    return ProgressStore(session.path(ARCHIVE_PROGRESS_NAME), ArchiveProgress)


def output_dir(session: Session) -> Path:
    """Directory receiving the zip parts."""
    if session.destination_location:
        return Path(session.destination_location)
    return session.work_dir


def part_path(config: EngineConfig, session: Session, index: int) -> Path:
    """
    Path of the zip part with the given zero-based index.

    Index 0 is ``config.zip_name``; index N is ``<base>_part<N+1>.zip``.
    """
    if index == 0:
        return output_dir(session) / config.zip_name
    base = config.zip_name[: -len(".zip")]
    return output_dir(session) / f"{base}_part{index + 1}.zip"


# ============================================================================
# Directory walk
# ============================================================================

def _walk(root: Path, directory: Path, exclude: set, depth: int = 0) -> Iterator[FileEntry]:
    """Depth-first walk, each directory before its children, sorted by name."""
    try:
        with os.scandir(directory) as it:
            children = sorted(it, key=lambda e: e.name)
    except OSError as e:
        if depth == 0:
            raise ResourceUnavailableError(
                f"Cannot read source directory: {e}",
                details={"source_dir": str(directory)},
            )
        logger.warning("archive_scan_dir_unreadable", path=str(directory), error=str(e))
        return

    for child in children:
        if depth == 0 and child.name in exclude:
            continue

        child_path = Path(child.path)
        relative = child_path.relative_to(root).as_posix()

        if child.is_dir(follow_symlinks=False):
            yield FileEntry(path=str(child_path), relative=relative, is_dir=True)
            yield from _walk(root, child_path, exclude, depth + 1)
        elif child.is_file():
            try:
                size = child.stat().st_size
            except OSError:
                size = 0
            yield FileEntry(path=str(child_path), relative=relative, is_dir=False, size=size)


def scan_files(source_dir: Path, exclude: Sequence[str] = ()) -> List[FileEntry]:
    """
    Enumerate every file and directory under ``source_dir``.

    Entries whose first path segment is in ``exclude`` are left out.
    """
    return list(_walk(source_dir, source_dir, set(exclude)))


# ============================================================================
# Part handling
# ============================================================================

class _PartWriter:
    """The currently open zip part and its uncompressed size counter."""

    def __init__(self, config: EngineConfig, session: Session, progress: ArchiveProgress):
        self.config = config
        self.session = session
        self.progress = progress
        self.zip: zipfile.ZipFile | None = None
        self.names: set = set()
        self.part_bytes = 0

    def open(self) -> None:
        path = part_path(self.config, self.session, self.progress.part_index)
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if path.exists() else "w"

        try:
            self.zip = zipfile.ZipFile(path, mode, compression=zipfile.ZIP_DEFLATED)
        except zipfile.BadZipFile as e:
            raise ArchiveInvalidError(
                f"Cannot reopen archive part: {e}",
                details={"part": str(path)},
            )
        except OSError as e:
            raise ResourceUnavailableError(
                f"Cannot open archive part: {e}",
                details={"part": str(path)},
            )

        infos = self.zip.infolist()
        self.names = {info.filename for info in infos}
        self.part_bytes = sum(info.file_size for info in infos)

        if str(path) not in self.progress.parts:
            self.progress.parts.append(str(path))

        logger.debug("archive_part_opened", part=str(path), mode=mode, part_bytes=self.part_bytes)

    def close(self) -> None:
        if self.zip is not None:
            self.zip.close()
            self.zip = None

    def roll_over(self) -> None:
        self.close()
        self.progress.part_index += 1
        self.open()
        logger.info(
            "archive_part_started",
            session_id=self.session.session_id,
            part_index=self.progress.part_index,
        )

    def add(self, entry: FileEntry) -> None:
        """
        Add one entry unless the open part already holds it.

        Raises:
            OSError: If the file is missing or cannot be read
        """
        if entry.is_dir:
            name = entry.relative.rstrip("/") + "/"
            if name not in self.names:
                info = zipfile.ZipInfo(name)
                info.external_attr = (0o40755 << 16) | 0x10  # drwxr-xr-x, MS-DOS dir flag
                self.zip.writestr(info, b"")
                self.names.add(name)
            return

        if entry.relative in self.names:
            return

        source = Path(entry.path)
        if not source.is_file():
            raise FileNotFoundError(f"File not found: {entry.path}")

        size = source.stat().st_size
        max_size = self.config.max_part_size

        # A file larger than a whole part still goes in, alone if need be
        if size < max_size and self.part_bytes + size > max_size and self.part_bytes > 0:
            self.roll_over()
            if entry.relative in self.names:
                return

        self.zip.write(source, entry.relative)
        self.names.add(entry.relative)
        self.part_bytes += size


def _remove_stale_parts(config: EngineConfig, session: Session) -> List[str]:
    """
    Delete parts left at this session's part paths by an earlier archive.

    A fresh file list must never append to another run's zip.
    """
    removed: List[str] = []
    index = 0
    while True:
        path = part_path(config, session, index)
        if not path.exists():
            return removed
        try:
            path.unlink()
        except OSError as e:
            raise ResourceUnavailableError(
                f"Cannot remove existing archive part: {e}",
                details={"part": str(path)},
            )
        removed.append(str(path))
        index += 1


# ============================================================================
# Public API
# ============================================================================

async def start_archive(
    config: EngineConfig,
    session: Session,
    source_dir: Path | str,
    exclude: Sequence[str] = (),
) -> ArchiveStartResult:
    """
    Start an archive, or resume one whose file list was already captured.

    A fresh start deletes any zip parts already sitting at this session's
    part paths; only a resume appends to existing parts.

    Args:
        config: Engine configuration
        session: Session owning the archive
        source_dir: Directory to archive
        exclude: First-level file or directory names to leave out

    Raises:
        ValidationError: If source_dir is empty
        NoFilesFoundError: If the directory is missing or has nothing to archive
    """
    if not source_dir:
        raise ValidationError("source_dir is required")

    store = _store(session)
    existing = await store.load()
    if existing is not None and existing.file_list:
        logger.info(
            "archive_resumed",
            session_id=session.session_id,
            file_index=existing.file_index,
            total_files=len(existing.file_list),
        )
        return ArchiveStartResult(
            resumed=True,
            total_files=len(existing.file_list),
            current_index=existing.file_index,
        )

    source = Path(source_dir)
    if not source.is_dir():
        raise NoFilesFoundError(
            "Source directory does not exist",
            details={"source_dir": str(source)},
        )

    file_list = scan_files(source, exclude)
    if not file_list:
        raise NoFilesFoundError(
            "No files found to archive",
            details={"source_dir": str(source), "exclude": list(exclude)},
        )

    session.ensure_work_dir()
    stale = _remove_stale_parts(config, session)
    if stale:
        logger.warning("archive_stale_parts_removed", session_id=session.session_id, parts=stale)

    progress = ArchiveProgress(
        total_units=len(file_list),
        source_dir=str(source),
        file_list=file_list,
    )
    await store.save(progress)
    await mark_session(session, SessionStatus.RUNNING)

    logger.info(
        "archive_started",
        session_id=session.session_id,
        source_dir=str(source),
        total_files=len(file_list),
        total_bytes=sum(entry.size for entry in file_list),
    )

    return ArchiveStartResult(resumed=False, total_files=len(file_list), current_index=0)


async def archive_step(config: EngineConfig, session: Session) -> ArchiveStepResult:
    """
    Add at most ``config.archive_chunk_size`` entries to the archive.

    Per-entry failures are collected in ``errors`` and the entry is
    recorded as skipped; they never abort the batch.

    Raises:
        ProgressError: If the archive was never started
        ResourceUnavailableError: If the current part cannot be opened
        ArchiveInvalidError: If the current part on disk is corrupt
    """
    store = _store(session)
    progress = await store.load()
    if progress is None or not progress.file_list:
        raise ProgressError(
            explain_step_before_start("archive"),
            details={"session_id": session.session_id},
        )

    total = len(progress.file_list)
    start = progress.file_index
    end = min(start + config.archive_chunk_size, total)
    processed = 0
    skipped = 0

    writer = _PartWriter(config, session, progress)
    writer.open()
    try:
        for entry in progress.file_list[start:end]:
            try:
                writer.add(entry)
            except OSError as e:
                progress.errors.append(f"{entry.relative}: {e}")
                progress.skipped.append(entry.relative)
                skipped += 1
                logger.warning(
                    "archive_entry_failed",
                    session_id=session.session_id,
                    relative=entry.relative,
                    error=str(e),
                )
            else:
                progress.backed_up += 1
                processed += 1
    finally:
        writer.close()

    progress.file_index = end
    progress.advance(end)
    if end >= total:
        progress.mark_done()

    await store.save(progress)

    logger.info(
        "archive_step_completed",
        session_id=session.session_id,
        processed=processed,
        skipped=skipped,
        file_index=end,
        total_files=total,
        part_index=progress.part_index,
        done=progress.done,
    )

    if progress.done:
        await store.delete()
        await mark_session(session, SessionStatus.COMPLETED)

    return ArchiveStepResult(
        done=progress.done,
        current_index=end,
        total_files=total,
        processed_count=processed,
        skipped_count=skipped,
        backed_up_count=progress.backed_up,
        skipped_total=len(progress.skipped),
        error_count=len(progress.errors),
        parts=list(progress.parts),
        errors=list(progress.errors),
        percent=progress.percent,
    )


async def cleanup_archive(config: EngineConfig, session: Session) -> bool:
    """
    Delete the archive progress record. Zip parts are kept.

    Returns:
        True if a record was removed
    """
    return await _store(session).delete()


async def load_archive_progress(config: EngineConfig, session: Session) -> ArchiveProgress | None:
    return await _store(session).load()
