# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Archive Extractor - Bounded-batch zip extraction.

Each extract_step() call re-opens the archive and extracts the entries in
the window ``[entry_index, entry_index + extract_batch_size)``. A missing
progress record means "start at entry 0", so calling start_extract() is
optional.

Filtering:
- ``exclude``: first path segments to skip (e.g. ".git")
- ``include_only``: if given, only entries under one of these path
  prefixes are extracted (e.g. "wp-content/themes")
"""

import os
import shutil
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import List, Sequence

import structlog

from stepback.config import EngineConfig
from stepback.exceptions import (
    ArchiveInvalidError,
    ResourceUnavailableError,
    ValidationError,
)
from stepback.progress import ProgressRecord, ProgressStore
from stepback.session import Session, SessionStatus, mark_session

logger = structlog.get_logger()

EXTRACT_PROGRESS_NAME = "extract-progress.json"


@dataclass
class ExtractProgress(ProgressRecord):
    """Progress of one extraction. totalUnits counts archive entries."""

    entry_index: int = field(default=0, metadata={"cursor": True})
    zip_path: str = ""
    destination: str = ""
    restored: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ExtractStepResult:
    """Outcome of one extract_step() call (counts are for this call)."""

    done: bool
    current_index: int
    total_entries: int
    restored_count: int
    skipped_count: int
    error_count: int
    errors: List[str]
    percent: float


@dataclass
class ArchiveMember:
    name: str
    size: int
    compressed_size: int
    is_dir: bool
    modified_time: str


def _store(session: Session) -> ProgressStore[ExtractProgress]:
    return ProgressStore(session.path(EXTRACT_PROGRESS_NAME), ExtractProgress)


def _open_archive(zip_path: Path) -> zipfile.ZipFile:
    if not zip_path.is_file():
        raise ResourceUnavailableError(
            "Archive not found",
            details={"zip_path": str(zip_path)},
            kind="archive_missing",
        )
    try:
        return zipfile.ZipFile(zip_path, "r")
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveInvalidError(
            f"Cannot open archive: {e}",
            details={"zip_path": str(zip_path)},
        )


def _ensure_destination(destination: Path) -> None:
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ResourceUnavailableError(
            f"Cannot create destination directory: {e}",
            details={"destination": str(destination)},
        )


def is_excluded(name: str, exclude: Sequence[str]) -> bool:
    """True if the first path segment of ``name`` is excluded."""
    if not exclude:
        return False
    return name.split("/", 1)[0] in exclude


def is_included(name: str, include_only: Sequence[str]) -> bool:
    """True if ``include_only`` is empty or one of its paths is a prefix of ``name``."""
    if not include_only:
        return True
    for include_path in include_only:
        prefix = include_path.strip("/")
        if not prefix:
            return True
        if name == prefix or name.rstrip("/") == prefix or name.startswith(prefix + "/"):
            return True
    return False


def safe_target(destination: Path, name: str) -> Path:
    """
    Resolve an entry name under ``destination``.

    Raises:
        ValueError: If the name is absolute or climbs out with ".."
    """
    normalized = name.replace("\\", "/")
    pure = PurePosixPath(normalized)
    if pure.is_absolute() or (len(normalized) > 1 and normalized[1] == ":"):
        raise ValueError(f"Unsafe absolute path in archive: {name}")
    if ".." in pure.parts:
        raise ValueError(f"Unsafe relative path in archive: {name}")
    return destination.joinpath(*pure.parts)


def _extract_entry(
    archive: zipfile.ZipFile,
    info: zipfile.ZipInfo,
    destination: Path,
    overwrite: bool,
) -> None:
    """
    Extract one entry.

    Raises:
        FileExistsError: If the file exists and overwrite is off
        OSError, ValueError: On unsafe names or write failures
    """
    target = safe_target(destination, info.filename)

    if info.is_dir():
        target.mkdir(parents=True, exist_ok=True)
        return

    if target.exists() and not overwrite:
        raise FileExistsError(f"File already exists and overwrite is disabled: {target}")

    target.parent.mkdir(parents=True, exist_ok=True)

    with archive.open(info) as source, open(target, "wb") as sink:
        shutil.copyfileobj(source, sink)
        written = sink.tell()

    if written != info.file_size:
        raise OSError(
            f"Short write for {info.filename}: {written} of {info.file_size} bytes"
        )

    mode = (info.external_attr >> 16) & 0o777
    if mode:
        try:
            os.chmod(target, mode)
        except OSError as e:
            logger.debug("extract_chmod_failed", path=str(target), error=str(e))


async def start_extract(
    config: EngineConfig,
    session: Session,
    zip_path: Path | str,
    destination: Path | str,
) -> ExtractProgress:
    """
    Validate inputs and record an extraction at entry 0.

    Raises:
        ValidationError: If zip_path or destination is empty
        ResourceUnavailableError: If the destination cannot be created
        ArchiveInvalidError: If the archive cannot be opened
    """
    if not zip_path:
        raise ValidationError("zip_path is required")
    if not destination:
        raise ValidationError("destination is required")

    zip_path = Path(zip_path)
    destination = Path(destination)
    _ensure_destination(destination)

    with _open_archive(zip_path) as archive:
        total = len(archive.infolist())

    progress = ExtractProgress(
        total_units=total,
        zip_path=str(zip_path),
        destination=str(destination),
    )
    await _store(session).save(progress)
    await mark_session(session, SessionStatus.RUNNING)

    logger.info(
        "extract_started",
        session_id=session.session_id,
        zip_path=str(zip_path),
        destination=str(destination),
        total_entries=total,
    )

    return progress


async def extract_step(
    config: EngineConfig,
    session: Session,
    zip_path: Path | str,
    destination: Path | str,
    exclude: Sequence[str] = (),
    include_only: Sequence[str] = (),
    overwrite_existing: bool | None = None,
) -> ExtractStepResult:
    """
    Extract at most ``config.extract_batch_size`` entries.

    Args:
        config: Engine configuration
        session: Session owning the extraction
        zip_path: Archive to extract
        destination: Target directory
        exclude: First-level names to skip
        include_only: Path prefixes to restrict extraction to
        overwrite_existing: Replace existing files (default: config.overwrite_existing)

    Returns:
        Counts for this call and whether the archive is fully processed
    """
    zip_path = Path(zip_path)
    destination = Path(destination)
    overwrite = config.overwrite_existing if overwrite_existing is None else overwrite_existing

    store = _store(session)
    progress = await store.load()
    if progress is None:
        progress = ExtractProgress(zip_path=str(zip_path), destination=str(destination))

    _ensure_destination(destination)

    restored = 0
    skipped = 0
    errors: List[str] = []

    with _open_archive(zip_path) as archive:
        infos = archive.infolist()
        total = len(infos)
        progress.total_units = total

        start = progress.entry_index
        end = min(start + config.extract_batch_size, total)

        for info in infos[start:end]:
            name = info.filename

            if is_excluded(name, exclude) or not is_included(name, include_only):
                skipped += 1
                continue

            try:
                _extract_entry(archive, info, destination, overwrite)
            except (OSError, ValueError, RuntimeError, zipfile.BadZipFile) as e:
                errors.append(f"{name}: {e}")
                logger.warning(
                    "extract_entry_failed",
                    session_id=session.session_id,
                    entry=name,
                    error=str(e),
                )
            else:
                restored += 1
                logger.debug("extract_entry_restored", entry=name)

    progress.entry_index = end
    progress.advance(end)
    progress.restored += restored
    progress.skipped += skipped
    progress.errors.extend(errors)
    if end >= total:
        progress.mark_done()

    await store.save(progress)

    logger.info(
        "extract_step_completed",
        session_id=session.session_id,
        restored=restored,
        skipped=skipped,
        errors=len(errors),
        entry_index=end,
        total_entries=total,
        done=progress.done,
    )

    if progress.done:
        await store.delete()
        await mark_session(session, SessionStatus.COMPLETED)

    return ExtractStepResult(
        done=progress.done,
        current_index=end,
        total_entries=total,
        restored_count=restored,
        skipped_count=skipped,
        error_count=len(errors),
        errors=errors,
        percent=progress.percent,
    )


def list_archive_contents(zip_path: Path | str) -> List[ArchiveMember]:
    """
    List the entries of an archive without extracting anything.

    Raises:
        ArchiveInvalidError: If the archive cannot be opened
    """
    with _open_archive(Path(zip_path)) as archive:
        return [
            ArchiveMember(
                name=info.filename,
                size=info.file_size,
                compressed_size=info.compress_size,
                is_dir=info.is_dir(),
                modified_time=datetime(*info.date_time).isoformat(),
            )
            for info in archive.infolist()
        ]


def validate_archive(zip_path: Path | str) -> int:
    """
    Check every entry's CRC.

    Returns:
        Number of entries in the archive

    Raises:
        ArchiveInvalidError: If the archive is unreadable or an entry is corrupt
    """
    with _open_archive(Path(zip_path)) as archive:
        try:
            bad = archive.testzip()
        except (zipfile.BadZipFile, OSError, RuntimeError) as e:
            raise ArchiveInvalidError(
                f"Archive is corrupt: {e}",
                details={"zip_path": str(zip_path)},
            )
        if bad is not None:
            raise ArchiveInvalidError(
                f"Corrupt entry in archive: {bad}",
                details={"zip_path": str(zip_path), "entry": bad},
            )
        return len(archive.infolist())


async def cleanup_extract(config: EngineConfig, session: Session) -> bool:
    """
    Delete the extract progress record.

    Returns:
        True if a record was removed
    """
    return await _store(session).delete()


async def load_extract_progress(config: EngineConfig, session: Session) -> ExtractProgress | None:
    return await _store(session).load()
