# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Downloader - Resumable byte-range download of one remote file.

start_download() probes the remote size with ``Range: bytes=0-0``.
Every download_step() call then fetches one byte range into
``chunks/part-<n>`` and, once the last range is on disk, concatenates the
parts into the final file.

A part that already exists with exactly the expected size is never
fetched again, so a step interrupted after writing its part but before
saving progress resumes without touching the network.
"""

import math
import os
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import urlparse

import aiofiles
import httpx
import structlog

from stepback.config import MIB, EngineConfig
from stepback.errors import explain_step_before_start
from stepback.exceptions import (
    CannotDetermineSizeError,
    ChunkMissingError,
    FatalDataError,
    HTTPStatusError,
    ProgressError,
    ResourceUnavailableError,
    SizeMismatchError,
    TransferError,
    ValidationError,
)
from stepback.progress import ProgressRecord, ProgressStore
from stepback.session import Session, SessionStatus, mark_session

logger = structlog.get_logger()

CHUNK_DIR_NAME = "chunks"
DOWNLOAD_PROGRESS_NAME = "__download-progress.json"
MERGE_BUFFER_SIZE = MIB


class DownloadStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class DownloadProgress(ProgressRecord):
    """Progress of one download. totalUnits is the remote size in bytes."""

    byte_offset: int = field(default=0, metadata={"cursor": True})
    status: str = DownloadStatus.PENDING.value
    remote_url: str = ""
    chunk_size: int = 0
    final_path: str = ""
    chunks_fetched: int = 0
    chunks_cached: int = 0
    last_error: str | None = None


@dataclass
class DownloadResult:
    """Outcome of one download_step() call."""

    done: bool
    status: str
    total_size: int
    downloaded_size: int
    percent: float
    chunk_count: int
    cached: bool
    file_path: str


def chunk_dir(session: Session) -> Path:
    return session.work_dir / CHUNK_DIR_NAME


def chunk_path(session: Session, index: int) -> Path:
    return chunk_dir(session) / f"part-{index}"


def _store(session: Session) -> ProgressStore[DownloadProgress]:
    return ProgressStore(chunk_dir(session) / DOWNLOAD_PROGRESS_NAME, DownloadProgress)


def _chunk_count(progress: DownloadProgress) -> int:
    if not progress.total_units:
        return 0
    return math.ceil(progress.total_units / progress.chunk_size)


def _result(progress: DownloadProgress, cached: bool = False) -> DownloadResult:
    return DownloadResult(
        done=progress.status == DownloadStatus.COMPLETED.value,
        status=progress.status,
        total_size=progress.total_units or 0,
        downloaded_size=progress.byte_offset,
        percent=progress.percent,
        chunk_count=_chunk_count(progress),
        cached=cached,
        file_path=progress.final_path,
    )


@asynccontextmanager
async def _client_scope(
    client: httpx.AsyncClient | None,
    timeout: float,
) -> AsyncIterator[httpx.AsyncClient]:
    """Use the caller's client, or open (and close) a private one."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
        yield owned


def parse_total_size(status_code: int, headers: httpx.Headers) -> int:
    """
    Read the full resource size from a probe response.

    ``Content-Range: bytes 0-0/12345`` wins; ``Content-Length`` is only
    trusted on a 200, where it describes the whole body.

    Raises:
        CannotDetermineSizeError: If neither header gives a size
    """
    content_range = headers.get("content-range")
    if content_range and "/" in content_range:
        total = content_range.rsplit("/", 1)[1].strip()
        if total.isdigit():
            return int(total)

    content_length = headers.get("content-length")
    if status_code == 200 and content_length and content_length.strip().isdigit():
        return int(content_length)

    raise CannotDetermineSizeError(
        "Cannot determine remote file size",
        details={
            "status_code": status_code,
            "content_range": content_range,
            "content_length": content_length,
        },
    )


def _validate_url(remote_url: str) -> None:
    parsed = urlparse(remote_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(
            "remote_url must be an absolute http(s) URL",
            details={"remote_url": remote_url},
        )


async def _probe_size(client: httpx.AsyncClient, remote_url: str, timeout: float) -> int:
    try:
        async with client.stream(
            "GET",
            remote_url,
            headers={"Range": "bytes=0-0"},
            timeout=timeout,
        ) as response:
            if response.status_code not in (200, 206):
                raise HTTPStatusError(
                    f"Size probe failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                    details={"remote_url": remote_url},
                )
            return parse_total_size(response.status_code, response.headers)
    except httpx.HTTPError as e:
        raise TransferError(
            f"Size probe failed: {e}",
            details={"remote_url": remote_url},
        )


async def _fetch_chunk(
    client: httpx.AsyncClient,
    progress: DownloadProgress,
    start: int,
    end: int,
    target: Path,
    timeout: float,
) -> None:
    """
    Fetch bytes ``start..end`` (inclusive) into ``target``.

    Raises:
        HTTPStatusError: On any status other than 206 (or 200 for the whole file)
        TransferError: On transport failures or a body of the wrong length
    """
    expected = end - start + 1
    whole_file = start == 0 and end == (progress.total_units or 0) - 1
    temp_path = target.with_name(target.name + ".tmp")
    written = 0

    try:
        async with client.stream(
            "GET",
            progress.remote_url,
            headers={"Range": f"bytes={start}-{end}"},
            timeout=timeout,
        ) as response:
            status = response.status_code
            if status != 206 and not (status == 200 and whole_file):
                raise HTTPStatusError(
                    f"Chunk request failed with HTTP {status}",
                    status_code=status,
                    details={"range": f"{start}-{end}"},
                )

            async with aiofiles.open(temp_path, "wb") as f:
                async for data in response.aiter_bytes():
                    written += len(data)
                    if written > expected:
                        break
                    await f.write(data)
    except httpx.HTTPError as e:
        temp_path.unlink(missing_ok=True)
        raise TransferError(
            f"Chunk request failed: {e}",
            details={"range": f"{start}-{end}"},
        )
    except HTTPStatusError:
        temp_path.unlink(missing_ok=True)
        raise

    if written != expected:
        temp_path.unlink(missing_ok=True)
        raise TransferError(
            f"Chunk body has {written} bytes, expected {expected}",
            details={"range": f"{start}-{end}", "received": written, "expected": expected},
        )

    os.replace(temp_path, target)


async def _merge_chunks(session: Session, progress: DownloadProgress) -> None:
    """
    Concatenate every part into the final file and check its size.

    Raises:
        ChunkMissingError: If a part is missing
        SizeMismatchError: If the merged size differs from the remote size
    """
    final_path = Path(progress.final_path)
    final_path.parent.mkdir(parents=True, exist_ok=True)
    total = progress.total_units or 0

    async with aiofiles.open(final_path, "wb") as out:
        for index in range(_chunk_count(progress)):
            part = chunk_path(session, index)
            if not part.is_file():
                raise ChunkMissingError(
                    f"Chunk {index} is missing",
                    details={"chunk": str(part)},
                )
            async with aiofiles.open(part, "rb") as src:
                while True:
                    data = await src.read(MERGE_BUFFER_SIZE)
                    if not data:
                        break
                    await out.write(data)

    merged = final_path.stat().st_size
    if merged != total:
        raise SizeMismatchError(
            f"Merged file has {merged} bytes, expected {total}",
            details={"final_path": str(final_path), "merged": merged, "expected": total},
        )


# ============================================================================
# Public API
# ============================================================================

async def start_download(
    config: EngineConfig,
    session: Session,
    remote_url: str,
    final_path: Path | str,
    client: httpx.AsyncClient | None = None,
    chunk_size: int | None = None,
) -> DownloadProgress:
    """
    Probe the remote size and record a download at offset 0.

    Parts already present in the chunk directory are kept; download_step()
    reuses those whose size matches.

    Args:
        config: Engine configuration
        session: Session owning the download
        remote_url: http(s) URL of the file
        final_path: Where the merged file is written
        client: Optional httpx client (tests pass one with a MockTransport)
        chunk_size: Bytes per range (default: config.download_chunk_size)

    Raises:
        ValidationError: On a bad URL, final path or chunk size
        HTTPStatusError: If the probe status is not 200/206
        CannotDetermineSizeError: If the probe carries no usable size
        TransferError: On transport failures
    """
    _validate_url(remote_url)
    if not final_path:
        raise ValidationError("final_path is required")

    size = chunk_size if chunk_size is not None else config.download_chunk_size
    if size < 1:
        raise ValidationError("chunk_size must be a positive integer", details={"chunk_size": size})

    directory = chunk_dir(session)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ResourceUnavailableError(
            f"Cannot create chunk directory: {e}",
            details={"chunk_dir": str(directory)},
        )

    async with _client_scope(client, config.download_timeout) as http:
        total = await _probe_size(http, remote_url, config.probe_timeout)

    progress = DownloadProgress(
        total_units=total,
        status=DownloadStatus.DOWNLOADING.value,
        remote_url=remote_url,
        chunk_size=size,
        final_path=str(final_path),
    )
    await _store(session).save(progress)
    await mark_session(session, SessionStatus.RUNNING)

    logger.info(
        "download_started",
        session_id=session.session_id,
        remote_url=remote_url,
        total_size=total,
        chunk_size=size,
        chunks=_chunk_count(progress),
    )

    return progress


async def download_step(
    config: EngineConfig,
    session: Session,
    client: httpx.AsyncClient | None = None,
) -> DownloadResult:
    """
    Fetch the next byte range, merging once the last range is on disk.

    On a transfer error the cursor is left unchanged; call again to retry.

    Raises:
        ProgressError: If the download was never started
        TransferError: On network failures or unexpected statuses
        FatalDataError: If merging failed (now or on an earlier call)
    """
    store = _store(session)
    progress = await store.load()
    if progress is None:
        raise ProgressError(
            explain_step_before_start("download"),
            details={"session_id": session.session_id},
        )

    if progress.status == DownloadStatus.COMPLETED.value:
        return _result(progress)

    if progress.status == DownloadStatus.FAILED.value:
        raise FatalDataError(
            f"Download failed and needs attention: {progress.last_error}",
            details={"session_id": session.session_id},
        )

    total = progress.total_units or 0
    cached = False

    if progress.byte_offset < total:
        start = progress.byte_offset
        end = min(start + progress.chunk_size, total) - 1
        index = start // progress.chunk_size
        target = chunk_path(session, index)
        expected = end - start + 1

        if target.is_file() and target.stat().st_size == expected:
            cached = True
            progress.chunks_cached += 1
            logger.debug("download_chunk_cached", session_id=session.session_id, chunk=index)
        else:
            try:
                async with _client_scope(client, config.download_timeout) as http:
                    await _fetch_chunk(http, progress, start, end, target, config.download_timeout)
            except TransferError as e:
                progress.last_error = e.message
                await store.save(progress)
                logger.warning(
                    "download_chunk_failed",
                    session_id=session.session_id,
                    chunk=index,
                    error=e.message,
                )
                raise
            progress.chunks_fetched += 1

        progress.byte_offset = end + 1
        progress.advance(progress.byte_offset)
        progress.last_error = None

        logger.info(
            "download_chunk_completed",
            session_id=session.session_id,
            chunk=index,
            cached=cached,
            byte_offset=progress.byte_offset,
            total_size=total,
        )

    if progress.byte_offset >= total:
        try:
            await _merge_chunks(session, progress)
        except FatalDataError as e:
            progress.status = DownloadStatus.FAILED.value
            progress.last_error = e.message
            await store.save(progress)
            await mark_session(session, SessionStatus.FAILED)
            logger.error("download_merge_failed", session_id=session.session_id, error=e.message)
            raise

        progress.status = DownloadStatus.COMPLETED.value
        progress.mark_done()
        await store.save(progress)
        await mark_session(session, SessionStatus.COMPLETED)

        logger.info(
            "download_completed",
            session_id=session.session_id,
            final_path=progress.final_path,
            total_size=total,
            chunks_fetched=progress.chunks_fetched,
            chunks_cached=progress.chunks_cached,
        )
    else:
        await store.save(progress)

    return _result(progress, cached=cached)


async def get_download_progress(config: EngineConfig, session: Session) -> DownloadProgress | None:
    return await _store(session).load()


async def is_download_complete(config: EngineConfig, session: Session) -> bool:
    progress = await _store(session).load()
    return progress is not None and progress.status == DownloadStatus.COMPLETED.value


async def cleanup_download(
    config: EngineConfig,
    session: Session,
    keep_final: bool = True,
) -> bool:
    """
    Remove the chunk directory, and the merged file unless keep_final.

    Returns:
        True if anything was removed
    """
    progress = await _store(session).load()
    removed = False

    directory = chunk_dir(session)
    if directory.exists():
        shutil.rmtree(directory)
        removed = True

    if not keep_final and progress is not None and progress.final_path:
        final_path = Path(progress.final_path)
        if final_path.exists():
            final_path.unlink()
            removed = True

    logger.info(
        "download_cleaned_up",
        session_id=session.session_id,
        keep_final=keep_final,
        removed=removed,
    )
    return removed
