# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Dumper - Chunked, resumable database dump to a JSON-lines log.

The dump log (``backup.sql.jsonl``) is append-only. Each line is one
DumpEntry:

    {"type": "header" | "table_schema" | "row" | "table_finish",
     "table": "...", "statements": [...]}

A table_finish entry follows the last row of a table and carries its
indexes and triggers, so triggers never fire on restored rows.

Every dump_step() call reads at most one chunk of rows from one table,
appends the matching entries and then saves the cursor. The progress
record remembers how many bytes of the log were acknowledged, so a crash
between the append and the save is repaired by truncating the
unacknowledged tail on the next call.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, List, Sequence

import aiofiles
import structlog

from stepback.config import EngineConfig
from stepback.database.adapters import DatabaseAdapter, escape_string, qualify_table
from stepback.errors import explain_step_before_start
from stepback.exceptions import (
    FatalDataError,
    ProgressError,
    SourceUnavailableError,
    StepbackError,
)
from stepback.progress import ProgressRecord, ProgressStore
from stepback.session import Session, SessionStatus, mark_session

logger = structlog.get_logger()

__all__ = [
    "DUMP_LOG_NAME",
    "DumpEntry",
    "DumpProgress",
    "dump_log_path",
    "dump_step",
    "escape_string",
    "finish_dump",
    "load_dump_progress",
    "read_dump_entries",
    "start_dump",
]

DUMP_LOG_NAME = "backup.sql.jsonl"
DUMP_PROGRESS_NAME = "progress.json"

ENTRY_TYPES = ("header", "table_schema", "row", "table_finish")


@dataclass
class DumpEntry:
    """One line of the dump log."""

    type: str
    table: str | None = None
    statements: List[str] = field(default_factory=list)

    def to_json_line(self) -> str:
        data: dict = {"type": self.type}
        if self.table is not None:
            data["table"] = self.table
        data["statements"] = list(self.statements)
        return json.dumps(data, ensure_ascii=False) + "\n"

    @classmethod
    def from_json_line(cls, line: str | bytes) -> "DumpEntry":
        """
        Decode one log line.

        Raises:
            ValueError: If the line is not a well-formed entry
        """
        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError("dump entry is not a JSON object")

        entry_type = data.get("type")
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"unknown dump entry type: {entry_type!r}")

        statements = data.get("statements")
        if not isinstance(statements, list) or not all(isinstance(s, str) for s in statements):
            raise ValueError("dump entry statements must be a list of strings")

        return cls(type=entry_type, table=data.get("table"), statements=statements)


@dataclass
class DumpProgress(ProgressRecord):
    """Progress of one dump session. totalUnits counts tables."""

    table_index: int = field(default=0, metadata={"cursor": True})
    row_offset: int = field(default=0, metadata={"cursor": True})
    tables: List[str] = field(default_factory=list)
    rows_written: int = 0
    log_bytes: int = 0


def dump_log_path(session: Session) -> Path:
    return session.path(DUMP_LOG_NAME)


def _store(session: Session) -> ProgressStore[DumpProgress]:
    return ProgressStore(session.path(DUMP_PROGRESS_NAME), DumpProgress)


async def _append_entries(path: Path, entries: Sequence[DumpEntry]) -> int:
    """Append entries to the log, returning the number of bytes written."""
    if not entries:
        return 0
    payload = "".join(entry.to_json_line() for entry in entries).encode("utf-8")
    async with aiofiles.open(path, "ab") as f:
        await f.write(payload)
        await f.flush()
    return len(payload)


async def _truncate_tail(path: Path, log_bytes: int) -> None:
    """Drop anything past the acknowledged length of the log."""
    if not path.exists():
        if log_bytes:
            raise FatalDataError(
                "Dump log disappeared while the dump was in progress",
                details={"path": str(path), "log_bytes": log_bytes},
            )
        return

    size = path.stat().st_size
    if size < log_bytes:
        raise FatalDataError(
            "Dump log is shorter than the acknowledged length",
            details={"path": str(path), "size": size, "log_bytes": log_bytes},
        )
    if size > log_bytes:
        async with aiofiles.open(path, "r+b") as f:
            await f.truncate(log_bytes)
        logger.warning(
            "dump_log_tail_truncated",
            path=str(path),
            dropped_bytes=size - log_bytes,
        )


async def start_dump(
    config: EngineConfig,
    session: Session,
    db: DatabaseAdapter,
    exclude_tables: Sequence[str] = (),
) -> DumpProgress:
    """
    Start (or restart) a dump.

    Enumerates tables, drops the excluded ones, truncates the dump log
    and writes the connection header entries.

    Args:
        config: Engine configuration
        session: Session owning the dump
        db: Source database
        exclude_tables: Table names, with or without the table prefix

    Returns:
        The initial progress record

    Raises:
        SourceUnavailableError: If the table list cannot be read
    """
    session.ensure_work_dir()

    try:
        tables = await db.list_tables()
    except StepbackError:
        raise
    except Exception as e:
        raise SourceUnavailableError(
            f"Failed to list tables: {e}",
            details={"session_id": session.session_id},
        )

    excluded = {qualify_table(config.table_prefix, name) for name in exclude_tables}
    selected = [table for table in tables if table not in excluded]

    log_path = dump_log_path(session)
    header = DumpEntry(type="header", statements=db.session_header_statements())
    payload = header.to_json_line().encode("utf-8")
    async with aiofiles.open(log_path, "wb") as f:
        await f.write(payload)
        await f.flush()

    progress = DumpProgress(
        total_units=len(selected),
        tables=selected,
        log_bytes=len(payload),
    )
    await _store(session).save(progress)
    await mark_session(session, SessionStatus.RUNNING)

    logger.info(
        "dump_started",
        session_id=session.session_id,
        tables=len(selected),
        excluded=sorted(set(tables) - set(selected)),
    )

    return progress


async def dump_step(
    config: EngineConfig,
    session: Session,
    db: DatabaseAdapter,
) -> DumpProgress:
    """
    Dump at most one chunk of rows.

    Returns:
        The updated progress record; ``done`` is set once every table is dumped

    Raises:
        ProgressError: If the dump was never started
        SourceUnavailableError: If the source cannot be read
        FatalDataError: If the dump log no longer matches the progress record
    """
    store = _store(session)
    progress = await store.load()
    if progress is None:
        raise ProgressError(
            explain_step_before_start("dump"),
            details={"session_id": session.session_id},
        )

    if progress.done:
        return progress

    log_path = dump_log_path(session)
    await _truncate_tail(log_path, progress.log_bytes)

    if progress.table_index >= len(progress.tables):
        progress.mark_done()
        await store.save(progress)
        await mark_session(session, SessionStatus.COMPLETED)
        return progress

    table = progress.tables[progress.table_index]
    chunk = config.db_chunk_size
    entries: List[DumpEntry] = []

    try:
        if progress.row_offset == 0:
            definition = await db.table_schema(table)
            entries.append(
                DumpEntry(
                    type="table_schema",
                    table=table,
                    statements=[db.drop_table_statement(table), *definition],
                )
            )

        # One extra row tells us whether another chunk follows
        rows = await db.fetch_rows(table, chunk + 1, progress.row_offset)

        table_finished = len(rows) <= chunk
        finish = await db.table_finish_statements(table) if table_finished else []
    except StepbackError:
        raise
    except Exception as e:
        raise SourceUnavailableError(
            f"Failed to read table {table}: {e}",
            details={"table": table, "row_offset": progress.row_offset},
        )

    batch = rows[:chunk]
    for row in batch:
        entries.append(
            DumpEntry(type="row", table=table, statements=[db.insert_statement(table, row)])
        )
    if finish:
        entries.append(DumpEntry(type="table_finish", table=table, statements=finish))

    progress.log_bytes += await _append_entries(log_path, entries)
    progress.rows_written += len(batch)

    if not table_finished:
        progress.row_offset += chunk
    else:
        progress.table_index += 1
        progress.row_offset = 0
        progress.advance(progress.table_index)

    if progress.table_index >= len(progress.tables):
        progress.mark_done()

    await store.save(progress)

    logger.info(
        "dump_step_completed",
        session_id=session.session_id,
        table=table,
        rows=len(batch),
        table_index=progress.table_index,
        row_offset=progress.row_offset,
        done=progress.done,
    )

    if progress.done:
        await mark_session(session, SessionStatus.COMPLETED)

    return progress


async def finish_dump(config: EngineConfig, session: Session) -> bool:
    """
    Delete the dump progress record. The dump log is kept.

    Returns:
        True if a record was removed
    """
    removed = await _store(session).delete()
    logger.info("dump_finished", session_id=session.session_id, log=str(dump_log_path(session)))
    return removed


async def load_dump_progress(config: EngineConfig, session: Session) -> DumpProgress | None:
    return await _store(session).load()


async def read_dump_entries(
    path: Path,
    skip_invalid: bool = False,
) -> AsyncIterator[DumpEntry]:
    """
    Read a dump log sequentially.

    Args:
        path: Dump log path
        skip_invalid: Skip undecodable lines instead of raising

    Raises:
        FatalDataError: On an undecodable line, unless skip_invalid is set
    """
    line_number = 0
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        async for line in f:
            line_number += 1
            if not line.strip():
                continue
            try:
                yield DumpEntry.from_json_line(line)
            except ValueError as e:
                if skip_invalid:
                    continue
                raise FatalDataError(
                    f"Invalid dump entry at line {line_number}: {e}",
                    details={"path": str(path), "line": line_number},
                )
