# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Restorer - Chunked, idempotent replay of a dump log.

Each restore_step() call seeks to the saved byte offset, reads a bounded
number of lines and executes their statements inside one transaction.
A failing statement rolls the whole chunk back and leaves the saved
offset where it was, so the next call retries the same chunk.

Errors of the "already exists / duplicate" class are treated as success,
which makes a restore safe to re-run over a partially restored database.
A human-readable ``restore.log`` in the session directory records every
skipped and fatal statement.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

import aiofiles
import structlog

from stepback.config import EngineConfig
from stepback.database.adapters import DatabaseAdapter, qualify_table
from stepback.database.dumper import DumpEntry, dump_log_path
from stepback.errors import explain_step_before_start
from stepback.exceptions import (
    ProgressError,
    ResourceUnavailableError,
    RestoreQueryError,
)
from stepback.progress import ProgressRecord, ProgressStore
from stepback.session import Session, SessionStatus, mark_session

logger = structlog.get_logger()

RESTORE_PROGRESS_NAME = "restore-progress.json"
RESTORE_LOG_NAME = "restore.log"

_INVALID_ADD_CLAUSE = re.compile(r"ADD\s+``\s*\(\s*``\s*\)")


@dataclass
class RestoreProgress(ProgressRecord):
    """Progress of one restore session. totalUnits is the dump size in bytes."""

    byte_offset: int = field(default=0, metadata={"cursor": True})
    line_number: int = field(default=0, metadata={"cursor": True})
    dump_path: str = ""
    statements_executed: int = 0
    statements_skipped: int = 0
    duplicates_ignored: int = 0
    invalid_lines: int = 0


# ============================================================================
# Statement rewriting
# ============================================================================

def rewrite_prefix(statement: str, old_prefix: str | None, new_prefix: str) -> str:
    """
    Replace every whole token starting with ``old_prefix`` by ``new_prefix``.

    ``wp_posts`` becomes ``site2_posts``; ``my_wp_posts`` is left alone.
    """
    if not old_prefix or old_prefix == new_prefix:
        return statement

    pattern = re.compile(r"\b" + re.escape(old_prefix) + r"([A-Za-z0-9_]+)\b", re.IGNORECASE)
    return pattern.sub(lambda m: new_prefix + m.group(1), statement)


def normalize_options_statement(statement: str, options_table: str) -> str:
    """Turn an INSERT into the options table into a REPLACE."""
    pattern = re.compile(
        r"^(\s*)INSERT\s+INTO(\s+([`\"]?)" + re.escape(options_table) + r"\3(?![A-Za-z0-9_]))",
        re.IGNORECASE,
    )
    return pattern.sub(r"\1REPLACE INTO\2", statement, count=1)


def references_excluded_table(statement: str, excluded: Iterable[str]) -> bool:
    """True if any excluded table name appears as a whole token."""
    for table in excluded:
        if not table:
            continue
        pattern = r"(?<![A-Za-z0-9_])" + re.escape(table) + r"(?![A-Za-z0-9_])"
        if re.search(pattern, statement, re.IGNORECASE):
            return True
    return False


# ============================================================================
# Helpers
# ============================================================================

def _store(session: Session) -> ProgressStore[RestoreProgress]:
    return ProgressStore(session.path(RESTORE_PROGRESS_NAME), RestoreProgress)


def restore_log_path(session: Session) -> Path:
    return session.path(RESTORE_LOG_NAME)


async def _log(session: Session, message: str) -> None:
    session.ensure_work_dir()
    async with aiofiles.open(restore_log_path(session), "a", encoding="utf-8") as f:
        await f.write(message + "\n")


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


async def _read_chunk(
    path: Path,
    byte_offset: int,
    max_lines: int,
) -> Tuple[List[Tuple[int, bytes]], int]:
    """
    Read up to ``max_lines`` raw lines starting at ``byte_offset``.

    Returns:
        ([(relative line number, raw line), ...], new byte offset)
    """
    lines: List[Tuple[int, bytes]] = []
    offset = byte_offset

    async with aiofiles.open(path, "rb") as f:
        await f.seek(byte_offset)
        while len(lines) < max_lines:
            raw = await f.readline()
            if not raw:
                break
            offset += len(raw)
            lines.append((len(lines) + 1, raw))

    return lines, offset


# ============================================================================
# Public API
# ============================================================================

async def start_restore(
    config: EngineConfig,
    session: Session,
    dump_path: Path | str | None = None,
) -> RestoreProgress:
    """
    Start (or restart) a restore from the beginning of the dump log.

    Args:
        config: Engine configuration
        session: Session owning the restore
        dump_path: Dump log to replay (default: the session's own dump log)

    Raises:
        ResourceUnavailableError: kind "dump_missing" if the log does not exist
    """
    path = Path(dump_path) if dump_path else dump_log_path(session)
    if not path.is_file():
        raise ResourceUnavailableError(
            "Dump log not found",
            details={"path": str(path)},
            kind="dump_missing",
        )

    progress = RestoreProgress(
        total_units=path.stat().st_size,
        dump_path=str(path),
    )
    await _store(session).save(progress)
    await _log(session, f"== Restore started at {_timestamp()} ==")
    await mark_session(session, SessionStatus.RUNNING)

    logger.info(
        "restore_started",
        session_id=session.session_id,
        dump_path=str(path),
        total_bytes=progress.total_units,
    )

    return progress


async def restore_step(
    config: EngineConfig,
    session: Session,
    db: DatabaseAdapter,
    source_prefix: str | None = None,
    exclude_tables: Sequence[str] = (),
) -> RestoreProgress:
    """
    Replay at most ``config.restore_chunk_lines`` lines of the dump log.

    Args:
        config: Engine configuration (its table_prefix is the destination prefix)
        session: Session owning the restore
        db: Destination database
        source_prefix: Table prefix recorded in the dump, rewritten to the
                       destination prefix when it differs
        exclude_tables: Tables whose statements are skipped

    Returns:
        The updated progress record

    Raises:
        ProgressError: If the restore was never started
        ResourceUnavailableError: If the dump log disappeared
        RestoreQueryError: If a statement fails with a non-duplicate error
    """
    store = _store(session)
    progress = await store.load()
    if progress is None:
        raise ProgressError(
            explain_step_before_start("restore"),
            details={"session_id": session.session_id},
        )

    if progress.done:
        return progress

    path = Path(progress.dump_path)
    if not path.is_file():
        raise ResourceUnavailableError(
            "Dump log not found",
            details={"path": str(path)},
            kind="dump_missing",
        )

    file_size = path.stat().st_size
    lines, new_offset = await _read_chunk(path, progress.byte_offset, config.restore_chunk_lines)

    destination_prefix = config.table_prefix
    options_table = config.options_table_name
    excluded = [qualify_table(destination_prefix, name) for name in exclude_tables]
    excluded_names = {name.lower() for name in excluded}

    # Decode and rewrite everything before touching the database
    statements: List[Tuple[int, str]] = []
    invalid = 0
    skipped = 0

    for relative, raw in lines:
        line_number = progress.line_number + relative
        if not raw.strip():
            continue

        try:
            entry = DumpEntry.from_json_line(raw.decode("utf-8"))
        except ValueError as e:
            invalid += 1
            await _log(session, f"[Skip] Invalid entry at line {line_number}: {e}")
            logger.warning("restore_invalid_line", session_id=session.session_id, line=line_number)
            continue

        # Entries tied to a table are excluded by that table, never by their values
        if entry.table is not None:
            target = qualify_table(
                destination_prefix,
                rewrite_prefix(entry.table, source_prefix, destination_prefix),
            )
            if target.lower() in excluded_names:
                skipped += len(entry.statements)
                continue

        for statement in entry.statements:
            sql = rewrite_prefix(statement, source_prefix, destination_prefix)
            sql = normalize_options_statement(sql, options_table)

            if entry.table is None and excluded and references_excluded_table(sql, excluded):
                skipped += 1
                continue

            if _INVALID_ADD_CLAUSE.search(sql):
                skipped += 1
                await _log(session, f"[Skip] Invalid ADD clause at line {line_number}")
                logger.warning("restore_invalid_add_clause", line=line_number)
                continue

            statements.append((line_number, sql))

    executed = 0
    duplicates = 0

    await db.set_constraint_checks(False)
    await db.begin()

    for line_number, sql in statements:
        try:
            await db.execute(sql)
            executed += 1
        except Exception as e:
            if config.skip_duplicate_errors and db.is_duplicate_error(e):
                duplicates += 1
                await _log(session, f"[Skip] {e} at line {line_number}")
                logger.warning(
                    "restore_duplicate_ignored",
                    session_id=session.session_id,
                    line=line_number,
                    error=str(e),
                )
                continue

            await db.rollback()
            await db.set_constraint_checks(True)
            await _log(session, f"[Fatal] {e} at line {line_number}")
            await mark_session(session, SessionStatus.FAILED)

            logger.error(
                "restore_statement_failed",
                session_id=session.session_id,
                line=line_number,
                byte_offset=progress.byte_offset,
                error=str(e),
            )

            raise RestoreQueryError(
                f"Statement failed at line {line_number}: {e}",
                details={
                    "line": line_number,
                    "byte_offset": progress.byte_offset,
                    "statement": sql[:500],
                },
            )

    await db.commit()
    await db.set_constraint_checks(True)

    progress.byte_offset = new_offset
    progress.line_number += len(lines)
    progress.total_units = file_size
    progress.advance(new_offset)
    progress.statements_executed += executed
    progress.statements_skipped += skipped
    progress.duplicates_ignored += duplicates
    progress.invalid_lines += invalid

    if progress.byte_offset >= file_size:
        progress.mark_done()

    await store.save(progress)

    logger.info(
        "restore_step_completed",
        session_id=session.session_id,
        lines=len(lines),
        executed=executed,
        skipped=skipped,
        duplicates=duplicates,
        byte_offset=progress.byte_offset,
        percent=progress.percent,
        done=progress.done,
    )

    # A retry that commits clears an earlier fatal failure
    await mark_session(
        session,
        SessionStatus.COMPLETED if progress.done else SessionStatus.RUNNING,
    )

    return progress


async def finish_restore(config: EngineConfig, session: Session) -> bool:
    """
    Delete the restore progress record and close the restore log.

    Returns:
        True if a record was removed
    """
    removed = await _store(session).delete()
    await _log(session, f"== Restore finished at {_timestamp()} ==")
    logger.info("restore_finished", session_id=session.session_id)
    return removed


async def load_restore_progress(config: EngineConfig, session: Session) -> RestoreProgress | None:
    return await _store(session).load()
