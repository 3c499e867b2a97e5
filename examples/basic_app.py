# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example site backup and restore driven one step at a time.

In production every step_* call below would be one request or one cron
tick; here run_until_done() drives the same loop inside one process.

Run with:
    python examples/basic_app.py backup  sqlite:///app.db ./site ./backups
    python examples/basic_app.py restore sqlite:///new.db ./backups/<session>/backup.sql.jsonl ./restored-site ./backups/filesystem.zip
    python examples/basic_app.py fetch   https://example.com/backup.zip ./backup.zip

Environment variables (all optional, see stepback.env):
    STEPBACK_WORK_ROOT: Session root directory
    STEPBACK_TABLE_PREFIX: Table prefix of the application database
    STEPBACK_DB_CHUNK_SIZE / STEPBACK_ARCHIVE_CHUNK_SIZE / ...: Chunk sizes
"""

import argparse
import asyncio
import sys

import structlog

from stepback import create_config_from_env, create_session, run_until_done
from stepback.archive import (
    archive_step,
    cleanup_extract,
    extract_step,
    start_archive,
    start_extract,
)
from stepback.database import (
    connect_database,
    dump_step,
    finish_dump,
    finish_restore,
    restore_step,
    start_dump,
    start_restore,
)
from stepback.exceptions import StepbackError
from stepback.transfer import cleanup_download, download_step, start_download

logger = structlog.get_logger()


async def backup(db_url: str, site_dir: str, destination: str) -> None:
    """Dump the database, then zip the site directory into ``destination``."""
    config = create_config_from_env()

    session = create_session(
        config,
        prefix="backup",
        source_location=db_url,
        destination_location=destination,
    )

    db = await connect_database(db_url, config.table_prefix)
    try:
        await start_dump(config, session, db)
        progress, steps = await run_until_done(lambda: dump_step(config, session, db))
        await finish_dump(config, session)
    finally:
        await db.close()

    logger.info("example_dump_done", session_id=session.session_id, steps=steps, rows=progress.rows_written)

    started = await start_archive(config, session, site_dir, exclude=["cache", "node_modules"])
    result, steps = await run_until_done(lambda: archive_step(config, session))

    logger.info(
        "example_archive_done",
        session_id=session.session_id,
        steps=steps,
        files=started.total_files,
        parts=result.parts,
        errors=len(result.errors),
    )


async def restore(db_url: str, dump_path: str, site_dir: str, zip_path: str) -> None:
    """Replay a dump log into ``db_url`` and unpack one archive part."""
    config = create_config_from_env()
    session = create_session(config, prefix="restore", source_location=dump_path, destination_location=db_url)

    db = await connect_database(db_url, config.table_prefix)
    try:
        await start_restore(config, session, dump_path)
        progress, steps = await run_until_done(lambda: restore_step(config, session, db))
        await finish_restore(config, session)
    finally:
        await db.close()

    logger.info(
        "example_restore_done",
        session_id=session.session_id,
        steps=steps,
        executed=progress.statements_executed,
        duplicates=progress.duplicates_ignored,
    )

    await start_extract(config, session, zip_path, site_dir)
    result, steps = await run_until_done(lambda: extract_step(config, session, zip_path, site_dir))
    await cleanup_extract(config, session)

    logger.info("example_extract_done", session_id=session.session_id, steps=steps, entries=result.total_entries)


async def fetch(remote_url: str, final_path: str) -> None:
    """Download a remote backup in ranged chunks."""
    config = create_config_from_env()
    session = create_session(config, prefix="download", source_location=remote_url, destination_location=final_path)

    await start_download(config, session, remote_url, final_path)
    result, steps = await run_until_done(lambda: download_step(config, session))
    await cleanup_download(config, session)

    logger.info("example_download_done", session_id=session.session_id, steps=steps, size=result.total_size)


def main() -> int:
    parser = argparse.ArgumentParser(description="Stepwise site backup example")
    commands = parser.add_subparsers(dest="command", required=True)

    backup_cmd = commands.add_parser("backup")
    backup_cmd.add_argument("db_url")
    backup_cmd.add_argument("site_dir")
    backup_cmd.add_argument("destination")

    restore_cmd = commands.add_parser("restore")
    restore_cmd.add_argument("db_url")
    restore_cmd.add_argument("dump_path")
    restore_cmd.add_argument("site_dir")
    restore_cmd.add_argument("zip_path")

    fetch_cmd = commands.add_parser("fetch")
    fetch_cmd.add_argument("remote_url")
    fetch_cmd.add_argument("final_path")

    args = parser.parse_args()

    try:
        if args.command == "backup":
            asyncio.run(backup(args.db_url, args.site_dir, args.destination))
        elif args.command == "restore":
            asyncio.run(restore(args.db_url, args.dump_path, args.site_dir, args.zip_path))
        else:
            asyncio.run(fetch(args.remote_url, args.final_path))
    except StepbackError as e:
        logger.error("example_failed", command=args.command, **e.to_dict())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
