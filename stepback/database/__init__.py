# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database dump and restore for stepback.
"""

from stepback.database.adapters import (
    DatabaseAdapter,
    MySQLAdapter,
    SQLiteAdapter,
    connect_database,
    escape_string,
)
from stepback.database.dumper import (
    DumpEntry,
    DumpProgress,
    dump_log_path,
    dump_step,
    finish_dump,
    load_dump_progress,
    read_dump_entries,
    start_dump,
)
from stepback.database.restorer import (
    RestoreProgress,
    finish_restore,
    load_restore_progress,
    normalize_options_statement,
    references_excluded_table,
    restore_log_path,
    restore_step,
    rewrite_prefix,
    start_restore,
)

__all__ = [
    "DatabaseAdapter",
    "SQLiteAdapter",
    "MySQLAdapter",
    "connect_database",
    "escape_string",
    "DumpEntry",
    "DumpProgress",
    "start_dump",
    "dump_step",
    "finish_dump",
    "load_dump_progress",
    "read_dump_entries",
    "dump_log_path",
    "RestoreProgress",
    "start_restore",
    "restore_step",
    "finish_restore",
    "load_restore_progress",
    "restore_log_path",
    "rewrite_prefix",
    "normalize_options_statement",
    "references_excluded_table",
]
