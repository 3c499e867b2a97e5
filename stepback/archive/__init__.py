# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Multi-part zip archiving and bounded-batch extraction.
"""

from stepback.archive.builder import (
    ArchiveProgress,
    ArchiveStartResult,
    ArchiveStepResult,
    FileEntry,
    archive_step,
    cleanup_archive,
    load_archive_progress,
    part_path,
    start_archive,
)

from stepback.archive.extractor import (
    ArchiveMember,
    ExtractProgress,
    ExtractStepResult,
    cleanup_extract,
    extract_step,
    list_archive_contents,
    load_extract_progress,
    start_extract,
    validate_archive,
)

__all__ = [
    # Builder
    "start_archive",
    "archive_step",
    "cleanup_archive",
    "load_archive_progress",
    "part_path",
    "FileEntry",
    "ArchiveProgress",
    "ArchiveStartResult",
    "ArchiveStepResult",
    # Extractor
    "start_extract",
    "extract_step",
    "cleanup_extract",
    "load_extract_progress",
    "list_archive_contents",
    "validate_archive",
    "ArchiveMember",
    "ExtractProgress",
    "ExtractStepResult",
]
