# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Resumable byte-range downloads.
"""

from stepback.transfer.downloader import (
    DownloadProgress,
    DownloadResult,
    DownloadStatus,
    cleanup_download,
    download_step,
    get_download_progress,
    is_download_complete,
    parse_total_size,
    start_download,
)

__all__ = [
    "start_download",
    "download_step",
    "get_download_progress",
    "is_download_complete",
    "cleanup_download",
    "parse_total_size",
    "DownloadProgress",
    "DownloadResult",
    "DownloadStatus",
]
