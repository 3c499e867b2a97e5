# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and tuning profiles.

These helpers are small, convenient wrappers around create_config() and
EngineConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made chunk-size profiles
"""

from __future__ import annotations

import os
from pathlib import Path

from stepback.builder import create_config
from stepback.config import MIB, EngineConfig
from stepback.errors import explain_invalid_bool_env, explain_invalid_positive_int_env
from stepback.exceptions import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_positive_int(name: str, value: str | None) -> int | None:
    if not value:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_positive_int_env(name, value)) from exc
    if number < 1:
        raise ConfigurationError(explain_invalid_positive_int_env(name, value))
    return number


def _parse_bool(name: str, value: str | None) -> bool:
    if not value:
        return False
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


# Environment variable -> EngineConfig field
_INT_SETTINGS = {
    "STEPBACK_DB_CHUNK_SIZE": "db_chunk_size",
    "STEPBACK_RESTORE_CHUNK_LINES": "restore_chunk_lines",
    "STEPBACK_ARCHIVE_CHUNK_SIZE": "archive_chunk_size",
    "STEPBACK_MAX_PART_SIZE": "max_part_size",
    "STEPBACK_EXTRACT_BATCH_SIZE": "extract_batch_size",
    "STEPBACK_DOWNLOAD_CHUNK_SIZE": "download_chunk_size",
}


def create_config_from_env() -> EngineConfig:
    """
    Create an EngineConfig from environment variables.

    Optional environment variables:
        - STEPBACK_WORK_ROOT: Session root directory (default: ./stepback_sessions)
        - STEPBACK_TABLE_PREFIX: Application table prefix, e.g. "wp_"
        - STEPBACK_DB_CHUNK_SIZE: Rows per dump step
        - STEPBACK_RESTORE_CHUNK_LINES: Dump lines per restore step
        - STEPBACK_ARCHIVE_CHUNK_SIZE: Entries per archive step
        - STEPBACK_MAX_PART_SIZE: Uncompressed bytes per zip part
        - STEPBACK_EXTRACT_BATCH_SIZE: Entries per extract step
        - STEPBACK_DOWNLOAD_CHUNK_SIZE: Bytes per ranged download request
        - STEPBACK_OVERWRITE_EXISTING: '1'/'0', 'true'/'false', 'yes'/'no'
    """

    overrides: dict = {}
    for env_name, field_name in _INT_SETTINGS.items():
        number = _parse_positive_int(env_name, os.getenv(env_name))
        if number is not None:
            overrides[field_name] = number

    work_root_env = os.getenv("STEPBACK_WORK_ROOT")

    return create_config(
        work_root=Path(work_root_env) if work_root_env else None,
        table_prefix=os.getenv("STEPBACK_TABLE_PREFIX", ""),
        overwrite_existing=_parse_bool(
            "STEPBACK_OVERWRITE_EXISTING", os.getenv("STEPBACK_OVERWRITE_EXISTING")
        ),
        **overrides,
    )


# ============================================================================
# Profiles
# ============================================================================

def conservative(config: EngineConfig) -> EngineConfig:
    """
    Apply a profile for hosts with tight per-request time limits.

    - Smaller chunks everywhere (at most 250 rows / 25 files / 2MB)
    - Never overwrite existing files on extract
    """

    return config.with_updates(
        db_chunk_size=min(config.db_chunk_size, 250),
        restore_chunk_lines=min(config.restore_chunk_lines, 250),
        archive_chunk_size=min(config.archive_chunk_size, 25),
        extract_batch_size=min(config.extract_batch_size, 25),
        download_chunk_size=min(config.download_chunk_size, 2 * MIB),
        overwrite_existing=False,
    )


def throughput(config: EngineConfig) -> EngineConfig:
    """
    Apply a profile for hosts with generous time limits.

    - Larger chunks (at least 5000 rows / 500 files / 20MB)
    """

    return config.with_updates(
        db_chunk_size=max(config.db_chunk_size, 5000),
        restore_chunk_lines=max(config.restore_chunk_lines, 5000),
        archive_chunk_size=max(config.archive_chunk_size, 500),
        extract_batch_size=max(config.extract_batch_size, 500),
        download_chunk_size=max(config.download_chunk_size, 20 * MIB),
    )
