# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Builder - Functional builder pattern for configuration.

This module provides pure functions for building EngineConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict

from stepback.config import DEFAULT_DOWNLOAD_CHUNK_SIZE, DEFAULT_MAX_PART_SIZE, EngineConfig


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "work_root": Path("./stepback_sessions"),
        "db_chunk_size": 1000,
        "restore_chunk_lines": 1000,
        "archive_chunk_size": 100,
        "max_part_size": DEFAULT_MAX_PART_SIZE,
        "extract_batch_size": 100,
        "download_chunk_size": DEFAULT_DOWNLOAD_CHUNK_SIZE,
        "download_timeout": 300.0,
        "probe_timeout": 30.0,
        "table_prefix": "",
        "options_table": "options",
        "zip_name": "filesystem.zip",
        "overwrite_existing": False,
        "skip_duplicate_errors": True,
    }


def with_work_root(config: ConfigDict, work_root: Path | str) -> ConfigDict:
    """
    Set the directory under which session working directories live.

    Args:
        config: Current configuration dictionary
        work_root: Directory path

    Returns:
        New configuration dictionary with work_root set
    """
    return {**config, "work_root": Path(work_root)}


def with_table_prefix(config: ConfigDict, prefix: str) -> ConfigDict:
    """
    Set the table prefix of the database being dumped or restored into.

    Args:
        config: Current configuration dictionary
        prefix: Table prefix (e.g., 'wp_')

    Returns:
        New configuration dictionary with table_prefix set
    """
    return {**config, "table_prefix": prefix}


def with_db_chunk_size(config: ConfigDict, rows: int) -> ConfigDict:
    """Set the number of rows dumped per step."""
    return {**config, "db_chunk_size": rows}


def with_restore_chunk_lines(config: ConfigDict, lines: int) -> ConfigDict:
    """Set the number of dump log lines replayed per step."""
    return {**config, "restore_chunk_lines": lines}


def with_archive_chunk_size(config: ConfigDict, entries: int) -> ConfigDict:
    """Set the number of files/directories archived per step."""
    return {**config, "archive_chunk_size": entries}


def with_max_part_size(config: ConfigDict, size_bytes: int) -> ConfigDict:
    """
    Set the uncompressed size at which a new zip part is started.

    Args:
        config: Current configuration dictionary
        size_bytes: Maximum uncompressed bytes per part

    Returns:
        New configuration dictionary with max_part_size set
    """
    return {**config, "max_part_size": size_bytes}


def with_extract_batch_size(config: ConfigDict, entries: int) -> ConfigDict:
    """Set the number of archive entries extracted per step."""
    return {**config, "extract_batch_size": entries}


def with_download_chunk_size(config: ConfigDict, size_bytes: int) -> ConfigDict:
    """Set the byte-range size requested per download step."""
    return {**config, "download_chunk_size": size_bytes}


def with_zip_name(config: ConfigDict, zip_name: str) -> ConfigDict:
    """Set the first-part archive name."""
    return {**config, "zip_name": zip_name}


def overwrite_existing_files(config: ConfigDict) -> ConfigDict:
    """
    Let the extractor replace files that already exist at the destination.

    Args:
        config: Current configuration dictionary

    Returns:
        New configuration dictionary with overwrite enabled
    """
    return {**config, "overwrite_existing": True}


def fail_on_duplicate_errors(config: ConfigDict) -> ConfigDict:
    """
    Make the restorer treat duplicate key/column/index errors as fatal.

    Restores are then no longer safely re-runnable; use only for
    diagnosing a dump.
    """
    return {**config, "skip_duplicate_errors": False}


def build_config(config_dict: ConfigDict) -> EngineConfig:
    """
    Build the final immutable configuration.

    Args:
        config_dict: Configuration dictionary

    Returns:
        Validated, immutable EngineConfig instance

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    return EngineConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose builder functions left to right.

    Example:
        setup = pipe(
            lambda c: with_work_root(c, "/var/lib/stepback"),
            overwrite_existing_files,
        )
        config = build_config(setup(create_empty_config()))
    """

    def composed(config: ConfigDict) -> ConfigDict:
        for func in funcs:
            config = func(config)
        return config

    return composed


def build_from_steps(*steps: BuilderFunc) -> EngineConfig:
    """
    Build config by applying a sequence of builder functions.

    Args:
        *steps: Builder functions to apply in sequence

    Returns:
        Validated, immutable EngineConfig instance
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    *,
    work_root: str | Path | None = None,
    table_prefix: str = "",
    db_chunk_size: int | None = None,
    archive_chunk_size: int | None = None,
    max_part_size: int | None = None,
    download_chunk_size: int | None = None,
    overwrite_existing: bool = False,
    **kwargs: Any,
) -> EngineConfig:
    """
    Create engine configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        work_root: Directory holding session working directories
        table_prefix: Table prefix of the application database (e.g. "wp_")
        db_chunk_size: Rows per dump step
        archive_chunk_size: Entries per archive step
        max_part_size: Uncompressed bytes per zip part
        download_chunk_size: Bytes per ranged download request
        overwrite_existing: Extractor replaces existing files
        **kwargs: Any other EngineConfig field

    Returns:
        Validated, immutable EngineConfig instance

    Example:
        config = create_config(
            work_root="/var/lib/stepback",
            table_prefix="wp_",
            max_part_size=500 * 1024 * 1024,
        )
    """
    config_dict = create_empty_config()

    if work_root:
        config_dict = with_work_root(config_dict, work_root)

    config_dict = with_table_prefix(config_dict, table_prefix)

    if db_chunk_size is not None:
        config_dict = with_db_chunk_size(config_dict, db_chunk_size)

    if archive_chunk_size is not None:
        config_dict = with_archive_chunk_size(config_dict, archive_chunk_size)

    if max_part_size is not None:
        config_dict = with_max_part_size(config_dict, max_part_size)

    if download_chunk_size is not None:
        config_dict = with_download_chunk_size(config_dict, download_chunk_size)

    if overwrite_existing:
        config_dict = overwrite_existing_files(config_dict)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
