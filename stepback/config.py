# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Configuration - Immutable engine configuration.

All configuration is frozen (immutable) after creation so that a value
cannot drift between two Step() calls of the same session.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

# Sizes
KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

DEFAULT_MAX_PART_SIZE = 2 * GIB
DEFAULT_DOWNLOAD_CHUNK_SIZE = 5 * MIB


def _validate_zip_name(zip_name: str) -> bool:
    """Validate the first-part archive name ("filesystem.zip")."""
    if not zip_name or not zip_name.endswith(".zip"):
        return False
    if "/" in zip_name or "\\" in zip_name:
        return False
    return len(zip_name) > len(".zip")


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable configuration for the stepwise backup/restore engine.

    Chunk sizes bound the work done inside a single Step() call, so they
    should be tuned to the caller's per-invocation time limit.
    """

    # Root directory that holds one working directory per session
    work_root: Path = field(default_factory=lambda: Path("./stepback_sessions"))

    # Rows read per dump step
    db_chunk_size: int = 1000

    # Dump log lines replayed per restore step
    restore_chunk_lines: int = 1000

    # Files/directories added per archive step
    archive_chunk_size: int = 100

    # Uncompressed bytes per zip part before rolling over to a new part
    max_part_size: int = DEFAULT_MAX_PART_SIZE

    # Entries extracted per extract step
    extract_batch_size: int = 100

    # Bytes per ranged download request
    download_chunk_size: int = DEFAULT_DOWNLOAD_CHUNK_SIZE

    # Seconds allowed for a chunk request
    download_timeout: float = 300.0

    # Seconds allowed for the size probe
    probe_timeout: float = 30.0

    # Table prefix of the database being dumped or restored into
    table_prefix: str = ""

    # Unprefixed name of the options-equivalent table (inserts become upserts)
    options_table: str = "options"

    # First archive part name; later parts are "<base>_part<N>.zip"
    zip_name: str = "filesystem.zip"

    # Extractor default: replace files that already exist at the destination
    overwrite_existing: bool = False

    # Restorer: treat duplicate key/column/index errors as success
    skip_duplicate_errors: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        for name in (
            "db_chunk_size",
            "restore_chunk_lines",
            "archive_chunk_size",
            "max_part_size",
            "extract_batch_size",
            "download_chunk_size",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                errors.append(f"{name} must be a positive integer, got {value!r}")

        if self.download_timeout <= 0:
            errors.append(f"download_timeout must be > 0, got {self.download_timeout}")

        if self.probe_timeout <= 0:
            errors.append(f"probe_timeout must be > 0, got {self.probe_timeout}")

        if not _validate_zip_name(self.zip_name):
            from stepback.errors import explain_invalid_zip_name

            errors.append(explain_invalid_zip_name(self.zip_name))

        if not self.options_table:
            errors.append("options_table must not be empty")

        if errors:
            from stepback.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def options_table_name(self) -> str:
        """Fully prefixed options table name."""
        return f"{self.table_prefix}{self.options_table}"

    def with_updates(self, **kwargs) -> "EngineConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return EngineConfig(**current)
