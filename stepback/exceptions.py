# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Exceptions - Typed errors for the stepwise engine.

Every error carries a machine-readable ``kind`` so a driver can decide
whether to retry, fix input, or stop and let a human look at the session.
"""


class StepbackError(Exception):
    """Base exception for all stepback errors."""

    kind = "error"

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        kind: str | None = None,
    ):
        self.message = message
        self.details = details or {}
        if kind:
            self.kind = kind
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(StepbackError):
    """Raised when a required argument is missing or invalid."""

    kind = "validation"


class ConfigurationError(ValidationError):
    """Raised when configuration is invalid."""

    kind = "configuration"


class NoFilesFoundError(ValidationError):
    """Raised when an archive source yields nothing to archive."""

    kind = "no_files_found"


class ResourceUnavailableError(StepbackError):
    """Raised when a directory, file or library the engine needs is unavailable."""

    kind = "resource_unavailable"


class SourceUnavailableError(ResourceUnavailableError):
    """Raised when the source database cannot be read."""

    kind = "source_unavailable"


class TransferError(StepbackError):
    """Raised for transient network failures. Safe to retry."""

    kind = "transfer"


class HTTPStatusError(TransferError):
    """Raised when a remote server answers with an unexpected status."""

    kind = "http_error"

    def __init__(self, message: str, status_code: int, details: dict | None = None):
        self.status_code = status_code
        super().__init__(message, details={**(details or {}), "status_code": status_code})


class CannotDetermineSizeError(TransferError):
    """Raised when a probe response carries no usable size header."""

    kind = "cannot_determine_size"


class FatalDataError(StepbackError):
    """Raised when data is inconsistent and a human should look before resuming."""

    kind = "fatal_data"


class RestoreQueryError(FatalDataError):
    """Raised when a replayed statement fails with a non-duplicate error."""

    kind = "query_failed"


class SizeMismatchError(FatalDataError):
    """Raised when a merged download does not match the advertised size."""

    kind = "size_mismatch"


class ChunkMissingError(FatalDataError):
    """Raised when a downloaded chunk is missing at merge time."""

    kind = "chunk_missing"


class ArchiveInvalidError(FatalDataError):
    """Raised when a zip archive cannot be opened or is corrupt."""

    kind = "archive_invalid"


class ProgressError(StepbackError):
    """Raised when a progress record is unreadable or an invariant would break."""

    kind = "progress"
