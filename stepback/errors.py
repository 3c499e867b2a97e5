# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for stepback.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_invalid_positive_int_env(name: str, value: str | None) -> str:
    """
    Explain that a numeric environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a positive integer."
    )


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: '1', '0', 'true', 'false', 'yes', 'no'."
    )


def explain_invalid_zip_name(value: str) -> str:
    """
    Explain that the archive base name is unusable.
    """

    return (
        f"Invalid zip_name: {value!r}. "
        "It must be a bare file name ending in '.zip', e.g. 'filesystem.zip'."
    )


def explain_missing_session_id() -> str:
    """
    Explain that a session id sanitized down to nothing.
    """

    return (
        "Session id is empty after sanitizing. "
        "Use letters, digits, '.', '_' or '-', or let generate_session_id() pick one."
    )


def explain_step_before_start(component: str) -> str:
    """
    Explain that step() was called for a session that was never started.
    """

    return (
        f"No {component} progress found for this session. "
        f"Call start_{component}() first, or the session already finished and was cleaned up."
    )
