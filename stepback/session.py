# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Sessions - One backup, restore or download job.

A session owns a working directory under ``config.work_root``. Every file
a component produces for the session (progress records, dump log, zip
parts, download chunks) lives there, so removing the directory removes
the session.
"""

import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path

import structlog

from stepback.config import EngineConfig
from stepback.errors import explain_missing_session_id
from stepback.exceptions import ResourceUnavailableError, ValidationError
from stepback.progress import read_json, write_json_atomic

logger = structlog.get_logger()

SESSION_FILE = "session.json"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class SessionStatus(str, Enum):
    """Lifecycle of a session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def sanitize_session_id(raw: str) -> str:
    """
    Make a session id safe to use as a directory name.

    Raises:
        ValidationError: If nothing usable is left
    """
    safe = _UNSAFE_CHARS.sub("-", (raw or "").strip())
    safe = safe.lstrip(".-")
    if not safe:
        raise ValidationError(explain_missing_session_id(), details={"session_id": raw})
    return safe[:200]


def generate_session_id(prefix: str = "session") -> str:
    """Generate a sortable, unique session id such as ``dbjson_01J...``."""
    from ulid import ULID

    return f"{sanitize_session_id(prefix)}_{ULID()}"


@dataclass
class Session:
    """One job and its working directory."""

    session_id: str
    work_root: Path
    source_location: str = ""
    destination_location: str = ""
    status: SessionStatus = SessionStatus.PENDING
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def work_dir(self) -> Path:
        return self.work_root / self.session_id

    def path(self, name: str) -> Path:
        return self.work_dir / name

    def ensure_work_dir(self) -> Path:
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceUnavailableError(
                f"Cannot create session directory: {e}",
                details={"work_dir": str(self.work_dir)},
            )
        return self.work_dir

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "sourceLocation": self.source_location,
            "destinationLocation": self.destination_location,
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict, work_root: Path) -> "Session":
        return cls(
            session_id=data["sessionId"],
            work_root=work_root,
            source_location=data.get("sourceLocation", ""),
            destination_location=data.get("destinationLocation", ""),
            status=SessionStatus(data.get("status", SessionStatus.PENDING.value)),
            created_at=data.get("createdAt", ""),
        )


def create_session(
    config: EngineConfig,
    session_id: str | None = None,
    *,
    source_location: str = "",
    destination_location: str = "",
    prefix: str = "session",
) -> Session:
    """
    Create a session and its working directory.

    Args:
        config: Engine configuration
        session_id: Caller-chosen id (sanitized); generated if omitted
        source_location: DB URL, directory or remote URL being read
        destination_location: Where the result goes
        prefix: Prefix for generated ids

    Returns:
        The new session (status pending)
    """
    sid = sanitize_session_id(session_id) if session_id else generate_session_id(prefix)
    session = Session(
        session_id=sid,
        work_root=Path(config.work_root),
        source_location=source_location,
        destination_location=destination_location,
    )
    session.ensure_work_dir()
    return session


async def save_session(session: Session) -> None:
    """Persist the session descriptor next to its progress records."""
    session.ensure_work_dir()
    await write_json_atomic(session.path(SESSION_FILE), session.to_dict())


async def load_session(config: EngineConfig, session_id: str) -> Session | None:
    """
    Load a session descriptor.

    Returns:
        The session, or None if no descriptor was saved
    """
    sid = sanitize_session_id(session_id)
    data = await read_json(Path(config.work_root) / sid / SESSION_FILE)
    if data is None:
        return None
    return Session.from_dict(data, Path(config.work_root))


async def mark_session(session: Session, status: SessionStatus) -> None:
    """Update and persist the session status."""
    if session.status == status:
        return
    previous = session.status
    session.status = status
    await save_session(session)

    logger.info(
        "session_status_changed",
        session_id=session.session_id,
        previous=previous.value,
        status=status.value,
    )


def remove_session(session: Session) -> bool:
    """
    Delete the session working directory wholesale.

    Returns:
        True if a directory was removed
    """
    if not session.work_dir.exists():
        return False
    shutil.rmtree(session.work_dir)
    logger.info("session_removed", session_id=session.session_id)
    return True
