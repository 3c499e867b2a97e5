# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Stepback Progress Store - Durable per-session progress records.

A progress record is the only state that survives between two Step()
calls. Records are written atomically (write to temp, then rename) so a
crash leaves either the old or the new record on disk, never a mix.

The store does no locking: one writer per session is a caller contract.
"""

import json
import os
from dataclasses import MISSING, dataclass, fields
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Generic, Type, TypeVar

import aiofiles
import structlog

from stepback.exceptions import ProgressError

logger = structlog.get_logger()

R = TypeVar("R", bound="ProgressRecord")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


async def write_json_atomic(path: Path, data: dict) -> None:
    """
    Serialize ``data`` to ``path`` with a full-file replace.

    Args:
        path: Destination file
        data: JSON-serializable document
    """
    temp_path = path.with_name(path.name + ".tmp")
    payload = json.dumps(data, ensure_ascii=False, indent=2)

    async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
        await f.write(payload)
        await f.flush()

    # Rename to final path (atomic on POSIX and Windows)
    os.replace(temp_path, path)


async def read_json(path: Path) -> dict | None:
    """
    Read a JSON document written by write_json_atomic().

    Returns:
        The decoded document, or None if the file does not exist

    Raises:
        ProgressError: If the file exists but cannot be decoded
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
    except FileNotFoundError:
        return None

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ProgressError(
            f"Progress document is not valid JSON: {e}",
            details={"path": str(path)},
        )

    if not isinstance(data, dict):
        raise ProgressError(
            "Progress document is not a JSON object",
            details={"path": str(path)},
        )
    return data


@dataclass
class ProgressRecord:
    """
    Base progress record.

    Subclasses add their own fields. Fields declared with
    ``metadata={"cursor": True}`` are grouped under the ``cursor`` key
    when serialized; list fields may declare ``metadata={"item": SomeDataclass}``
    to round-trip a list of fixed-shape items.
    """

    total_units: int | None = None
    done_units: int = 0
    done: bool = False
    last_updated: str = ""

    @property
    def percent(self) -> float:
        if self.done:
            return 100.0
        if not self.total_units:
            return 0.0
        return round(min(self.done_units, self.total_units) / self.total_units * 100, 2)

    def advance(self, done_units: int) -> None:
        """
        Move done_units forward.

        Raises:
            ProgressError: If done_units would decrease
        """
        if done_units < self.done_units:
            raise ProgressError(
                "doneUnits cannot decrease",
                details={"current": self.done_units, "requested": done_units},
            )
        if self.total_units is not None:
            done_units = min(done_units, self.total_units)
        self.done_units = done_units

    def mark_done(self) -> None:
        self.done = True
        if self.total_units is not None:
            self.done_units = self.total_units

    def to_dict(self) -> dict:
        cursor: dict[str, Any] = {}
        document: dict[str, Any] = {}

        for f in fields(self):
            value = getattr(self, f.name)
            item_type = f.metadata.get("item")
            if item_type is not None:
                value = [item.to_dict() for item in value]
            target = cursor if f.metadata.get("cursor") else document
            target[_camel(f.name)] = value

        return {"cursor": cursor, **document}

    @classmethod
    def from_dict(cls: Type[R], data: dict) -> R:
        cursor = data.get("cursor") or {}
        kwargs: dict[str, Any] = {}

        for f in fields(cls):
            key = _camel(f.name)
            source = cursor if f.metadata.get("cursor") else data
            if key not in source:
                if f.default is MISSING and f.default_factory is MISSING:
                    raise ProgressError(f"Progress record is missing '{key}'")
                continue
            value = source[key]
            item_type = f.metadata.get("item")
            if item_type is not None:
                value = [item_type.from_dict(item) for item in value]
            kwargs[f.name] = value

        return cls(**kwargs)


class ProgressStore(Generic[R]):
    """Load/save one progress record file for one session."""

    def __init__(self, path: Path, record_type: Type[R]):
        self.path = path
        self.record_type = record_type

    def exists(self) -> bool:
        return self.path.exists()

    async def load(self) -> R | None:
        """
        Load the record.

        Returns:
            The record, or None if the session has not started yet
        """
        data = await read_json(self.path)
        if data is None:
            return None

        try:
            return self.record_type.from_dict(data)
        except ProgressError:
            raise
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise ProgressError(
                f"Progress record has an unexpected shape: {e}",
                details={"path": str(self.path)},
            )

    async def save(self, record: R) -> None:
        """Stamp and atomically replace the record file."""
        record.last_updated = datetime.now(UTC).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        await write_json_atomic(self.path, record.to_dict())

        logger.debug(
            "progress_saved",
            path=str(self.path),
            done_units=record.done_units,
            done=record.done,
        )

    async def delete(self) -> bool:
        """
        Delete the record.

        Returns:
            True if a record file was removed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("progress_deleted", path=str(self.path))
        return True
