# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for progress records and their atomic store.
"""

import json
from dataclasses import dataclass, field

import pytest

from stepback.exceptions import ProgressError
from stepback.progress import ProgressRecord, ProgressStore, read_json, write_json_atomic


@dataclass
class Point:
    x: int
    y: int

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, data: dict) -> "Point":
        return cls(x=data["x"], y=data["y"])


@dataclass
class SampleProgress(ProgressRecord):
    row_offset: int = field(default=0, metadata={"cursor": True})
    table_name: str = ""
    points: list = field(default_factory=list, metadata={"item": Point})


def test_record_shape_groups_cursor_fields():
    record = SampleProgress(total_units=10, row_offset=4, table_name="posts", points=[Point(1, 2)])

    data = record.to_dict()

    assert data["cursor"] == {"rowOffset": 4}
    assert data["totalUnits"] == 10
    assert data["doneUnits"] == 0
    assert data["done"] is False
    assert data["tableName"] == "posts"
    assert data["points"] == [{"x": 1, "y": 2}]


def test_record_from_dict_restores_items():
    data = {
        "cursor": {"rowOffset": 7},
        "totalUnits": None,
        "doneUnits": 3,
        "done": False,
        "lastUpdated": "",
        "points": [{"x": 5, "y": 6}],
    }

    record = SampleProgress.from_dict(data)

    assert record.row_offset == 7
    assert record.done_units == 3
    assert record.table_name == ""
    assert record.points == [Point(5, 6)]


def test_percent():
    record = SampleProgress(total_units=200)
    assert record.percent == 0.0

    record.advance(50)
    assert record.percent == 25.0

    record.mark_done()
    assert record.percent == 100.0
    assert record.done_units == 200


def test_percent_without_total():
    record = SampleProgress()
    record.advance(10)

    assert record.percent == 0.0
    record.mark_done()
    assert record.percent == 100.0


def test_done_units_never_decrease():
    record = SampleProgress(total_units=10)
    record.advance(6)

    with pytest.raises(ProgressError):
        record.advance(5)

    assert record.done_units == 6


def test_done_units_capped_at_total():
    record = SampleProgress(total_units=10)
    record.advance(25)

    assert record.done_units == 10


@pytest.mark.asyncio
async def test_store_save_and_load(temp_dir):
    store = ProgressStore(temp_dir / "nested" / "progress.json", SampleProgress)
    assert await store.load() is None
    assert not store.exists()

    await store.save(SampleProgress(total_units=3, row_offset=2, table_name="t"))

    loaded = await store.load()
    assert loaded.row_offset == 2
    assert loaded.table_name == "t"
    assert loaded.last_updated != ""
    assert not (temp_dir / "nested" / "progress.json.tmp").exists()


@pytest.mark.asyncio
async def test_store_delete(temp_dir):
    store = ProgressStore(temp_dir / "progress.json", SampleProgress)
    await store.save(SampleProgress())

    assert await store.delete() is True
    assert await store.delete() is False
    assert await store.load() is None


@pytest.mark.asyncio
async def test_store_rejects_corrupt_file(temp_dir):
    path = temp_dir / "progress.json"
    path.write_text("{not json")

    with pytest.raises(ProgressError):
        await ProgressStore(path, SampleProgress).load()


@pytest.mark.asyncio
async def test_store_rejects_non_object(temp_dir):
    path = temp_dir / "progress.json"
    path.write_text("[1, 2, 3]")

    with pytest.raises(ProgressError):
        await ProgressStore(path, SampleProgress).load()


@pytest.mark.asyncio
async def test_store_rejects_bad_item_shape(temp_dir):
    path = temp_dir / "progress.json"
    path.write_text(json.dumps({"cursor": {}, "points": [{"x": 1}]}))

    with pytest.raises(ProgressError):
        await ProgressStore(path, SampleProgress).load()


@pytest.mark.asyncio
async def test_write_json_atomic_replaces_file(temp_dir):
    path = temp_dir / "doc.json"
    await write_json_atomic(path, {"a": 1})
    await write_json_atomic(path, {"a": 2, "text": "ünïcode"})

    assert await read_json(path) == {"a": 2, "text": "ünïcode"}
    assert await read_json(temp_dir / "missing.json") is None
