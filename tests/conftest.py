# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for stepback tests.

Provides temporary directories, configuration, sessions, SQLite
databases and a fake range-capable HTTP server.
"""

import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List

import aiosqlite
import httpx
import pytest
import pytest_asyncio


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path):
    """Create a test configuration with small chunks."""
    from stepback.builder import create_config

    return create_config(
        work_root=temp_dir / "sessions",
        db_chunk_size=1000,
        archive_chunk_size=10,
        download_chunk_size=1024,
        restore_chunk_lines=100,
        extract_batch_size=10,
    )


@pytest.fixture
def session(test_config):
    """Create a fresh session under the test work root."""
    from stepback.session import create_session

    return create_session(test_config, "test-session")


@pytest_asyncio.fixture
async def source_db_path(temp_dir: Path) -> Path:
    """An empty SQLite database file for the dump side."""
    return temp_dir / "source.db"


@pytest_asyncio.fixture
async def source_db(source_db_path: Path):
    """SQLite adapter over the source database."""
    from stepback.database.adapters import SQLiteAdapter

    db = await SQLiteAdapter.connect(str(source_db_path))
    yield db
    await db.close()


@pytest_asyncio.fixture
async def dest_db(temp_dir: Path):
    """SQLite adapter over an empty destination database."""
    from stepback.database.adapters import SQLiteAdapter

    db = await SQLiteAdapter.connect(str(temp_dir / "dest.db"))
    yield db
    await db.close()


async def create_table(db_path: Path, name: str, row_count: int) -> None:
    """Create ``name`` with ``row_count`` generated rows."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            f'CREATE TABLE "{name}" (id INTEGER PRIMARY KEY, title TEXT, score REAL, data BLOB)'
        )
        await db.executemany(
            f'INSERT INTO "{name}" VALUES (?, ?, ?, ?)',
            [
                (i, f"{name} row {i}", i * 0.5, bytes([i % 256]))
                for i in range(1, row_count + 1)
            ],
        )
        await db.commit()


async def fetch_all(db_path: Path, table: str) -> List[tuple]:
    """All rows of ``table`` ordered by rowid."""
    async with aiosqlite.connect(db_path) as db:
        async with db.execute(f'SELECT * FROM "{table}" ORDER BY rowid') as cursor:
            return [tuple(row) for row in await cursor.fetchall()]


class RangeServer:
    """
    In-memory HTTP server honouring Range requests.

    Records every requested range so tests can assert what was fetched.
    """

    def __init__(self, content: bytes, ignore_range: bool = False):
        self.content = content
        self.ignore_range = ignore_range
        self.requests: List[str] = []
        self.fail_ranges: Dict[str, int] = {}
        self.truncate_ranges: set = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        range_header = request.headers.get("range", "")
        self.requests.append(range_header)

        if range_header in self.fail_ranges:
            return httpx.Response(self.fail_ranges[range_header])

        total = len(self.content)
        if self.ignore_range or not range_header.startswith("bytes="):
            return httpx.Response(
                200,
                content=self.content,
                headers={"Content-Length": str(total)},
            )

        start_s, end_s = range_header[len("bytes="):].split("-")
        start, end = int(start_s), min(int(end_s), total - 1)
        body = self.content[start:end + 1]
        if range_header in self.truncate_ranges:
            body = body[: len(body) // 2]

        return httpx.Response(
            206,
            content=body,
            headers={"Content-Range": f"bytes {start}-{end}/{total}"},
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def range_server_factory() -> Callable[..., RangeServer]:
    return RangeServer


@pytest.fixture
def make_table() -> Callable:
    return create_table


@pytest.fixture
def rows_of() -> Callable:
    return fetch_all
