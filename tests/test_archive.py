# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the multi-part archive builder and the batch extractor.
"""

import os
import stat
import zipfile
from pathlib import Path

import pytest

from stepback.archive.builder import (
    archive_step,
    cleanup_archive,
    load_archive_progress,
    part_path,
    scan_files,
    start_archive,
)
from stepback.archive.extractor import (
    extract_step,
    is_included,
    list_archive_contents,
    load_extract_progress,
    safe_target,
    start_extract,
    validate_archive,
)
from stepback.exceptions import (
    ArchiveInvalidError,
    NoFilesFoundError,
    ProgressError,
    ResourceUnavailableError,
    ValidationError,
)
from stepback.session import create_session


def _make_tree(root: Path) -> None:
    (root / "wp-content" / "uploads").mkdir(parents=True)
    (root / "wp-content" / "themes").mkdir(parents=True)
    (root / ".git").mkdir(parents=True)
    (root / "index.php").write_text("<?php echo 1;")
    (root / "wp-content" / "uploads" / "a.txt").write_text("a" * 100)
    (root / "wp-content" / "uploads" / "b.txt").write_text("b" * 100)
    (root / "wp-content" / "themes" / "style.css").write_text("body {}")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main")


async def _archive_all(config, session) -> list:
    results = []
    while True:
        result = await archive_step(config, session)
        results.append(result)
        if result.done:
            return results
        assert len(results) < 10_000


def _zip_names(path: Path) -> set:
    with zipfile.ZipFile(path) as zf:
        return set(zf.namelist())


# ============================================================================
# Directory walk
# ============================================================================

def test_scan_is_depth_first_sorted_and_prunes_first_level(temp_dir):
    source = temp_dir / "site"
    _make_tree(source)

    entries = scan_files(source, exclude=[".git"])

    assert [e.relative for e in entries] == [
        "index.php",
        "wp-content",
        "wp-content/themes",
        "wp-content/themes/style.css",
        "wp-content/uploads",
        "wp-content/uploads/a.txt",
        "wp-content/uploads/b.txt",
    ]
    assert entries[1].is_dir is True
    assert entries[5].size == 100


# ============================================================================
# Builder
# ============================================================================

@pytest.mark.asyncio
async def test_empty_source_raises_no_files_found(test_config, session, temp_dir):
    empty = temp_dir / "empty"
    empty.mkdir()

    with pytest.raises(NoFilesFoundError) as exc_info:
        await start_archive(test_config, session, empty)
    assert exc_info.value.kind == "no_files_found"

    with pytest.raises(NoFilesFoundError):
        await start_archive(test_config, session, temp_dir / "missing")

    with pytest.raises(ValidationError):
        await start_archive(test_config, session, "")


@pytest.mark.asyncio
async def test_everything_excluded_raises_no_files_found(test_config, session, temp_dir):
    source = temp_dir / "site"
    (source / ".git").mkdir(parents=True)
    (source / ".git" / "HEAD").write_text("x")

    with pytest.raises(NoFilesFoundError):
        await start_archive(test_config, session, source, exclude=[".git"])


@pytest.mark.asyncio
async def test_archive_single_part(test_config, session, temp_dir):
    source = temp_dir / "site"
    _make_tree(source)
    config = test_config.with_updates(archive_chunk_size=3)

    started = await start_archive(config, session, source, exclude=[".git"])
    assert started.resumed is False
    assert started.total_files == 7

    results = await _archive_all(config, session)

    assert len(results) == 3
    assert [r.current_index for r in results] == [3, 6, 7]
    final = results[-1]
    assert final.backed_up_count == 7
    assert final.error_count == 0
    assert final.percent == 100.0
    assert final.parts == [str(part_path(config, session, 0))]

    names = _zip_names(part_path(config, session, 0))
    assert "wp-content/uploads/a.txt" in names
    assert "wp-content/themes/" in names
    assert not any(name.startswith(".git") for name in names)

    # The record is deleted once done
    assert await load_archive_progress(config, session) is None


@pytest.mark.asyncio
async def test_parts_split_without_splitting_files(test_config, session, temp_dir):
    source = temp_dir / "data"
    source.mkdir()
    for i in range(6):
        (source / f"f{i}.bin").write_bytes(os.urandom(400))

    config = test_config.with_updates(max_part_size=1000, archive_chunk_size=4)
    await start_archive(config, session, source)
    results = await _archive_all(config, session)

    parts = results[-1].parts
    assert len(parts) >= 2
    assert Path(parts[0]).name == "filesystem.zip"
    assert Path(parts[1]).name == "filesystem_part2.zip"

    seen = []
    for part in parts:
        with zipfile.ZipFile(part) as zf:
            assert zf.testzip() is None
            infos = zf.infolist()
            assert sum(info.file_size for info in infos) <= 1000
            seen.extend(info.filename for info in infos)

    # Every file lands whole in exactly one part
    assert sorted(seen) == [f"f{i}.bin" for i in range(6)]


@pytest.mark.asyncio
async def test_oversized_file_gets_added_anyway(test_config, session, temp_dir):
    source = temp_dir / "data"
    source.mkdir()
    (source / "a_small.bin").write_bytes(b"y" * 10)
    (source / "b_big.bin").write_bytes(b"x" * 5000)
    (source / "c_small.bin").write_bytes(b"z" * 10)

    config = test_config.with_updates(max_part_size=1000)
    await start_archive(config, session, source)
    results = await _archive_all(config, session)

    # The big file joins the open part; the next small file rolls over
    assert results[-1].error_count == 0
    assert _zip_names(part_path(config, session, 0)) == {"a_small.bin", "b_big.bin"}
    assert _zip_names(part_path(config, session, 1)) == {"c_small.bin"}


@pytest.mark.asyncio
async def test_missing_file_is_a_per_entry_error(test_config, session, temp_dir):
    source = temp_dir / "site"
    _make_tree(source)
    config = test_config.with_updates(archive_chunk_size=100)

    await start_archive(config, session, source)
    (source / "index.php").unlink()

    result = await archive_step(config, session)

    assert result.done is True
    assert result.skipped_count == 1
    assert result.error_count == 1
    assert "index.php" in result.errors[0]
    assert "index.php" not in _zip_names(part_path(config, session, 0))


@pytest.mark.asyncio
async def test_start_resumes_existing_file_list(test_config, session, temp_dir):
    source = temp_dir / "site"
    _make_tree(source)
    config = test_config.with_updates(archive_chunk_size=2)

    await start_archive(config, session, source)
    await archive_step(config, session)

    # A file added after the walk is not picked up on resume
    (source / "late.txt").write_text("late")
    again = await start_archive(config, session, source)

    assert again.resumed is True
    assert again.current_index == 2
    assert again.total_files == 9


@pytest.mark.asyncio
async def test_resume_after_lost_progress_does_not_duplicate(test_config, session, temp_dir):
    """A step whose entries reached the zip but whose save was lost re-runs cleanly."""
    source = temp_dir / "site"
    _make_tree(source)
    config = test_config.with_updates(archive_chunk_size=4)

    await start_archive(config, session, source)
    progress_file = session.path("backup_progress.json")
    saved = progress_file.read_bytes()

    await archive_step(config, session)
    progress_file.write_bytes(saved)

    results = await _archive_all(config, session)
    assert results[-1].error_count == 0

    with zipfile.ZipFile(part_path(config, session, 0)) as zf:
        names = zf.namelist()
    assert len(names) == len(set(names)) == 9


@pytest.mark.asyncio
async def test_archive_step_before_start_raises(test_config, session):
    with pytest.raises(ProgressError):
        await archive_step(test_config, session)


@pytest.mark.asyncio
async def test_parts_go_to_destination_location(test_config, temp_dir):
    source = temp_dir / "site"
    _make_tree(source)
    out = temp_dir / "out"
    session = create_session(test_config, "dest", destination_location=str(out))

    await start_archive(test_config, session, source)
    results = await _archive_all(test_config, session)

    assert results[-1].parts == [str(out / "filesystem.zip")]


@pytest.mark.asyncio
async def test_new_session_does_not_inherit_previous_archive(test_config, temp_dir):
    """Two backups into the same destination each hold their own file contents."""
    source = temp_dir / "site"
    source.mkdir()
    (source / "a.txt").write_text("version one")
    (source / "old.txt").write_text("removed later")
    out = temp_dir / "backups"

    first = create_session(test_config, "first", destination_location=str(out))
    await start_archive(test_config, first, source)
    await _archive_all(test_config, first)

    (source / "a.txt").write_text("version two")
    (source / "old.txt").unlink()

    second = create_session(test_config, "second", destination_location=str(out))
    await start_archive(test_config, second, source)
    results = await _archive_all(test_config, second)

    assert results[-1].parts == [str(out / "filesystem.zip")]
    with zipfile.ZipFile(out / "filesystem.zip") as zf:
        assert zf.read("a.txt") == b"version two"
        assert zf.namelist() == ["a.txt"]


@pytest.mark.asyncio
async def test_fresh_start_removes_every_stale_part(test_config, temp_dir):
    source = temp_dir / "site"
    source.mkdir()
    (source / "small.txt").write_text("x")
    out = temp_dir / "backups"
    session = create_session(test_config, "fresh", destination_location=str(out))

    out.mkdir()
    for index in range(3):
        with zipfile.ZipFile(part_path(test_config, session, index), "w") as zf:
            zf.writestr("stale.txt", b"old")

    await start_archive(test_config, session, source)

    assert not part_path(test_config, session, 0).exists()
    assert not part_path(test_config, session, 1).exists()
    assert not part_path(test_config, session, 2).exists()


@pytest.mark.asyncio
async def test_cleanup_archive(test_config, session, temp_dir):
    source = temp_dir / "site"
    _make_tree(source)
    await start_archive(test_config, session, source)

    assert await cleanup_archive(test_config, session) is True
    assert await cleanup_archive(test_config, session) is False


def test_part_path_naming(test_config, session):
    config = test_config.with_updates(zip_name="site.zip")

    assert part_path(config, session, 0).name == "site.zip"
    assert part_path(config, session, 1).name == "site_part2.zip"
    assert part_path(config, session, 4).name == "site_part5.zip"


# ============================================================================
# Extractor
# ============================================================================

def _build_zip(path: Path, entries: dict, modes: dict | None = None) -> Path:
    modes = modes or {}
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in entries.items():
            info = zipfile.ZipInfo(name)
            if name in modes:
                info.external_attr = modes[name] << 16
            if name.endswith("/"):
                info.external_attr |= 0x10
            zf.writestr(info, content)
    return path


async def _extract_all(config, session, zip_path, destination, **kwargs) -> list:
    results = []
    while True:
        result = await extract_step(config, session, zip_path, destination, **kwargs)
        results.append(result)
        if result.done:
            return results
        assert len(results) < 10_000


@pytest.mark.asyncio
async def test_extract_in_batches(test_config, session, temp_dir):
    entries = {f"dir/file{i:02d}.txt": f"content {i}" for i in range(25)}
    zip_path = _build_zip(temp_dir / "a.zip", entries)
    destination = temp_dir / "restore"
    config = test_config.with_updates(extract_batch_size=10)

    started = await start_extract(config, session, zip_path, destination)
    assert started.total_units == 25

    results = await _extract_all(config, session, zip_path, destination)

    assert [r.current_index for r in results] == [10, 20, 25]
    assert sum(r.restored_count for r in results) == 25
    assert (destination / "dir" / "file07.txt").read_text() == "content 7"
    assert await load_extract_progress(config, session) is None


@pytest.mark.asyncio
async def test_extract_without_start_begins_at_zero(test_config, session, temp_dir):
    zip_path = _build_zip(temp_dir / "a.zip", {"x.txt": "x"})

    result = await extract_step(test_config, session, zip_path, temp_dir / "out")

    assert result.done is True
    assert result.restored_count == 1


@pytest.mark.asyncio
async def test_extract_round_trip_of_built_archive(test_config, session, temp_dir):
    source = temp_dir / "site"
    _make_tree(source)
    await start_archive(test_config, session, source, exclude=[".git"])
    await _archive_all(test_config, session)

    destination = temp_dir / "restored"
    extract_session = create_session(test_config, "extract")
    await _extract_all(test_config, extract_session, part_path(test_config, session, 0), destination)

    for relative in ("index.php", "wp-content/uploads/a.txt", "wp-content/themes/style.css"):
        assert (destination / relative).read_bytes() == (source / relative).read_bytes()
    assert (destination / "wp-content" / "uploads").is_dir()


@pytest.mark.asyncio
async def test_existing_files_are_not_overwritten_by_default(test_config, session, temp_dir):
    zip_path = _build_zip(temp_dir / "a.zip", {"keep.txt": "new"})
    destination = temp_dir / "out"
    destination.mkdir()
    (destination / "keep.txt").write_text("old")

    result = await extract_step(test_config, session, zip_path, destination)

    assert result.error_count == 1
    assert "overwrite is disabled" in result.errors[0]
    assert (destination / "keep.txt").read_text() == "old"


@pytest.mark.asyncio
async def test_overwrite_existing_replaces_files(test_config, session, temp_dir):
    zip_path = _build_zip(temp_dir / "a.zip", {"keep.txt": "new"})
    destination = temp_dir / "out"
    destination.mkdir()
    (destination / "keep.txt").write_text("old")

    result = await extract_step(test_config, session, zip_path, destination, overwrite_existing=True)

    assert result.error_count == 0
    assert (destination / "keep.txt").read_text() == "new"


@pytest.mark.asyncio
async def test_exclude_and_include_only(test_config, session, temp_dir):
    zip_path = _build_zip(
        temp_dir / "a.zip",
        {
            "node_modules/x.js": "x",
            "wp-content/themes/t.css": "t",
            "wp-content/themes-old/o.css": "o",
            "wp-content/plugins/p.php": "p",
            "index.php": "i",
        },
    )
    destination = temp_dir / "out"

    results = await _extract_all(
        test_config,
        session,
        zip_path,
        destination,
        exclude=["node_modules"],
        include_only=["wp-content/themes"],
    )

    assert results[-1].restored_count == 1
    assert results[-1].skipped_count == 4
    assert (destination / "wp-content" / "themes" / "t.css").exists()
    assert not (destination / "wp-content" / "themes-old").exists()
    assert not (destination / "index.php").exists()


@pytest.mark.asyncio
async def test_permissions_are_restored(test_config, session, temp_dir):
    zip_path = _build_zip(
        temp_dir / "a.zip",
        {"run.sh": "#!/bin/sh\n", "plain.txt": "p"},
        modes={"run.sh": 0o100755, "plain.txt": 0o100600},
    )
    destination = temp_dir / "out"

    await extract_step(test_config, session, zip_path, destination)

    assert stat.S_IMODE((destination / "run.sh").stat().st_mode) == 0o755
    assert stat.S_IMODE((destination / "plain.txt").stat().st_mode) == 0o600


@pytest.mark.asyncio
async def test_unsafe_entry_names_are_per_entry_errors(test_config, session, temp_dir):
    zip_path = _build_zip(temp_dir / "a.zip", {"../escape.txt": "x", "ok.txt": "ok"})
    destination = temp_dir / "out"

    result = await extract_step(test_config, session, zip_path, destination)

    assert result.done is True
    assert result.error_count == 1
    assert result.restored_count == 1
    assert not (temp_dir / "escape.txt").exists()


def test_safe_target_rejects_escapes(temp_dir):
    assert safe_target(temp_dir, "a/b.txt") == temp_dir / "a" / "b.txt"
    for name in ("/etc/passwd", "../x", "a/../../x", "C:/x"):
        with pytest.raises(ValueError):
            safe_target(temp_dir, name)


def test_is_included_uses_path_prefixes():
    assert is_included("anything", [])
    assert is_included("wp-content/themes/a.css", ["wp-content/themes"])
    assert is_included("wp-content/themes/", ["wp-content/themes/"])
    assert not is_included("wp-content/themes-old/a.css", ["wp-content/themes"])


@pytest.mark.asyncio
async def test_start_extract_validation(test_config, session, temp_dir):
    with pytest.raises(ValidationError):
        await start_extract(test_config, session, "", temp_dir / "out")

    with pytest.raises(ResourceUnavailableError):
        await start_extract(test_config, session, temp_dir / "missing.zip", temp_dir / "out")

    bogus = temp_dir / "bogus.zip"
    bogus.write_bytes(b"not a zip")
    with pytest.raises(ArchiveInvalidError):
        await start_extract(test_config, session, bogus, temp_dir / "out")


def test_list_and_validate_archive(temp_dir):
    zip_path = _build_zip(temp_dir / "a.zip", {"d/": "", "d/f.txt": "hello"})

    members = list_archive_contents(zip_path)

    assert [(m.name, m.is_dir, m.size) for m in members] == [("d/", True, 0), ("d/f.txt", False, 5)]
    assert validate_archive(zip_path) == 2

    bogus = temp_dir / "bogus.zip"
    bogus.write_bytes(b"PK not really")
    with pytest.raises(ArchiveInvalidError):
        validate_archive(bogus)
