#!/usr/bin/env python3
"""
Tests for the transfer module
"""

import asyncio
import os
from datetime import datetime, timezone

import pytest

import transfer
from errors import FileIOError, InvalidFilenameError, UploadsDisabledError
from transfer import UploadStore, safe_filename, stream_file

FIXED_TIME = datetime(2026, 10, 18, 13, 42, 7, 123456, tzinfo=timezone.utc)


async def chunked(*parts):
    for part in parts:
        yield part


async def collect(iterator):
    return b"".join([chunk async for chunk in iterator])


def listing(directory):
    return sorted(os.listdir(directory))


# ============================================================================
# Download
# ============================================================================

def test_stream_file_returns_exact_bytes(tmp_path):
    data = bytes(range(256)) * 100
    path = tmp_path / "data.bin"
    path.write_bytes(data)

    chunks = asyncio.run(collect(stream_file(str(path), chunk_size=1000)))
    assert chunks == data


def test_stream_file_stops_at_size(tmp_path):
    path = tmp_path / "growing.log"
    path.write_bytes(b"0123456789")
    size = os.stat(path).st_size

    with open(path, "ab") as f:
        f.write(b"appended later")

    chunks = asyncio.run(collect(stream_file(str(path), chunk_size=4, size=size)))
    assert chunks == b"0123456789"


def test_stream_file_ends_when_file_shrinks(tmp_path):
    path = tmp_path / "shrinking.log"
    path.write_bytes(b"0123")

    assert asyncio.run(collect(stream_file(str(path), size=10))) == b"0123"


def test_stream_file_read_error_truncates(tmp_path, monkeypatch):
    path = tmp_path / "data.bin"
    path.write_bytes(b"a" * 10)

    class BrokenFile:
        def __init__(self):
            self.calls = 0

        async def read(self, size):
            self.calls += 1
            if self.calls > 1:
                raise OSError(5, "Input/output error")
            return b"first"

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

    monkeypatch.setattr(transfer.aiofiles, "open", lambda *args, **kwargs: BrokenFile())

    assert asyncio.run(collect(stream_file(str(path)))) == b"first"


# ============================================================================
# Upload
# ============================================================================

def test_safe_filename():
    assert safe_filename("a.txt") == "a.txt"
    assert safe_filename("../../etc/passwd") == "passwd"
    assert safe_filename("C:\\Users\\me\\report.pdf") == "report.pdf"
    for bad in ("", ".", "..", "/", "uploads/.."):
        with pytest.raises(InvalidFilenameError):
            safe_filename(bad)


def test_upload_round_trip_without_timestamp(tmp_path):
    store = UploadStore(str(tmp_path / "uploads"))
    content = b"hello\x00world" * 1000

    record = asyncio.run(store.receive("a.txt", chunked(content[:7], content[7:]), expected_size=len(content)))

    assert record.stored_name == "a.txt"
    assert record.timestamp is None
    assert record.size == len(content)
    assert (tmp_path / "uploads" / "a.txt").read_bytes() == content
    assert asyncio.run(collect(stream_file(record.path))) == content


def test_upload_overwrites_without_timestamp(tmp_path):
    store = UploadStore(str(tmp_path))

    asyncio.run(store.receive("a.txt", chunked(b"first")))
    asyncio.run(store.receive("a.txt", chunked(b"second")))

    assert listing(tmp_path) == ["a.txt"]
    assert (tmp_path / "a.txt").read_bytes() == b"second"


def test_upload_with_timestamp(tmp_path):
    store = UploadStore(str(tmp_path), timestamp=True, clock=lambda: FIXED_TIME)

    record = asyncio.run(store.receive("a.txt", chunked(b"content")))

    assert record.timestamp == "20261018T134207.123456Z"
    assert record.stored_name == "20261018T134207.123456Z_a.txt"
    assert (tmp_path / record.stored_name).read_bytes() == b"content"


def test_upload_timestamps_keep_same_named_uploads_apart(tmp_path):
    times = iter([FIXED_TIME, FIXED_TIME.replace(microsecond=999999)])
    store = UploadStore(str(tmp_path), timestamp=True, clock=lambda: next(times))

    first = asyncio.run(store.receive("a.txt", chunked(b"one")))
    second = asyncio.run(store.receive("a.txt", chunked(b"two")))

    assert first.stored_name != second.stored_name
    assert listing(tmp_path) == sorted([first.stored_name, second.stored_name])


def test_upload_creates_directory(tmp_path):
    directory = tmp_path / "nested" / "uploads"
    store = UploadStore(str(directory))

    asyncio.run(store.receive("a.txt", chunked(b"x")))
    store.ensure_directory()  # idempotent

    assert (directory / "a.txt").read_bytes() == b"x"


def test_upload_disabled(tmp_path):
    store = UploadStore(str(tmp_path / "uploads"), enabled=False)

    with pytest.raises(UploadsDisabledError):
        asyncio.run(store.receive("a.txt", chunked(b"x")))
    assert not (tmp_path / "uploads").exists()


def test_upload_uncreatable_directory(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_bytes(b"")
    store = UploadStore(str(blocker / "uploads"))

    with pytest.raises(FileIOError):
        asyncio.run(store.receive("a.txt", chunked(b"x")))


def test_short_upload_leaves_no_file(tmp_path):
    store = UploadStore(str(tmp_path))

    with pytest.raises(FileIOError):
        asyncio.run(store.receive("a.txt", chunked(b"abc"), expected_size=10))
    assert listing(tmp_path) == []


def test_failed_stream_leaves_no_partial_file(tmp_path):
    store = UploadStore(str(tmp_path))

    async def broken():
        yield b"partial content"
        raise ConnectionResetError("client went away")

    with pytest.raises(FileIOError):
        asyncio.run(store.receive("a.txt", broken()))
    assert listing(tmp_path) == []


def test_failed_upload_keeps_previous_version(tmp_path):
    store = UploadStore(str(tmp_path))
    asyncio.run(store.receive("a.txt", chunked(b"original")))

    with pytest.raises(FileIOError):
        asyncio.run(store.receive("a.txt", chunked(b"new"), expected_size=100))
    assert (tmp_path / "a.txt").read_bytes() == b"original"


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
