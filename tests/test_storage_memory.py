"""Unit tests for the in-memory storage backend."""

import hashlib

import pytest

from storeproxy.storage.backend import PART_SIZE, iter_parts
from storeproxy.storage.memory import MemoryStorageBackend


async def _stream(*chunks: bytes):
    for chunk in chunks:
        yield chunk


async def _failing_stream(*chunks: bytes):
    for chunk in chunks:
        yield chunk
    raise ConnectionResetError("client went away")


async def _read(obj) -> bytes:
    return b"".join([chunk async for chunk in obj.body])


class TestIterParts:
    """Tests for iter_parts()."""

    async def test_rechunks_to_part_size(self):
        parts = [p async for p in iter_parts(_stream(b"ab", b"cdefg", b"hij"), 4)]
        assert parts == [b"abcd", b"efgh", b"ij"]

    async def test_exact_multiple(self):
        parts = [p async for p in iter_parts(_stream(b"abcdefgh"), 4)]
        assert parts == [b"abcd", b"efgh"]

    async def test_empty_stream_yields_one_empty_part(self):
        parts = [p async for p in iter_parts(_stream(), 4)]
        assert parts == [b""]

    async def test_empty_chunks_skipped(self):
        parts = [p async for p in iter_parts(_stream(b"", b"ab", b""), 4)]
        assert parts == [b"ab"]


class TestMemoryStorage:
    """Tests for MemoryStorageBackend."""

    async def test_put_then_get(self):
        storage = MemoryStorageBackend()
        await storage.init()
        etag = await storage.put("a.txt", {"x-store-type": "text"}, _stream(b"hello ", b"world"))

        obj = await storage.get("a.txt")
        assert await _read(obj) == b"hello world"
        assert obj.metadata == {"x-store-type": "text"}
        assert obj.content_length == 11
        assert obj.content_type == "application/octet-stream"
        assert obj.etag == etag == f'"{hashlib.md5(b"hello world").hexdigest()}"'
        assert obj.last_modified.tzinfo is not None

    async def test_get_missing(self):
        storage = MemoryStorageBackend()
        with pytest.raises(FileNotFoundError):
            await storage.get("missing")

    async def test_empty_body(self):
        storage = MemoryStorageBackend()
        await storage.put("empty", {}, _stream())
        obj = await storage.get("empty")
        assert await _read(obj) == b""
        assert obj.content_length == 0

    async def test_multipart_etag(self):
        storage = MemoryStorageBackend(part_size=4)
        etag = await storage.put("big", {}, _stream(b"abcdefghij"))

        digests = b"".join(hashlib.md5(p).digest() for p in (b"abcd", b"efgh", b"ij"))
        assert etag == f'"{hashlib.md5(digests).hexdigest()}-3"'
        assert await _read(await storage.get("big")) == b"abcdefghij"

    async def test_failed_upload_leaves_nothing(self):
        storage = MemoryStorageBackend(part_size=4)
        with pytest.raises(ConnectionResetError):
            await storage.put("big", {}, _failing_stream(b"abcdefgh"))
        assert "big" not in storage

    async def test_failed_overwrite_keeps_previous(self):
        storage = MemoryStorageBackend(part_size=4)
        await storage.put("k", {}, _stream(b"old"))
        with pytest.raises(ConnectionResetError):
            await storage.put("k", {}, _failing_stream(b"newnewnew"))
        assert await _read(await storage.get("k")) == b"old"

    async def test_put_replaces_metadata(self):
        storage = MemoryStorageBackend()
        await storage.put("k", {"x-store-a": "1"}, _stream(b"v1"))
        await storage.put("k", {"x-store-b": "2"}, _stream(b"v2"))
        obj = await storage.get("k")
        assert obj.metadata == {"x-store-b": "2"}

    async def test_copy_metadata_replaces_wholesale(self):
        storage = MemoryStorageBackend()
        await storage.put("k", {"x-store-a": "1"}, _stream(b"body"))
        before = (await storage.get("k")).etag

        await storage.copy_metadata("k", {"x-store-visibility": "public"})

        obj = await storage.get("k")
        assert obj.metadata == {"x-store-visibility": "public"}
        assert obj.etag == before
        assert await _read(obj) == b"body"

    async def test_copy_metadata_missing(self):
        storage = MemoryStorageBackend()
        with pytest.raises(FileNotFoundError):
            await storage.copy_metadata("missing", {})
        assert "missing" not in storage

    async def test_delete_idempotent(self):
        storage = MemoryStorageBackend()
        await storage.put("k", {}, _stream(b"x"))
        await storage.delete("k")
        await storage.delete("k")
        assert "k" not in storage

    async def test_returned_metadata_is_a_copy(self):
        storage = MemoryStorageBackend()
        await storage.put("k", {"x-store-a": "1"}, _stream(b"x"))
        obj = await storage.get("k")
        obj.metadata["x-store-a"] = "changed"
        assert (await storage.get("k")).metadata == {"x-store-a": "1"}

    async def test_presign(self):
        storage = MemoryStorageBackend()
        url = await storage.presign("get_object", "dir/my file.txt", 60)
        assert url == "memory:///dir/my%20file.txt?operation=get_object&expires=60"

    async def test_close_clears(self):
        storage = MemoryStorageBackend()
        await storage.put("k", {}, _stream(b"x"))
        await storage.close()
        assert "k" not in storage

    async def test_check_always_ready(self):
        await MemoryStorageBackend().check()

    def test_default_part_size(self):
        assert MemoryStorageBackend().part_size == PART_SIZE

    async def test_large_body_streams_in_chunks(self):
        storage = MemoryStorageBackend()
        data = b"z" * (200 * 1024)
        await storage.put("big", {}, _stream(data))
        obj = await storage.get("big")
        chunks = [c async for c in obj.body]
        assert len(chunks) == 4
        assert b"".join(chunks) == data

    async def test_discard_closes_body(self):
        storage = MemoryStorageBackend()
        await storage.put("k", {}, _stream(b"abc"))
        obj = await storage.get("k")
        await obj.discard()
        assert [c async for c in obj.body] == []
