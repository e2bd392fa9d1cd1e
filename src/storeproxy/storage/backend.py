"""Storage capability protocol for storeproxy."""

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

# Multipart transfer shape: 5 MiB parts, 4 in flight.
PART_SIZE = 5 * 1024 * 1024
QUEUE_SIZE = 4

# Streaming chunk size for reads: 64 KB
CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    """Raised when the storage service fails for any reason but a missing object."""


@dataclass
class StoredObject:
    """An object fetched from storage, with its body not yet read.

    Attributes:
        key: The object key.
        body: Async iterator over the object bytes.
        metadata: User metadata as stored (lowercased ``x-store-*`` names).
        content_type: The content type recorded by storage.
        content_length: Object size in bytes.
        last_modified: Timezone-aware modification time.
        etag: The entity tag exactly as storage reports it.
        release: Frees the underlying connection when the body is dropped unread.
    """

    key: str
    body: AsyncIterator[bytes]
    metadata: dict[str, str]
    content_type: str
    content_length: int
    last_modified: datetime
    etag: str
    release: Callable[[], None] | None = field(default=None, repr=False)

    async def discard(self) -> None:
        """Drop the body without reading it."""
        aclose = getattr(self.body, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.release is not None:
            self.release()


class ObjectStore(Protocol):
    """Protocol implemented by every storage backend.

    A backend is bound to a single bucket. Keys passed in are already
    normalized.
    """

    async def init(self) -> None:
        """Connect and verify the bucket is reachable."""
        ...

    async def close(self) -> None:
        """Release resources held by the backend."""
        ...

    async def check(self) -> None:
        """Confirm the backend can still serve requests.

        Raises:
            StorageError: If the backend is unreachable.
        """
        ...

    async def get(self, key: str) -> StoredObject:
        """Open an object for streaming.

        Raises:
            FileNotFoundError: If the object does not exist.
            StorageError: On any other failure.
        """
        ...

    async def put(
        self, key: str, metadata: dict[str, str], body: AsyncIterator[bytes]
    ) -> str:
        """Create or replace an object from a byte stream.

        Large bodies go up as a multipart transfer of ``PART_SIZE`` parts with
        ``QUEUE_SIZE`` parts in flight. A failed transfer leaves nothing
        behind.

        Returns:
            The entity tag of the stored object.
        """
        ...

    async def copy_metadata(self, key: str, metadata: dict[str, str]) -> None:
        """Replace an object's metadata wholesale, keeping its content.

        Raises:
            FileNotFoundError: If the object does not exist.
            StorageError: On any other failure.
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        ...

    async def presign(self, operation: str, key: str, ttl: int) -> str:
        """Return a URL that performs ``operation`` on ``key`` for ``ttl`` seconds."""
        ...


async def iter_parts(stream: AsyncIterator[bytes], part_size: int) -> AsyncIterator[bytes]:
    """Re-chunk a byte stream into fixed-size parts.

    Every part is exactly ``part_size`` bytes except the last, which may be
    shorter. An empty stream yields a single empty part.
    """
    buffer = bytearray()
    emitted = False
    async for chunk in stream:
        if not chunk:
            continue
        buffer.extend(chunk)
        while len(buffer) >= part_size:
            yield bytes(buffer[:part_size])
            del buffer[:part_size]
            emitted = True
    if buffer or not emitted:
        yield bytes(buffer)
