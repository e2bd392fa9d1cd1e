"""In-memory storage backend for storeproxy.

Implements the ObjectStore protocol with a plain dictionary. Intended for
local development and tests; nothing survives a restart.

Uploads are consumed part by part exactly like the S3 gateway does, and an
object only becomes visible once its whole body has been read, so a failed
upload never leaves a partial object behind. ETags follow the S3 scheme:
the quoted MD5 of the content for single-part uploads, and the MD5 of the
concatenated part digests suffixed with ``-<parts>`` for multipart ones.
"""

import hashlib
import logging
import urllib.parse
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timezone

from storeproxy.content import FALLBACK_CONTENT_TYPE
from storeproxy.storage.backend import CHUNK_SIZE, PART_SIZE, StoredObject, iter_parts

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    data: bytes
    metadata: dict[str, str]
    content_type: str
    last_modified: datetime
    etag: str


async def _iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    for offset in range(0, len(data), CHUNK_SIZE):
        yield data[offset:offset + CHUNK_SIZE]


class MemoryStorageBackend:
    """Storage backend that holds every object in memory.

    Attributes:
        part_size: Size of the parts uploads are split into.
    """

    def __init__(self, part_size: int = PART_SIZE) -> None:
        self.part_size = part_size
        self._objects: dict[str, _Entry] = {}

    async def init(self) -> None:
        logger.info("Memory storage backend initialized (part_size=%d)", self.part_size)

    async def close(self) -> None:
        self._objects.clear()

    async def check(self) -> None:
        pass

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    async def get(self, key: str) -> StoredObject:
        entry = self._objects.get(key)
        if entry is None:
            raise FileNotFoundError(f"Object not found: {key}")
        return StoredObject(
            key=key,
            body=_iter_bytes(entry.data),
            metadata=dict(entry.metadata),
            content_type=entry.content_type,
            content_length=len(entry.data),
            last_modified=entry.last_modified,
            etag=entry.etag,
        )

    async def put(
        self, key: str, metadata: dict[str, str], body: AsyncIterator[bytes]
    ) -> str:
        parts: list[bytes] = []
        async for part in iter_parts(body, self.part_size):
            parts.append(part)

        data = b"".join(parts)
        if len(parts) == 1:
            etag = f'"{hashlib.md5(data).hexdigest()}"'
        else:
            digests = b"".join(hashlib.md5(part).digest() for part in parts)
            etag = f'"{hashlib.md5(digests).hexdigest()}-{len(parts)}"'

        self._objects[key] = _Entry(
            data=data,
            metadata=dict(metadata),
            content_type=FALLBACK_CONTENT_TYPE,
            last_modified=datetime.now(timezone.utc),
            etag=etag,
        )
        return etag

    async def copy_metadata(self, key: str, metadata: dict[str, str]) -> None:
        entry = self._objects.get(key)
        if entry is None:
            raise FileNotFoundError(f"Object not found: {key}")
        entry.metadata = dict(metadata)
        entry.last_modified = datetime.now(timezone.utc)

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)

    async def presign(self, operation: str, key: str, ttl: int) -> str:
        quoted = urllib.parse.quote(key, safe="/")
        return f"memory:///{quoted}?operation={operation}&expires={ttl}"
