"""Object request handlers for storeproxy.

Implements the four object operations plus presigning:
    - GetObject (GET /{key} and GET /{path...})
    - PutObject (PUT /{key})
    - UpdateMetadata (PATCH /{key})
    - DeleteObject (DELETE /{key})
    - PresignObject (GET /{key}?presign[=seconds])

Every method takes the raw, still-encoded key text selected by the router and
normalizes it itself; nothing upstream of these handlers decodes it.
"""

import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse

from storeproxy.auth import can_read, require_authorized
from storeproxy.content import content_disposition, http_date, resolve_content_type
from storeproxy.errors import InvalidArgument, NoSuchObject, NotFound, UpstreamFailure
from storeproxy.keys import normalize_key
from storeproxy.metadata import TYPE_KEY, VISIBILITY_KEY, collect_store_metadata
from storeproxy.storage.backend import StorageError

logger = logging.getLogger(__name__)

DEFAULT_PRESIGN_TTL = 3600
MAX_PRESIGN_TTL = 604800  # 7 days, the S3 SigV4 limit


def _ok() -> Response:
    return PlainTextResponse("OK", status_code=200)


def parse_presign_ttl(value: str) -> int:
    """Parse the ``presign`` query value into a TTL in seconds.

    An empty value selects the default TTL.

    Raises:
        InvalidArgument: If the value is not an integer in [1, 604800].
    """
    if not value:
        return DEFAULT_PRESIGN_TTL
    try:
        ttl = int(value)
    except ValueError:
        raise InvalidArgument(f"presign must be an integer between 1 and {MAX_PRESIGN_TTL}")
    if ttl < 1 or ttl > MAX_PRESIGN_TTL:
        raise InvalidArgument(f"presign must be an integer between 1 and {MAX_PRESIGN_TTL}")
    return ttl


class ObjectHandler:
    """Handles object operations against the configured bucket.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def storage(self):
        """Shortcut to the storage backend on app.state."""
        return self.app.state.storage

    @property
    def authorizer(self):
        """Shortcut to the authorization predicate on app.state."""
        return self.app.state.authorizer

    async def get_object(self, request: Request, raw_key: str) -> Response:
        """Stream an object with its metadata projected onto headers.

        Any storage failure, and any denied read of a private object, is
        reported as 404 so private keys cannot be discovered.

        Args:
            request: The incoming HTTP request.
            raw_key: The encoded key text from the router.

        Returns:
            A streaming 200 response.
        """
        key = normalize_key(raw_key)

        try:
            obj = await self.storage.get(key)
        except FileNotFoundError:
            raise NotFound() from None
        except Exception as exc:
            logger.debug("Read of %s failed, answering 404: %r", key, exc)
            raise NotFound() from None

        headers = dict(obj.metadata)
        headers["content-type"] = resolve_content_type(
            obj.content_type, key, obj.metadata.get(TYPE_KEY)
        )
        headers["content-length"] = str(obj.content_length)
        headers["last-modified"] = http_date(obj.last_modified)
        headers["etag"] = obj.etag

        if not can_read(obj.metadata.get(VISIBILITY_KEY), self.authorizer, request):
            await obj.discard()
            raise NotFound()

        headers["content-disposition"] = content_disposition(key)
        return StreamingResponse(content=obj.body, status_code=200, headers=headers)

    async def put_object(self, request: Request, raw_key: str) -> Response:
        """Create or replace an object from the request body.

        The body is streamed straight into storage; ``x-store-*`` request
        headers become the object's metadata.
        """
        require_authorized(self.authorizer, request)
        key = normalize_key(raw_key)
        metadata = collect_store_metadata(request.headers)

        try:
            etag = await self.storage.put(key, metadata, request.stream())
        except StorageError as exc:
            logger.warning("Upload of %s failed: %s", key, exc)
            raise UpstreamFailure() from exc

        logger.debug("Stored %s (etag=%s, %d metadata fields)", key, etag, len(metadata))
        return _ok()

    async def patch_object(self, request: Request, raw_key: str) -> Response:
        """Replace an object's metadata without touching its content.

        Metadata is replaced wholesale, never merged. Patching a missing
        object fails with 502 NoSuchKey rather than creating it.
        """
        require_authorized(self.authorizer, request)
        key = normalize_key(raw_key)
        metadata = collect_store_metadata(request.headers)

        try:
            await self.storage.copy_metadata(key, metadata)
        except FileNotFoundError as exc:
            raise NoSuchObject(key) from exc
        except StorageError as exc:
            logger.warning("Metadata update of %s failed: %s", key, exc)
            raise UpstreamFailure() from exc

        return _ok()

    async def delete_object(self, request: Request, raw_key: str) -> Response:
        """Delete an object. Deleting a missing key still answers 200."""
        require_authorized(self.authorizer, request)
        key = normalize_key(raw_key)

        try:
            await self.storage.delete(key)
        except StorageError as exc:
            logger.warning("Delete of %s failed: %s", key, exc)
            raise UpstreamFailure() from exc

        return _ok()

    async def presign_object(self, request: Request, raw_key: str) -> Response:
        """Return a presigned download URL for the object as plain text.

        Only authorized callers may presign; everyone else gets the same 404
        as a denied private read.
        """
        key = normalize_key(raw_key)
        if not self.authorizer(request):
            raise NotFound()
        ttl = parse_presign_ttl(request.query_params.get("presign", ""))

        try:
            url = await self.storage.presign("get_object", key, ttl)
        except StorageError as exc:
            logger.warning("Presign of %s failed: %s", key, exc)
            raise UpstreamFailure() from exc

        return PlainTextResponse(url, status_code=200)
