"""S3 gateway storage backend for storeproxy.

Proxies every operation to one upstream bucket via aiobotocore. Works with
AWS S3 and with S3-compatible services (Cloudflare R2, MinIO) through
``endpoint_url``.

Key mapping:
    Objects:  {prefix}{key}

User metadata travels as S3 user metadata, so ``x-store-visibility`` is
stored upstream as ``x-amz-meta-x-store-visibility`` and comes back under its
original name.

Credentials are resolved via the standard AWS credential chain (env vars,
~/.aws/credentials, IAM role, etc.) unless explicit keys are configured.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from aiobotocore.session import AioSession
from botocore.exceptions import BotoCoreError, ClientError

from storeproxy.content import FALLBACK_CONTENT_TYPE
from storeproxy.storage.backend import (
    CHUNK_SIZE,
    PART_SIZE,
    QUEUE_SIZE,
    StorageError,
    StoredObject,
    iter_parts,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _raise_first_failure(tasks: list[asyncio.Task]) -> None:
    """Re-raise the error of the first finished part upload that failed."""
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()


async def _iter_body(body) -> AsyncIterator[bytes]:
    """Stream an aiobotocore response body in 64KB chunks."""
    async with body as stream:
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


class AWSGatewayBackend:
    """Storage backend that proxies to a single S3 bucket.

    Attributes:
        bucket_name: The upstream bucket name.
        region: The region for the bucket (``auto`` for R2).
        prefix: Key prefix for all objects in the upstream bucket.
        part_size: Multipart part size in bytes.
        queue_size: Number of part uploads allowed in flight.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        prefix: str = "",
        endpoint_url: str = "",
        use_path_style: bool = False,
        access_key_id: str = "",
        secret_access_key: str = "",
        part_size: int = PART_SIZE,
        queue_size: int = QUEUE_SIZE,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix
        self.endpoint_url = endpoint_url
        self.use_path_style = use_path_style
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.part_size = part_size
        self.queue_size = queue_size
        self._session = AioSession()
        self._client = None
        self._client_ctx = None

    def _s3_key(self, key: str) -> str:
        """Map an object key to its upstream S3 key."""
        return f"{self.prefix}{key}"

    async def init(self) -> None:
        """Create the aiobotocore S3 client and verify the upstream bucket exists.

        Raises:
            ValueError: If the upstream bucket does not exist or is inaccessible.
        """
        client_kwargs: dict = {"region_name": self.region}
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url
        if self.use_path_style:
            from botocore.config import Config as BotoConfig

            client_kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})

        # Use explicit credentials if provided, otherwise fall back to chain
        if self.access_key_id and self.secret_access_key:
            session = AioSession()
            session.set_credentials(self.access_key_id, self.secret_access_key)
            self._session = session
        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()

        try:
            await self._client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            code = _error_code(e)
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None
            raise ValueError(
                f"Cannot access upstream S3 bucket '{self.bucket_name}': {code}"
            ) from e

        logger.info(
            "S3 gateway backend initialized: bucket=%s region=%s endpoint=%s prefix='%s'",
            self.bucket_name,
            self.region,
            self.endpoint_url or "default",
            self.prefix,
        )

    async def close(self) -> None:
        """Close the aiobotocore client session."""
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None

    async def check(self) -> None:
        """Confirm the upstream bucket still answers.

        Raises:
            StorageError: If the client is closed or the bucket is unreachable.
        """
        if self._client is None:
            raise StorageError("S3 client is not initialized")
        try:
            await self._client.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"HeadBucket failed for {self.bucket_name}: {e}") from e

    async def get(self, key: str) -> StoredObject:
        """Open an object for streaming.

        Raises:
            FileNotFoundError: If the object does not exist.
            StorageError: On any other upstream failure.
        """
        s3_key = self._s3_key(key)
        try:
            resp = await self._client.get_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise FileNotFoundError(f"Object not found: {key}") from e
            raise StorageError(f"GetObject failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"GetObject failed for {key}: {e}") from e

        body = resp["Body"]
        return StoredObject(
            key=key,
            body=_iter_body(body),
            metadata=dict(resp.get("Metadata") or {}),
            content_type=resp.get("ContentType") or FALLBACK_CONTENT_TYPE,
            content_length=int(resp.get("ContentLength", 0)),
            last_modified=resp["LastModified"],
            etag=resp.get("ETag", ""),
            release=body.close,
        )

    async def put(
        self, key: str, metadata: dict[str, str], body: AsyncIterator[bytes]
    ) -> str:
        """Upload an object from a byte stream.

        A body that fits in one part is sent with a single PutObject.
        Anything larger becomes a multipart upload that is aborted if any
        part fails or the request is cancelled.

        Returns:
            The ETag reported by S3.
        """
        s3_key = self._s3_key(key)
        parts = iter_parts(body, self.part_size)
        first = await anext(parts)

        if len(first) < self.part_size:
            await parts.aclose()
            try:
                resp = await self._client.put_object(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    Body=first,
                    Metadata=metadata,
                )
            except (ClientError, BotoCoreError) as e:
                raise StorageError(f"PutObject failed for {key}: {e}") from e
            return resp.get("ETag", "")

        return await self._multipart_upload(key, metadata, first, parts)

    async def _multipart_upload(
        self,
        key: str,
        metadata: dict[str, str],
        first: bytes,
        rest: AsyncIterator[bytes],
    ) -> str:
        """Run a multipart upload, aborting it on any failure."""
        s3_key = self._s3_key(key)
        try:
            upload = await self._client.create_multipart_upload(
                Bucket=self.bucket_name, Key=s3_key, Metadata=metadata
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"CreateMultipartUpload failed for {key}: {e}") from e
        upload_id = upload["UploadId"]

        try:
            manifest = await self._upload_parts(s3_key, upload_id, first, rest)
            resp = await self._client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": manifest},
            )
        except (Exception, asyncio.CancelledError) as exc:
            await self._abort_upload(s3_key, upload_id)
            if isinstance(exc, (ClientError, BotoCoreError)):
                raise StorageError(f"Multipart upload failed for {key}: {exc}") from exc
            raise

        logger.debug("Multipart upload %s completed with %d parts", upload_id, len(manifest))
        return resp.get("ETag", "")

    async def _upload_parts(
        self,
        s3_key: str,
        upload_id: str,
        first: bytes,
        rest: AsyncIterator[bytes],
    ) -> list[dict]:
        """Upload parts with at most ``queue_size`` in flight.

        Each part is read whole from the stream and then waits for a free
        slot. At most ``queue_size`` parts are uploading while one more sits
        buffered behind them.
        """
        slots = asyncio.Semaphore(self.queue_size)
        tasks: list[asyncio.Task] = []

        async def send(part_number: int, data: bytes) -> dict:
            try:
                resp = await self._client.upload_part(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    Body=data,
                )
                return {"ETag": resp["ETag"], "PartNumber": part_number}
            finally:
                slots.release()

        async def schedule(data: bytes) -> None:
            await slots.acquire()
            _raise_first_failure(tasks)
            tasks.append(asyncio.create_task(send(len(tasks) + 1, data)))

        try:
            await schedule(first)
            async for data in rest:
                await schedule(data)
            return list(await asyncio.gather(*tasks))
        except (Exception, asyncio.CancelledError):
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _abort_upload(self, s3_key: str, upload_id: str) -> None:
        """Abort a multipart upload so S3 discards its parts."""
        try:
            await self._client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
            )
        except Exception:
            logger.warning("Failed to abort multipart upload %s", upload_id, exc_info=True)
        else:
            logger.info("Aborted multipart upload %s for %s", upload_id, s3_key)

    async def copy_metadata(self, key: str, metadata: dict[str, str]) -> None:
        """Replace an object's metadata with a same-key server-side copy.

        Raises:
            FileNotFoundError: If the object does not exist.
            StorageError: On any other upstream failure.
        """
        s3_key = self._s3_key(key)
        try:
            await self._client.copy_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                CopySource={"Bucket": self.bucket_name, "Key": s3_key},
                MetadataDirective="REPLACE",
                Metadata=metadata,
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise FileNotFoundError(f"Object not found: {key}") from e
            raise StorageError(f"CopyObject failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"CopyObject failed for {key}: {e}") from e

    async def delete(self, key: str) -> None:
        """Delete an object from the upstream bucket.

        Idempotent: S3 delete_object does not error on missing keys.
        """
        s3_key = self._s3_key(key)
        try:
            await self._client.delete_object(Bucket=self.bucket_name, Key=s3_key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"DeleteObject failed for {key}: {e}") from e

    async def presign(self, operation: str, key: str, ttl: int) -> str:
        """Generate a presigned URL for ``operation`` (e.g. ``get_object``)."""
        try:
            return await self._client.generate_presigned_url(
                operation,
                Params={"Bucket": self.bucket_name, "Key": self._s3_key(key)},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Presigning {operation} failed for {key}: {e}") from e
