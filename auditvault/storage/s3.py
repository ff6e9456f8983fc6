"""
S3 object store for archive batches.

Uses aiobotocore for async multipart uploads to AWS S3 or any S3-compatible
service (MinIO, LocalStack).

Invariants:
    - Objects become visible only through CompleteMultipartUpload
    - Any failed or cancelled part aborts the multipart upload, which also
      releases the parts already stored
    - Server-side encryption is requested on every upload when enabled
    - Error codes are mapped to the storage error taxonomy; only transient
      ones are retried

How to change safely:
    - Test against MinIO (tests/e2e) before changing transfer logic
    - S3 requires parts of at least 5 MiB except the last one
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from ..codec.columnar import CONTENT_TYPE
from ..errors import (
    ObjectNotFoundError,
    StorageError,
    StoragePermissionError,
    StorageQuotaError,
    StorageTimeoutError,
    TransientStorageError,
)
from .base import RetryPolicy, check_cancelled, split_parts, with_retries

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
}
_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_PERMISSION_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "403",
}
_QUOTA_CODES = {"QuotaExceeded", "ServiceQuotaExceeded", "EntityTooLarge"}
_NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def translate_error(error: Exception, key: str) -> StorageError:
    """Map a botocore exception onto the storage error taxonomy."""
    if isinstance(error, ClientError):
        info = error.response.get("Error", {})
        code = str(info.get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        message = f"S3 {code or status} for {key}: {info.get('Message', error)}"

        if code in _NOT_FOUND_CODES or status == 404:
            return ObjectNotFoundError(message, key=key)
        if code in _PERMISSION_CODES or status == 403:
            return StoragePermissionError(message, key=key)
        if code in _QUOTA_CODES:
            return StorageQuotaError(message, key=key)
        if code in _TRANSIENT_CODES or status >= 500:
            return TransientStorageError(message, key=key)
        return StorageError(message, key=key)

    if isinstance(error, NoCredentialsError):
        return StoragePermissionError(f"No S3 credentials available: {error}", key=key)
    if isinstance(error, _NETWORK_ERRORS):
        return TransientStorageError(f"S3 network error for {key}: {error}", key=key)
    return StorageError(f"S3 error for {key}: {error}", key=key)


class S3ObjectStore:
    """S3 implementation of the ObjectStore protocol.

    Attributes:
        config: S3Config instance
        retry: Retry policy for transient failures

    Example:
        >>> store = S3ObjectStore(S3Config(bucket="audit-archive-prod"))
        >>> size = await store.upload(key, data, part_size=5 * MIB,
        ...                           max_concurrency=10, timeout=300)
        >>> await store.close()
    """

    def __init__(
        self,
        config: Any,
        retry: RetryPolicy | None = None,
        enable_encryption: bool = True,
        kms_key_id: str | None = None,
        client: Any = None,
    ) -> None:
        """Initialize the store.

        Args:
            config: S3Config instance
            retry: Retry policy (defaults to RetryPolicy())
            enable_encryption: Request server-side encryption on upload
            kms_key_id: Use SSE-KMS with this key instead of SSE-S3
            client: Pre-built S3 client (tests); created lazily otherwise
        """
        self.config = config
        self.bucket = config.bucket
        self.retry = retry or RetryPolicy()
        self.enable_encryption = enable_encryption
        self.kms_key_id = kms_key_id

        self._client = client
        self._client_ctx = None
        self._session = None

    async def __aenter__(self) -> S3ObjectStore:
        await self._get_client()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        self._session = get_session()
        client_kwargs = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()
        logger.info(
            "Connected to S3",
            extra={
                "bucket": self.bucket,
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )
        return self._client

    async def close(self) -> None:
        """Close the S3 client if this store created it."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing S3 client: {e}")
            self._client_ctx = None
            self._client = None

    async def _call(self, method: Any, key: str, timeout: float, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(method(Bucket=self.bucket, Key=key, **kwargs), timeout)
        except asyncio.TimeoutError:
            raise StorageTimeoutError(
                f"S3 {method.__name__} timed out after {timeout}s", key=key
            ) from None
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, key) from e

    def _create_args(self, metadata: dict[str, str] | None) -> dict[str, Any]:
        args: dict[str, Any] = {"ContentType": CONTENT_TYPE}
        if metadata:
            args["Metadata"] = metadata
        if self.enable_encryption:
            if self.kms_key_id:
                args["ServerSideEncryption"] = "aws:kms"
                args["SSEKMSKeyId"] = self.kms_key_id
            else:
                args["ServerSideEncryption"] = "AES256"
        return args

    async def upload(
        self,
        key: str,
        data: bytes,
        *,
        part_size: int,
        max_concurrency: int,
        timeout: float,
        metadata: dict[str, str] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> int:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")

        client = await self._get_client()
        parts = split_parts(data, part_size)
        check_cancelled(cancel, key)

        created = await with_retries(
            lambda: self._call(
                client.create_multipart_upload, key, timeout, **self._create_args(metadata)
            ),
            self.retry,
            f"create multipart upload {key}",
        )
        upload_id = created["UploadId"]
        semaphore = asyncio.Semaphore(max_concurrency)

        async def upload_part(number: int, body: bytes) -> dict[str, Any]:
            async with semaphore:
                check_cancelled(cancel, key)
                response = await with_retries(
                    lambda: self._call(
                        client.upload_part,
                        key,
                        timeout,
                        UploadId=upload_id,
                        PartNumber=number,
                        Body=body,
                    ),
                    self.retry,
                    f"upload part {number} of {key}",
                )
                return {"ETag": response["ETag"], "PartNumber": number}

        tasks = [
            asyncio.create_task(upload_part(number, body))
            for number, body in enumerate(parts, start=1)
        ]
        try:
            completed = await asyncio.gather(*tasks)
            check_cancelled(cancel, key)
            await with_retries(
                lambda: self._call(
                    client.complete_multipart_upload,
                    key,
                    timeout,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": completed},
                ),
                self.retry,
                f"complete multipart upload {key}",
            )
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._abort(client, key, upload_id, timeout)
            raise

        logger.info(
            "Uploaded archive object",
            extra={
                "bucket": self.bucket,
                "key": key,
                "size_bytes": len(data),
                "parts": len(parts),
            },
        )
        return len(data)

    async def _abort(self, client: Any, key: str, upload_id: str, timeout: float) -> None:
        try:
            await with_retries(
                lambda: self._call(
                    client.abort_multipart_upload, key, timeout, UploadId=upload_id
                ),
                self.retry,
                f"abort multipart upload {key}",
            )
            logger.warning("Aborted multipart upload", extra={"key": key, "upload_id": upload_id})
        except StorageError as e:
            # Parts stay billable until a bucket lifecycle rule cleans them up.
            logger.error(
                f"Failed to abort multipart upload: {e}",
                extra={"key": key, "upload_id": upload_id},
            )

    async def download(self, key: str, *, timeout: float) -> bytes:
        client = await self._get_client()

        async def fetch() -> bytes:
            response = await self._call(client.get_object, key, timeout)
            try:
                async with response["Body"] as stream:
                    return await asyncio.wait_for(stream.read(), timeout)
            except asyncio.TimeoutError:
                raise StorageTimeoutError(f"S3 read of {key} timed out", key=key) from None
            except (ClientError, BotoCoreError) as e:
                raise translate_error(e, key) from e

        data = await with_retries(fetch, self.retry, f"download {key}")
        logger.debug("Downloaded archive object", extra={"key": key, "size_bytes": len(data)})
        return data

    async def delete(self, key: str, *, timeout: float) -> None:
        client = await self._get_client()
        await with_retries(
            lambda: self._call(client.delete_object, key, timeout),
            self.retry,
            f"delete {key}",
        )
        logger.info("Deleted archive object", extra={"bucket": self.bucket, "key": key})

    async def exists(self, key: str, *, timeout: float) -> bool:
        client = await self._get_client()
        try:
            await with_retries(
                lambda: self._call(client.head_object, key, timeout),
                self.retry,
                f"head {key}",
            )
        except ObjectNotFoundError:
            return False
        return True
