"""
Base protocol and helpers for archive object storage.

This module defines the ObjectStore protocol implemented by every storage
adapter, the retry policy for transient failures, and the factory that picks
an adapter from configuration.

Invariants:
    - upload() either commits the whole object or leaves nothing visible
    - Only TransientStorageError is retried; everything else propagates at once
    - Timeouts apply to each network operation, never to a whole archive run

How to change safely:
    - Protocol changes require updating all adapters
    - Keep retry bounds small; the scheduler re-runs failed jobs anyway
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable

from ..errors import OperationCancelledError, TransientStorageError

if TYPE_CHECKING:
    from ..config import VaultConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient storage failures.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt (seconds)
        max_delay: Upper bound for any single delay (seconds)
        jitter: Fraction of the delay randomised to spread retries
    """

    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 5.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("delays must satisfy 0 <= base_delay <= max_delay")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return min(delay, self.max_delay)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
) -> T:
    """Run an async operation, retrying transient storage failures.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy
        description: Human-readable operation name for logs

    Returns:
        The operation's result

    Raises:
        TransientStorageError: If every attempt failed transiently
        StorageError: Immediately, for non-transient failures
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except TransientStorageError as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    f"{description} failed after {attempt} attempts: {e}",
                    extra={"attempts": attempt},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed transiently, retrying in {delay:.2f}s: {e}",
                extra={"attempt": attempt, "max_attempts": policy.max_attempts},
            )
            await asyncio.sleep(delay)
            attempt += 1


def split_parts(data: bytes, part_size: int) -> list[bytes]:
    """Split an object into fixed-size parts; the last part may be shorter.

    An empty object is a single empty part.
    """
    if part_size <= 0:
        raise ValueError(f"part_size must be positive, got {part_size}")
    if not data:
        return [b""]
    return [data[i : i + part_size] for i in range(0, len(data), part_size)]


def check_cancelled(cancel: asyncio.Event | None, key: str) -> None:
    """Raise OperationCancelledError if the cancel signal is set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(f"Transfer of {key} cancelled")


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for archive object storage backends.

    Atomicity contract:
        - upload() commits the object only after every part succeeded
        - A failed or cancelled upload leaves no object (and no orphan parts)

    Example:
        >>> async with S3ObjectStore(s3_config) as store:
        ...     size = await store.upload(key, data, part_size=5 * MIB,
        ...                               max_concurrency=4, timeout=60)
        ...     data = await store.download(key, timeout=60)
    """

    @abstractmethod
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
        """Upload an object using a multipart transfer.

        Args:
            key: Object key
            data: Object contents
            part_size: Size of each part in bytes
            max_concurrency: Maximum parts in flight
            timeout: Timeout for each network operation (seconds)
            metadata: User metadata stored with the object
            cancel: Optional cancel signal checked between parts

        Returns:
            Number of bytes stored

        Raises:
            TransientStorageError: If retries were exhausted
            StorageError: For non-transient failures
            OperationCancelledError: If cancelled (the upload is aborted)
        """
        ...

    @abstractmethod
    async def download(self, key: str, *, timeout: float) -> bytes:
        """Download a whole object.

        Raises:
            ObjectNotFoundError: If the key does not exist
            StorageError: For other failures
        """
        ...

    @abstractmethod
    async def delete(self, key: str, *, timeout: float) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        ...

    @abstractmethod
    async def exists(self, key: str, *, timeout: float) -> bool:
        """Whether an object is visible at the key."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release client resources."""
        ...


def create_object_store(config: VaultConfig) -> ObjectStore:
    """Factory function to create an object store from configuration.

    Args:
        config: AuditVault configuration

    Returns:
        Appropriate ObjectStore implementation

    Raises:
        ValueError: If the provider is not supported
    """
    from ..config import StorageProvider
    from .local import LocalObjectStore
    from .s3 import S3ObjectStore

    retry = RetryPolicy(
        max_attempts=config.archive.max_retries,
        base_delay=config.archive.retry_base_delay,
        max_delay=config.archive.retry_max_delay,
    )

    if config.archive.provider == StorageProvider.S3:
        return S3ObjectStore(
            config.s3,
            retry=retry,
            enable_encryption=config.archive.enable_encryption,
            kms_key_id=config.archive.kms_key_id,
        )
    elif config.archive.provider == StorageProvider.LOCAL:
        return LocalObjectStore(config.local.root_dir, retry=retry)
    else:
        raise ValueError(f"Unsupported storage provider: {config.archive.provider}")
