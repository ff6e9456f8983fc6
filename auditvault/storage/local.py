"""
Local filesystem object store.

Plays the role of a bucket for local development, tests and air-gapped
deployments. The multipart flow mirrors S3:

    root_dir/.staging/<upload_id>/part-00001   (up to max_concurrency in flight)
    root_dir/.staging/<upload_id>/assembled    (parts concatenated in order)
    root_dir/<key>                             (atomic os.replace)

Invariants:
    - An object appears at its key only after every part was written
    - A failed or cancelled upload removes its staging directory
    - File I/O is synchronous, as in the SQLite stores, so no write can
      outlive the task that issued it

How to change safely:
    - Keep the staging directory on the same filesystem as root_dir so the
      final rename stays atomic
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Any

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

STAGING_DIR = ".staging"


def _translate_os_error(error: OSError, key: str) -> StorageError:
    if isinstance(error, FileNotFoundError):
        return ObjectNotFoundError(f"Object not found: {key}", key=key)
    if isinstance(error, PermissionError):
        return StoragePermissionError(f"Permission denied for {key}: {error}", key=key)
    if error.errno in (errno.ENOSPC, errno.EDQUOT):
        return StorageQuotaError(f"No space left for {key}: {error}", key=key)
    return StorageError(f"Filesystem error for {key}: {error}", key=key)


class LocalObjectStore:
    """Filesystem implementation of the ObjectStore protocol.

    Testing helpers:
        fail_parts: part numbers whose writes fail permanently
        transient_part_failures: number of part writes that fail transiently
            before succeeding
        part_delay: seconds each part write waits (to exercise timeouts and
            cancellation)

    Example:
        >>> store = LocalObjectStore("/var/lib/auditvault/objects")
        >>> await store.upload(key, data, part_size=1024, max_concurrency=4, timeout=30)
    """

    def __init__(self, root_dir: str | Path, retry: RetryPolicy | None = None) -> None:
        self.root_dir = Path(root_dir)
        self.retry = retry or RetryPolicy()

        self.fail_parts: set[int] = set()
        self.transient_part_failures = 0
        self.part_delay = 0.0
        self.parts_written = 0

    async def __aenter__(self) -> LocalObjectStore:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _path_for(self, key: str) -> Path:
        path = (self.root_dir / key).resolve()
        root = self.root_dir.resolve()
        if root not in path.parents or path.name.startswith(".") or STAGING_DIR in path.parts:
            raise StorageError(f"Invalid object key: {key}", key=key)
        return path

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        with open(path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _assemble(part_paths: list[Path], assembled: Path, target: Path) -> None:
        with open(assembled, "wb") as out:
            for part_path in part_paths:
                with open(part_path, "rb") as part:
                    shutil.copyfileobj(part, out)
            out.flush()
            os.fsync(out.fileno())
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(assembled, target)

    async def _write_part(self, path: Path, number: int, body: bytes, key: str) -> None:
        if self.part_delay:
            await asyncio.sleep(self.part_delay)
        if number in self.fail_parts:
            raise StorageError(f"Injected failure for part {number} of {key}", key=key)
        if self.transient_part_failures > 0:
            self.transient_part_failures -= 1
            raise TransientStorageError(f"Injected transient failure for part {number}", key=key)
        try:
            self._write_file(path, body)
        except OSError as e:
            raise _translate_os_error(e, key) from e
        self.parts_written += 1

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

        target = self._path_for(key)
        parts = split_parts(data, part_size)
        check_cancelled(cancel, key)

        staging = self.root_dir / STAGING_DIR / uuid.uuid4().hex
        staging.mkdir(parents=True, exist_ok=True)
        semaphore = asyncio.Semaphore(max_concurrency)

        async def upload_part(number: int, body: bytes) -> Path:
            path = staging / f"part-{number:05d}"
            async with semaphore:
                check_cancelled(cancel, key)

                async def attempt() -> None:
                    try:
                        await asyncio.wait_for(self._write_part(path, number, body, key), timeout)
                    except asyncio.TimeoutError:
                        raise StorageTimeoutError(
                            f"Part {number} of {key} timed out after {timeout}s", key=key
                        ) from None

                await with_retries(attempt, self.retry, f"write part {number} of {key}")
            return path

        tasks = [
            asyncio.create_task(upload_part(number, body))
            for number, body in enumerate(parts, start=1)
        ]
        try:
            part_paths = await asyncio.gather(*tasks)
            check_cancelled(cancel, key)
            try:
                self._assemble(part_paths, staging / "assembled", target)
            except OSError as e:
                raise _translate_os_error(e, key) from e
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("Aborted upload", extra={"key": key, "parts": len(parts)})
            raise
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(
            "Stored archive object",
            extra={"key": key, "size_bytes": len(data), "parts": len(parts)},
        )
        return len(data)

    async def download(self, key: str, *, timeout: float) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise _translate_os_error(e, key) from e

    async def delete(self, key: str, *, timeout: float) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise _translate_os_error(e, key) from e
        logger.info("Deleted archive object", extra={"key": key})

    async def exists(self, key: str, *, timeout: float) -> bool:
        return self._path_for(key).is_file()

    async def close(self) -> None:
        pass
