"""
E2E test fixtures for AuditVault.

These tests need an S3-compatible endpoint, e.g. MinIO:

    docker run -p 9000:9000 minio/minio server /data
    AUDITVAULT_E2E_TESTS=1 pytest tests/e2e
"""

import asyncio
import os
import uuid

import pytest
from aiobotocore.session import get_session

from auditvault.config import S3Config

E2E_ENABLED = os.environ.get("AUDITVAULT_E2E_TESTS", "0") == "1"

S3_ENDPOINT = os.environ.get("S3_ENDPOINT", "http://localhost:9000")
ACCESS_KEY = os.environ.get("AWS_ACCESS_KEY_ID", "minioadmin")
SECRET_KEY = os.environ.get("AWS_SECRET_ACCESS_KEY", "minioadmin")
REGION = os.environ.get("AWS_REGION", "us-east-1")


def _client():
    return get_session().create_client(
        "s3",
        region_name=REGION,
        endpoint_url=S3_ENDPOINT,
        aws_access_key_id=ACCESS_KEY,
        aws_secret_access_key=SECRET_KEY,
    )


async def _create_bucket(name: str) -> None:
    async with _client() as client:
        await client.create_bucket(Bucket=name)


async def _drop_bucket(name: str) -> None:
    async with _client() as client:
        listing = await client.list_objects_v2(Bucket=name)
        for item in listing.get("Contents", []):
            await client.delete_object(Bucket=name, Key=item["Key"])
        await client.delete_bucket(Bucket=name)


@pytest.fixture
def bucket():
    """A fresh bucket, removed with its contents afterwards."""
    if not E2E_ENABLED:
        pytest.skip("E2E tests disabled. Set AUDITVAULT_E2E_TESTS=1 to enable.")

    name = f"auditvault-e2e-{uuid.uuid4().hex[:12]}"
    asyncio.run(_create_bucket(name))
    yield name
    asyncio.run(_drop_bucket(name))


@pytest.fixture
def s3_config(bucket):
    return S3Config(
        bucket=bucket,
        region=REGION,
        endpoint_url=S3_ENDPOINT,
        access_key_id=ACCESS_KEY,
        secret_access_key=SECRET_KEY,
    )
