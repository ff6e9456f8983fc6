"""
Configuration management for AuditVault.

The archival core never reads the environment itself: the operator CLI calls
VaultConfig.from_env() and injects the resulting objects. Every setting is
validated when the dataclass is constructed.

Invariants:
    - All settings have sensible defaults for local development
    - Out-of-range values are rejected at construction time, not at call sites
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep environment variable names stable; they are referenced by cron jobs
    - Changing the default compression only affects newly written archives
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

# S3 rejects multipart parts smaller than 5 MiB (except the last one).
S3_MIN_PART_SIZE = 5 * MIB


class StorageProvider(Enum):
    """Supported object storage backends."""

    S3 = "s3"
    LOCAL = "local"


class Compression(Enum):
    """Parquet compression codecs, from fastest to smallest output."""

    SNAPPY = "snappy"
    GZIP = "gzip"
    ZSTD = "zstd"
    NONE = "none"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _parse_enum(enum_cls, value: str, setting: str):
    try:
        return enum_cls(value.lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {setting} '{value}'. Must be one of: {choices}")


@dataclass(frozen=True)
class S3Config:
    """S3 (or S3-compatible) bucket configuration.

    Attributes:
        bucket: Bucket holding archive objects
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Key prefix for archive objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "audit-archive-dev"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "audit"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    def __post_init__(self) -> None:
        if not self.bucket:
            raise ValueError("S3 bucket name is required")
        if not self.region:
            raise ValueError("S3 region is required")

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("ARCHIVE_BUCKET", "audit-archive-dev"),
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("ARCHIVE_PREFIX", "audit"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class LocalStorageConfig:
    """Local filesystem object store configuration.

    Attributes:
        root_dir: Directory that plays the role of the bucket
        prefix: Key prefix for archive objects
    """

    root_dir: str = "/var/lib/auditvault/objects"
    prefix: str = "audit"

    def __post_init__(self) -> None:
        if not self.root_dir:
            raise ValueError("Local storage root_dir is required")

    @classmethod
    def from_env(cls) -> LocalStorageConfig:
        """Load configuration from environment variables."""
        return cls(
            root_dir=os.getenv("ARCHIVE_LOCAL_DIR", "/var/lib/auditvault/objects"),
            prefix=os.getenv("ARCHIVE_PREFIX", "audit"),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """Archival engine configuration.

    Attributes:
        provider: Object storage backend
        batch_size: Maximum events per archive batch
        compression: Parquet compression codec
        row_group_size: Rows per Parquet row group
        retention_days: Days an archive is kept before it may be expired
        max_concurrency: Maximum parallel part uploads per object
        part_size: Multipart upload part size in bytes
        timeout_seconds: Timeout applied to each network operation
        enable_encryption: Request server-side encryption on upload
        kms_key_id: Optional KMS key for server-side encryption
        max_retries: Attempts for transient storage failures
        retry_base_delay: First backoff delay in seconds
        retry_max_delay: Upper bound for a single backoff delay in seconds
    """

    provider: StorageProvider = StorageProvider.S3
    batch_size: int = 1000
    compression: Compression = Compression.SNAPPY
    row_group_size: int = 100_000
    retention_days: int = 2555  # 7 years
    max_concurrency: int = 10
    part_size: int = 5 * MIB
    timeout_seconds: float = 300.0
    enable_encryption: bool = True
    kms_key_id: str | None = None
    max_retries: int = 3
    retry_base_delay: float = 0.2
    retry_max_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.row_group_size <= 0:
            raise ValueError(f"row_group_size must be positive, got {self.row_group_size}")
        if self.retention_days <= 0:
            raise ValueError(f"retention_days must be positive, got {self.retention_days}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {self.max_concurrency}")
        if self.part_size <= 0:
            raise ValueError(f"part_size must be positive, got {self.part_size}")
        if self.provider == StorageProvider.S3 and self.part_size < S3_MIN_PART_SIZE:
            raise ValueError(
                f"part_size must be at least {S3_MIN_PART_SIZE} bytes for S3, got {self.part_size}"
            )
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {self.timeout_seconds}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry delays must satisfy 0 <= retry_base_delay <= retry_max_delay")

    @classmethod
    def from_env(cls) -> ArchiveConfig:
        """Load configuration from environment variables."""
        kms_key_id = os.getenv("ARCHIVE_KMS_KEY_ID") or None
        return cls(
            provider=_parse_enum(
                StorageProvider, os.getenv("ARCHIVE_PROVIDER", "s3"), "ARCHIVE_PROVIDER"
            ),
            batch_size=int(os.getenv("ARCHIVE_BATCH_SIZE", "1000")),
            compression=_parse_enum(
                Compression, os.getenv("ARCHIVE_COMPRESSION", "snappy"), "ARCHIVE_COMPRESSION"
            ),
            row_group_size=int(os.getenv("ARCHIVE_ROW_GROUP_SIZE", "100000")),
            retention_days=int(os.getenv("ARCHIVE_RETENTION_DAYS", "2555")),
            max_concurrency=int(os.getenv("ARCHIVE_MAX_CONCURRENCY", "10")),
            part_size=int(os.getenv("ARCHIVE_PART_SIZE", str(5 * MIB))),
            timeout_seconds=float(os.getenv("ARCHIVE_TIMEOUT_SECONDS", "300")),
            enable_encryption=_env_bool("ARCHIVE_ENCRYPTION", "true"),
            kms_key_id=kms_key_id,
            max_retries=int(os.getenv("ARCHIVE_MAX_RETRIES", "3")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    def __post_init__(self) -> None:
        if self.log_format not in ("json", "text"):
            raise ValueError(f"Invalid log_format '{self.log_format}'. Must be one of: json, text")

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class VaultConfig:
    """Complete AuditVault configuration.

    Attributes:
        archive: Archival engine settings
        s3: S3 settings (used when archive.provider is S3)
        local: Local filesystem settings (used when archive.provider is LOCAL)
        observability: Logging settings
        catalog_path: SQLite file holding the archive catalog
        source_path: SQLite file of the live audit event store
    """

    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    s3: S3Config = field(default_factory=S3Config)
    local: LocalStorageConfig = field(default_factory=LocalStorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    catalog_path: str = "/var/lib/auditvault/catalog.db"
    source_path: str = "/var/lib/auditvault/audit_events.db"

    @classmethod
    def from_env(cls) -> VaultConfig:
        """Load complete configuration from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            archive=ArchiveConfig.from_env(),
            s3=S3Config.from_env(),
            local=LocalStorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            catalog_path=os.getenv("ARCHIVE_CATALOG_DB", "/var/lib/auditvault/catalog.db"),
            source_path=os.getenv("ARCHIVE_SOURCE_DB", "/var/lib/auditvault/audit_events.db"),
        )

        config.validate()
        return config

    @property
    def bucket(self) -> str:
        """Bucket name as recorded in catalog metadata."""
        if self.archive.provider == StorageProvider.S3:
            return self.s3.bucket
        return self.local.root_dir

    @property
    def prefix(self) -> str:
        """Key prefix for archive objects."""
        if self.archive.provider == StorageProvider.S3:
            return self.s3.prefix
        return self.local.prefix

    def validate(self) -> None:
        """Validate cross-section consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.catalog_path == self.source_path:
            raise ValueError("Catalog and live event store must be separate databases")
        if self.archive.kms_key_id and not self.archive.enable_encryption:
            logger.warning("ARCHIVE_KMS_KEY_ID is set but encryption is disabled; key is ignored")

        if not os.path.exists(os.path.dirname(self.catalog_path) or "."):
            logger.warning(
                f"Catalog directory does not exist: {self.catalog_path}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Archive configuration loaded",
            extra={
                "provider": self.archive.provider.value,
                "bucket": self.bucket,
                "prefix": self.prefix,
                "endpoint": self.s3.endpoint_url
                if self.archive.provider == StorageProvider.S3
                else None,
                "batch_size": self.archive.batch_size,
                "compression": self.archive.compression.value,
                "row_group_size": self.archive.row_group_size,
                "retention_days": self.archive.retention_days,
                "max_concurrency": self.archive.max_concurrency,
                "part_size": self.archive.part_size,
                "encryption": self.archive.enable_encryption,
                "catalog_path": self.catalog_path,
                "log_level": self.observability.log_level,
            },
        )
