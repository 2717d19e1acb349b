"""
Configuration management for RecoCore Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages
    - Ledger retention must cover the event source's redelivery window

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class StreamBackend(Enum):
    """Supported event stream backends."""

    KAFKA = "kafka"
    MEMORY = "memory"


class StoreBackend(Enum):
    """Supported durable store backends for lease, ledger, graph, index and cache."""

    SQLITE = "sqlite"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda event stream configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic: Topic carrying interaction events
        consumer_group: Consumer group ID for the ingestion consumer
        dead_letter_topic: Topic receiving poison events
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        auto_offset_reset: Where to start when the group has no committed offset
    """

    brokers: str = "localhost:9092"
    topic: str = "recocore-events"
    consumer_group: str = "recocore-ingest"
    dead_letter_topic: str = "recocore-events-dlq"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    acks: str = "all"
    enable_idempotence: bool = True
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("KAFKA_TOPIC", "recocore-events"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "recocore-ingest"),
            dead_letter_topic=os.getenv("KAFKA_DEAD_LETTER_TOPIC", "recocore-events-dlq"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Shared durable store configuration.

    Attributes:
        backend: Store backend for all coordination stores
        data_dir: Directory for SQLite database files
        db_filename: SQLite file shared by lease, ledger, graph, index and cache
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        call_timeout_ms: Deadline for a single store call
    """

    backend: StoreBackend = StoreBackend.SQLITE
    data_dir: str = "/var/lib/recocore"
    db_filename: str = "recocore.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    call_timeout_ms: int = 10000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: sqlite, memory",
                setting="STORE_BACKEND",
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/recocore"),
            db_filename=os.getenv("DB_FILENAME", "recocore.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            call_timeout_ms=int(os.getenv("STORE_CALL_TIMEOUT_MS", "10000")),
        )


@dataclass(frozen=True)
class LeaseConfig:
    """Lock coordinator configuration.

    Attributes:
        acquire_attempts: Attempts on UNAVAILABLE before skipping the cycle
        retry_delay_ms: Base backoff between attempts
    """

    acquire_attempts: int = 3
    retry_delay_ms: int = 200

    @classmethod
    def from_env(cls) -> LeaseConfig:
        """Load configuration from environment variables."""
        return cls(
            acquire_attempts=int(os.getenv("LEASE_ACQUIRE_ATTEMPTS", "3")),
            retry_delay_ms=int(os.getenv("LEASE_RETRY_DELAY_MS", "200")),
        )


@dataclass(frozen=True)
class LedgerConfig:
    """Idempotency ledger configuration.

    Attributes:
        retention_seconds: How long processed event ids are remembered
        claim_timeout_seconds: Age after which an unfinished claim may be retaken
        purge_interval_seconds: Interval between expired-entry purges
    """

    retention_seconds: int = 7 * 24 * 3600
    claim_timeout_seconds: int = 300
    purge_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load configuration from environment variables."""
        return cls(
            retention_seconds=int(os.getenv("LEDGER_RETENTION_SECONDS", str(7 * 24 * 3600))),
            claim_timeout_seconds=int(os.getenv("LEDGER_CLAIM_TIMEOUT_SECONDS", "300")),
            purge_interval_seconds=int(os.getenv("LEDGER_PURGE_INTERVAL_SECONDS", "3600")),
        )


@dataclass(frozen=True)
class IngestionConfig:
    """Ingestion consumer configuration.

    Attributes:
        batch_size: Maximum events fetched per partition per pass
        fetch_timeout_ms: How long a fetch waits for new events
        max_retries: Attempts for a transient failure while applying one event
        retry_delay_ms: Base delay between attempts
        source_max_redelivery_seconds: Longest delay after which the stream may redeliver
        assignment_check_ms: How often the consumer checks which partitions it owns
    """

    batch_size: int = 100
    fetch_timeout_ms: int = 1000
    max_retries: int = 3
    retry_delay_ms: int = 100
    source_max_redelivery_seconds: int = 24 * 3600
    assignment_check_ms: int = 1000

    @classmethod
    def from_env(cls) -> IngestionConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_size=int(os.getenv("INGEST_BATCH_SIZE", "100")),
            fetch_timeout_ms=int(os.getenv("INGEST_FETCH_TIMEOUT_MS", "1000")),
            max_retries=int(os.getenv("INGEST_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("INGEST_RETRY_DELAY_MS", "100")),
            source_max_redelivery_seconds=int(
                os.getenv("STREAM_MAX_REDELIVERY_SECONDS", str(24 * 3600))
            ),
            assignment_check_ms=int(os.getenv("INGEST_ASSIGNMENT_CHECK_MS", "1000")),
        )


@dataclass(frozen=True)
class SearchSyncConfig:
    """Search index synchronizer configuration.

    Attributes:
        max_retries: Write attempts before a notification is declared desynced
        base_backoff_ms: First requeue delay
        max_backoff_ms: Cap on requeue delay
    """

    max_retries: int = 5
    base_backoff_ms: int = 200
    max_backoff_ms: int = 30000

    @classmethod
    def from_env(cls) -> SearchSyncConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("SEARCH_SYNC_MAX_RETRIES", "5")),
            base_backoff_ms=int(os.getenv("SEARCH_SYNC_BASE_BACKOFF_MS", "200")),
            max_backoff_ms=int(os.getenv("SEARCH_SYNC_MAX_BACKOFF_MS", "30000")),
        )


@dataclass(frozen=True)
class CacheConfig:
    """Recommendation cache configuration.

    Attributes:
        ttl_seconds: Time-to-live of a cached result set
        max_items: Longest result list kept per entity
        high_value_types: Entity types invalidated synchronously on change
        recommendation_limit: Items computed per entity
    """

    ttl_seconds: int = 6 * 3600
    max_items: int = 100
    high_value_types: tuple[str, ...] = ("user",)
    recommendation_limit: int = 20

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            ttl_seconds=int(os.getenv("CACHE_TTL_SECONDS", str(6 * 3600))),
            max_items=int(os.getenv("CACHE_MAX_ITEMS", "100")),
            high_value_types=_env_list("CACHE_HIGH_VALUE_TYPES", "user"),
            recommendation_limit=int(os.getenv("RECOMMENDATION_LIMIT", "20")),
        )


@dataclass(frozen=True)
class JobSchedule:
    """Trigger and lease settings for one recurring job.

    Exactly one of interval_seconds or cron is used; cron wins when both are set.

    Attributes:
        enabled: Whether the scheduler triggers this job
        interval_seconds: Fixed interval trigger
        cron: Five-field cron expression (UTC)
        lease_seconds: Lease duration ("lock at most for")
        min_hold_seconds: Minimum lease hold after release ("lock at least for")
    """

    enabled: bool = True
    interval_seconds: int | None = None
    cron: str | None = None
    lease_seconds: int = 1800
    min_hold_seconds: int = 300

    @classmethod
    def from_env(cls, prefix: str, defaults: JobSchedule) -> JobSchedule:
        """Load a job schedule from variables named <prefix>_*."""
        interval = os.getenv(f"{prefix}_INTERVAL_SECONDS")
        return cls(
            enabled=_env_bool(f"{prefix}_ENABLED", "true" if defaults.enabled else "false"),
            interval_seconds=int(interval) if interval else defaults.interval_seconds,
            cron=os.getenv(f"{prefix}_CRON", defaults.cron or "") or None,
            lease_seconds=int(os.getenv(f"{prefix}_LEASE_SECONDS", str(defaults.lease_seconds))),
            min_hold_seconds=int(
                os.getenv(f"{prefix}_MIN_HOLD_SECONDS", str(defaults.min_hold_seconds))
            ),
        )


DEFAULT_JOB_SCHEDULES: dict[str, JobSchedule] = {
    "recompute-recommendations": JobSchedule(cron="0 * * * *", lease_seconds=1800),
    "reconcile-index": JobSchedule(cron="*/30 * * * *", lease_seconds=1800),
    "warm-cache": JobSchedule(cron="0 3 * * *", lease_seconds=3 * 3600),
}


@dataclass(frozen=True)
class OrchestratorConfig:
    """Batch orchestrator configuration.

    Attributes:
        enabled: Whether the scheduler loop runs in this instance
        chunk_size: Entities processed per committed chunk
        renew_margin_seconds: Renew when remaining lease time drops below this
        jobs: Per-job trigger and lease settings
    """

    enabled: bool = True
    chunk_size: int = 200
    renew_margin_seconds: int = 30
    jobs: dict[str, JobSchedule] = field(default_factory=lambda: dict(DEFAULT_JOB_SCHEDULES))

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Load configuration from environment variables."""
        jobs = {
            name: JobSchedule.from_env("JOB_" + name.upper().replace("-", "_"), defaults)
            for name, defaults in DEFAULT_JOB_SCHEDULES.items()
        }
        return cls(
            enabled=_env_bool("ORCHESTRATOR_ENABLED", "true"),
            chunk_size=int(os.getenv("ORCHESTRATOR_CHUNK_SIZE", "200")),
            renew_margin_seconds=int(os.getenv("ORCHESTRATOR_RENEW_MARGIN_SECONDS", "30")),
            jobs=jobs,
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        instance_id: Holder identity used for leases
        stream_backend: Which event stream backend to use
        kafka: Kafka configuration (if stream_backend is KAFKA)
        storage: Shared store configuration
        lease: Lock coordinator configuration
        ledger: Idempotency ledger configuration
        ingestion: Ingestion consumer configuration
        search_sync: Search synchronizer configuration
        cache: Recommendation cache configuration
        orchestrator: Batch orchestrator configuration
        observability: Observability configuration
    """

    instance_id: str = field(default_factory=_default_instance_id)
    stream_backend: StreamBackend = StreamBackend.KAFKA
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    lease: LeaseConfig = field(default_factory=LeaseConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    search_sync: SearchSyncConfig = field(default_factory=SearchSyncConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STREAM_BACKEND", "kafka").lower()
        try:
            stream_backend = StreamBackend(backend_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid STREAM_BACKEND '{backend_str}'. Must be one of: kafka, memory",
                setting="STREAM_BACKEND",
            )

        config = cls(
            instance_id=os.getenv("INSTANCE_ID") or _default_instance_id(),
            stream_backend=stream_backend,
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            lease=LeaseConfig.from_env(),
            ledger=LedgerConfig.from_env(),
            ingestion=IngestionConfig.from_env(),
            search_sync=SearchSyncConfig.from_env(),
            cache=CacheConfig.from_env(),
            orchestrator=OrchestratorConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if self.stream_backend == StreamBackend.KAFKA:
            if not self.kafka.brokers:
                raise ConfigurationError(
                    "KAFKA_BROKERS is required when STREAM_BACKEND=kafka", setting="KAFKA_BROKERS"
                )
            if not self.kafka.topic:
                raise ConfigurationError(
                    "KAFKA_TOPIC is required when STREAM_BACKEND=kafka", setting="KAFKA_TOPIC"
                )

        # Redelivery after the ledger forgets an event id reapplies it
        if self.ledger.retention_seconds < self.ingestion.source_max_redelivery_seconds:
            raise ConfigurationError(
                f"LEDGER_RETENTION_SECONDS ({self.ledger.retention_seconds}) must be >= "
                f"STREAM_MAX_REDELIVERY_SECONDS ({self.ingestion.source_max_redelivery_seconds})",
                setting="LEDGER_RETENTION_SECONDS",
            )

        if self.ledger.claim_timeout_seconds <= 0:
            raise ConfigurationError(
                "LEDGER_CLAIM_TIMEOUT_SECONDS must be positive", setting="LEDGER_CLAIM_TIMEOUT_SECONDS"
            )

        if self.orchestrator.chunk_size <= 0:
            raise ConfigurationError(
                "ORCHESTRATOR_CHUNK_SIZE must be positive", setting="ORCHESTRATOR_CHUNK_SIZE"
            )

        for name, job in self.orchestrator.jobs.items():
            if job.enabled and job.cron is None and not job.interval_seconds:
                raise ConfigurationError(
                    f"Job {name} needs an interval or a cron expression", setting=name
                )
            if job.lease_seconds <= self.orchestrator.renew_margin_seconds:
                raise ConfigurationError(
                    f"Job {name} lease must exceed the renew margin", setting=name
                )

        if self.cache.max_items <= 0:
            raise ConfigurationError("CACHE_MAX_ITEMS must be positive", setting="CACHE_MAX_ITEMS")

        if self.storage.backend == StoreBackend.SQLITE and not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "instance_id": self.instance_id,
                "stream_backend": self.stream_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.stream_backend == StreamBackend.KAFKA
                else None,
                "kafka_topic": self.kafka.topic,
                "store_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir,
                "ledger_retention_seconds": self.ledger.retention_seconds,
                "orchestrator_enabled": self.orchestrator.enabled,
                "jobs": sorted(name for name, job in self.orchestrator.jobs.items() if job.enabled),
                "log_level": self.observability.log_level,
            },
        )
