"""
RecoCore Server - Main entry point.

This module starts a RecoCore instance with all components:
- Ingestion consumer (event stream -> graph store)
- Search synchronizer (graph change notifications -> search index)
- Job scheduler (leased, checkpointed batch jobs)
- Ledger purge loop (drops expired idempotency records)

Every instance runs the same components. Partition ownership comes from the
stream's consumer group and job ownership from the lease coordinator, so
instances can be added or removed without coordination.

Usage:
    python -m recsys.recocore_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Configuration is validated before any component starts
    - The stream is connected before the consumer starts
    - Graceful shutdown stops triggers before closing the stream

How to change safely:
    - Add new components with enable/disable flags
    - Wire new change subscribers in build_components()
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field

import json_log_formatter

from .cache import InMemoryCacheBackend, RecommendationCache, SqliteCacheBackend
from .config import ServerConfig, StoreBackend
from .errors import ConfigurationError
from .graph import GraphStore, InMemoryGraphBackend, SqliteGraphBackend
from .ingest import IngestionConsumer, StreamDeadLetterSink
from .lease import InMemoryLeaseBackend, LeaseCoordinator, SqliteLeaseBackend
from .ledger import IdempotencyLedger, InMemoryLedgerBackend, SqliteLedgerBackend
from .orchestrator import (
    BatchOrchestrator,
    InMemoryCheckpointStore,
    JobScheduler,
    ReconcileIndexJob,
    RecomputeRecommendationsJob,
    SqliteCheckpointStore,
    WarmCacheJob,
)
from .recommend import CoInteractionRecommender, RecommendationService
from .retry import RetryPolicy
from .search import DesyncLog, InMemorySearchIndex, SearchIndex, SearchSynchronizer, SqliteSearchIndex
from .storage import SqliteDatabase
from .stream import EventStream, create_event_stream

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("kafka").setLevel(logging.WARNING)


@dataclass
class Components:
    """Wired RecoCore components of one instance."""

    config: ServerConfig
    stream: EventStream
    graph: GraphStore
    ledger: IdempotencyLedger
    coordinator: LeaseCoordinator
    cache: RecommendationCache
    service: RecommendationService
    synchronizer: SearchSynchronizer
    consumer: IngestionConsumer
    orchestrator: BatchOrchestrator
    index: SearchIndex
    desync_log: DesyncLog = field(default_factory=DesyncLog)


def build_components(config: ServerConfig, stream: EventStream | None = None) -> Components:
    """Create and wire every component from configuration.

    Graph change notifications fan out to the search synchronizer and the
    recommendation cache. All three batch jobs are registered with their
    configured schedules.

    Args:
        config: Server configuration
        stream: Event stream to use (default: built from config)

    Returns:
        Components ready to start
    """
    call_timeout_s = config.storage.call_timeout_ms / 1000

    if config.storage.backend == StoreBackend.SQLITE:
        db = SqliteDatabase.from_config(config.storage)
        graph_backend = SqliteGraphBackend(db)
        ledger_backend = SqliteLedgerBackend(db)
        lease_backend = SqliteLeaseBackend(db)
        cache_backend = SqliteCacheBackend(db)
        index = SqliteSearchIndex(db)
        checkpoints = SqliteCheckpointStore(db)
    else:
        graph_backend = InMemoryGraphBackend()
        ledger_backend = InMemoryLedgerBackend()
        lease_backend = InMemoryLeaseBackend()
        cache_backend = InMemoryCacheBackend()
        index = InMemorySearchIndex()
        checkpoints = InMemoryCheckpointStore()

    stream = stream or create_event_stream(config)
    graph = GraphStore(graph_backend, call_timeout_s=call_timeout_s)
    ledger = IdempotencyLedger(
        ledger_backend,
        retention_s=config.ledger.retention_seconds,
        claim_timeout_s=config.ledger.claim_timeout_seconds,
        call_timeout_s=call_timeout_s,
    )
    coordinator = LeaseCoordinator(
        lease_backend,
        retry_policy=RetryPolicy(
            max_attempts=config.lease.acquire_attempts,
            base_delay_s=config.lease.retry_delay_ms / 1000,
        ),
        call_timeout_s=call_timeout_s,
    )
    cache = RecommendationCache(
        cache_backend,
        graph,
        ttl_s=config.cache.ttl_seconds,
        max_items=config.cache.max_items,
        high_value_types=config.cache.high_value_types,
        call_timeout_s=call_timeout_s,
    )
    recommender = CoInteractionRecommender(graph, limit=config.cache.recommendation_limit)
    service = RecommendationService(graph, cache, recommender)

    desync_log = DesyncLog()
    synchronizer = SearchSynchronizer(
        graph,
        index,
        desync_log=desync_log,
        max_retries=config.search_sync.max_retries,
        base_backoff_s=config.search_sync.base_backoff_ms / 1000,
        max_backoff_s=config.search_sync.max_backoff_ms / 1000,
        call_timeout_s=call_timeout_s,
    )
    graph.subscribe(synchronizer.handle, name="search")
    graph.subscribe(cache.on_change, name="cache")

    consumer = IngestionConsumer(
        stream,
        ledger,
        graph,
        StreamDeadLetterSink(stream, config.kafka.dead_letter_topic),
        topic=config.kafka.topic,
        group_id=config.kafka.consumer_group,
        batch_size=config.ingestion.batch_size,
        fetch_timeout_ms=config.ingestion.fetch_timeout_ms,
        assignment_check_s=config.ingestion.assignment_check_ms / 1000,
        retry_policy=RetryPolicy(
            max_attempts=config.ingestion.max_retries,
            base_delay_s=config.ingestion.retry_delay_ms / 1000,
        ),
    )

    orchestrator = BatchOrchestrator(
        coordinator,
        checkpoints,
        holder_id=config.instance_id,
        chunk_size=config.orchestrator.chunk_size,
        renew_margin_s=config.orchestrator.renew_margin_seconds,
        call_timeout_s=call_timeout_s,
    )
    jobs = [
        RecomputeRecommendationsJob(graph, service),
        ReconcileIndexJob(graph, index, desync_log=desync_log, call_timeout_s=call_timeout_s),
        WarmCacheJob(graph, cache, service),
    ]
    for job in jobs:
        schedule = config.orchestrator.jobs.get(job.name)
        if schedule is not None:
            orchestrator.register(job, schedule)

    return Components(
        config=config,
        stream=stream,
        graph=graph,
        ledger=ledger,
        coordinator=coordinator,
        cache=cache,
        service=service,
        synchronizer=synchronizer,
        consumer=consumer,
        orchestrator=orchestrator,
        index=index,
        desync_log=desync_log,
    )


class Server:
    """RecoCore Server orchestrator.

    Manages the lifecycle of all server components:
    - Event stream connection
    - Background loops (ingestion, search sync, scheduler, ledger purge)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.components: Components | None = None
        self.scheduler: JobScheduler | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting RecoCore server", extra={"instance_id": self.config.instance_id})
        self.config.log_config()

        try:
            self.components = build_components(self.config)
            await self.components.stream.connect()
            logger.info("Event stream connected")

            self._tasks.append(asyncio.create_task(self.components.consumer.run(), name="ingest"))
            self._tasks.append(asyncio.create_task(self.components.synchronizer.run(), name="search-sync"))
            self._tasks.append(asyncio.create_task(self._purge_loop(), name="ledger-purge"))

            if self.config.orchestrator.enabled:
                self.scheduler = JobScheduler(self.components.orchestrator)
                self._tasks.append(asyncio.create_task(self.scheduler.run(), name="scheduler"))

            self._running = True
            logger.info("RecoCore server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def _purge_loop(self) -> None:
        interval = self.config.ledger.purge_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await self.components.ledger.purge_expired()
                if removed:
                    logger.info("Purged expired ledger entries", extra={"removed": removed})
            except Exception as e:
                logger.warning(f"Ledger purge failed: {e}")

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping RecoCore server")

        if self.scheduler:
            await self.scheduler.stop()

        if self.components:
            await self.components.consumer.stop()
            self.components.synchronizer.stop()

        # Stop background tasks
        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.components:
            await self.components.stream.close()

        self._running = False
        logger.info("RecoCore server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
