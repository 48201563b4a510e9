"""
Partitioned consumer group for log-topic and audit-topic.

Each worker is an independent member of the consumer group with its own
broker client, so the partitions it owns are disjoint from every other
worker's. Inside a worker, messages are handled one at a time in offset
order, and an offset is acknowledged only after its handler succeeded
(commit-after-effect). Acknowledged offsets are flushed to the broker at
the end of each batch and before a revoked partition is released.

Handler failures are contained per message: the offset is not
acknowledged, the failure is logged with the message coordinate and the
worker moves on. Later messages of that partition are still handled but
not acknowledged, so the committed position stays just before the failed
message and the broker redelivers it to the next owner. A store outage
therefore shows up as consumer lag, not as a crashed worker or a lost
record.
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from prometheus_client import Counter

from audit_ingest.config import Settings, settings
from audit_ingest.errors import (
    DeserializationError, OffsetRegression, StaleOwnership, StoreUnavailable
)
from audit_ingest.models import InboundMessage, PartitionAssignment
from audit_ingest.services.kafka_client import BrokerClient, KafkaBrokerClient, TopicPartitionKey
from audit_ingest.services.writer import IdempotentWriter

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Awaitable[object]]
ClientFactory = Callable[[str], BrokerClient]

# Prometheus metrics
messages_consumed = Counter(
    'ingest_messages_consumed_total',
    'Messages received from the broker',
    ['topic']
)
messages_failed = Counter(
    'ingest_messages_failed_total',
    'Messages whose handler failed (offset left uncommitted)',
    ['topic', 'reason']
)
offsets_committed = Counter(
    'ingest_offset_commits_total',
    'Partition offsets flushed to the broker'
)
stale_commits_discarded = Counter(
    'ingest_stale_commits_discarded_total',
    'Commits dropped because the partition was no longer owned'
)


# ============================================================================
# Offset Ledger
# ============================================================================

class OffsetLedger:
    """
    Ownership and offset state for the partitions of one worker.

    `acknowledge` records handled offsets as pending; `drain` hands them to
    the caller for a broker commit and `mark_committed` records the result.
    Ownership checks happen on every acknowledgment so a revoked partition
    can never be committed by this worker again.

    A commit covers every earlier offset of its partition, so once a message
    fails the partition is held: nothing at or past the failed offset is
    acknowledged until the partition is assigned afresh, and the broker
    redelivers from the failed message.

    Rebalance callbacks run on the polling thread while acknowledgments run
    on the event loop, hence the lock.
    """

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        self._lock = threading.Lock()
        self._committed: Dict[TopicPartitionKey, Optional[int]] = {}
        self._pending: Dict[TopicPartitionKey, int] = {}
        self._held: Dict[TopicPartitionKey, int] = {}

    def assign(self, assignments: Iterable[PartitionAssignment]) -> None:
        with self._lock:
            for a in assignments:
                key = (a.topic, a.partition_id)
                self._committed[key] = a.committed_offset
                self._pending.pop(key, None)
                self._held.pop(key, None)

    def release(self, partitions: Iterable[TopicPartitionKey]) -> Dict[TopicPartitionKey, int]:
        """Drop ownership and return whatever was still pending for those partitions."""
        with self._lock:
            leftover = {}
            for key in partitions:
                self._committed.pop(key, None)
                self._held.pop(key, None)
                if key in self._pending:
                    leftover[key] = self._pending.pop(key)
            return leftover

    def owns(self, topic: str, partition_id: int) -> bool:
        with self._lock:
            return (topic, partition_id) in self._committed

    def hold(self, topic: str, partition_id: int, offset: int) -> bool:
        """
        Stop acknowledgments at `offset`, the first failed message of the partition.

        Returns:
            True if the partition was not already held at an earlier offset
        """
        key = (topic, partition_id)
        with self._lock:
            if key not in self._committed:
                return False
            held = self._held.get(key)
            if held is not None and held <= offset:
                return False
            self._held[key] = offset
            return True

    def held(self, topic: str, partition_id: int) -> Optional[int]:
        with self._lock:
            return self._held.get((topic, partition_id))

    def acknowledge(self, topic: str, partition_id: int, offset: int) -> bool:
        """
        Record that every message up to and including `offset` is handled.

        Returns:
            False if the partition is held at or before `offset`; nothing is recorded

        Raises:
            StaleOwnership: The partition is not owned by this worker
            OffsetRegression: `offset` does not advance past the last acknowledged one
        """
        key = (topic, partition_id)
        with self._lock:
            if key not in self._committed:
                raise StaleOwnership(topic, partition_id, offset)

            held = self._held.get(key)
            if held is not None and offset >= held:
                return False

            current = self._pending.get(key, self._committed[key])
            if current is not None and offset <= current:
                raise OffsetRegression(topic, partition_id, offset, current)

            self._pending[key] = offset
            return True

    def drain(self, partitions: Optional[Iterable[TopicPartitionKey]] = None) -> Dict[TopicPartitionKey, int]:
        """Remove and return pending offsets, optionally only for some partitions."""
        with self._lock:
            if partitions is None:
                drained = dict(self._pending)
                self._pending.clear()
                return drained
            return {key: self._pending.pop(key) for key in partitions if key in self._pending}

    def restore(self, offsets: Mapping[TopicPartitionKey, int]) -> None:
        """Put offsets back after a failed commit, unless something newer arrived."""
        with self._lock:
            for key, offset in offsets.items():
                if key in self._committed and key not in self._pending:
                    self._pending[key] = offset

    def mark_committed(self, offsets: Mapping[TopicPartitionKey, int]) -> None:
        with self._lock:
            for key, offset in offsets.items():
                # Partition may have been revoked while the commit was in flight
                if key in self._committed:
                    self._committed[key] = offset

    def committed(self, topic: str, partition_id: int) -> Optional[int]:
        with self._lock:
            return self._committed.get((topic, partition_id))

    def assignments(self) -> List[PartitionAssignment]:
        with self._lock:
            return [
                PartitionAssignment(
                    topic=topic,
                    partition_id=partition_id,
                    owner_worker_id=self.worker_id,
                    committed_offset=offset
                )
                for (topic, partition_id), offset in sorted(self._committed.items())
            ]


# ============================================================================
# Worker
# ============================================================================

class PartitionWorker:
    """
    One consumer group member.

    Polls batches for the partitions it owns, dispatches every message to the
    handler registered for its topic and acknowledges the offset once the
    handler returns.
    """

    def __init__(
        self,
        worker_id: str,
        client: BrokerClient,
        handlers: Mapping[str, MessageHandler],
        poll_timeout: float = 1.0,
        max_records: int = 100
    ):
        self.worker_id = worker_id
        self.client = client
        self.handlers = dict(handlers)
        self.poll_timeout = poll_timeout
        self.max_records = max_records
        self.ledger = OffsetLedger(worker_id)
        self._running = False

    # -- rebalance callbacks (called on the polling thread) ------------------

    def on_partitions_assigned(self, assignments: List[PartitionAssignment]) -> None:
        self.ledger.assign(assignments)
        logger.info(
            f"{self.worker_id} assigned: "
            f"{[f'{a.topic}[{a.partition_id}]' for a in assignments]}"
        )

    def on_partitions_revoked(self, partitions: List[TopicPartitionKey]) -> None:
        """Flush pending commits for the revoked partitions, then let them go."""
        pending = self.ledger.drain(partitions)
        if pending:
            try:
                self.client.commit(pending)
                self.ledger.mark_committed(pending)
                offsets_committed.inc(len(pending))
            except StaleOwnership as e:
                stale_commits_discarded.inc(len(pending))
                logger.warning(f"{self.worker_id} final commit on revoke rejected: {e}")
            except Exception as e:
                # Uncommitted offsets will be redelivered to the new owner
                logger.error(f"{self.worker_id} final commit on revoke failed: {e}")
        self.ledger.release(partitions)
        logger.info(f"{self.worker_id} revoked: {partitions}")

    def on_partitions_lost(self, partitions: List[TopicPartitionKey]) -> None:
        """Ownership is already gone; committing is pointless."""
        dropped = self.ledger.release(partitions)
        if dropped:
            stale_commits_discarded.inc(len(dropped))
        logger.warning(f"{self.worker_id} lost partitions: {partitions}")

    # -- offsets --------------------------------------------------------------

    def commit(self, topic: str, partition_id: int, offset: int) -> bool:
        """
        Acknowledge a handled message.

        Returns:
            False when the partition is no longer owned, in which case the
            commit is discarded and must not be retried, or when an earlier
            message of the partition failed
        """
        try:
            return self.ledger.acknowledge(topic, partition_id, offset)
        except StaleOwnership as e:
            stale_commits_discarded.inc()
            logger.info(f"{self.worker_id} discarding commit: {e}")
            return False

    async def flush(self) -> None:
        """Commit every pending offset to the broker."""
        pending = self.ledger.drain()
        if not pending:
            return

        try:
            await asyncio.to_thread(self.client.commit, pending)
        except StaleOwnership as e:
            stale_commits_discarded.inc(len(pending))
            logger.warning(f"{self.worker_id} commit rejected, ownership lost: {e}")
            return
        except Exception as e:
            self.ledger.restore(pending)
            logger.error(f"{self.worker_id} commit failed, will retry after next batch: {e}")
            return

        self.ledger.mark_committed(pending)
        offsets_committed.inc(len(pending))
        logger.debug(f"{self.worker_id} committed {pending}")

    # -- message handling ------------------------------------------------------

    async def handle(self, msg: InboundMessage) -> bool:
        """
        Run the topic handler for one message.

        Returns:
            True if the message was handled and may be acknowledged
        """
        messages_consumed.labels(topic=msg.topic).inc()

        handler = self.handlers.get(msg.topic)
        if handler is None:
            messages_failed.labels(topic=msg.topic, reason="no_handler").inc()
            logger.error(f"No handler for topic of {msg.coordinate}")
            return False

        try:
            await handler(msg)
            return True
        except DeserializationError as e:
            messages_failed.labels(topic=msg.topic, reason="deserialization").inc()
            logger.error(f"Skipping malformed message {msg.coordinate}: {e}")
        except StoreUnavailable as e:
            messages_failed.labels(topic=msg.topic, reason="store_unavailable").inc()
            logger.error(f"Store unavailable while handling {msg.coordinate}: {e}")
        except Exception:
            messages_failed.labels(topic=msg.topic, reason="unexpected").inc()
            logger.exception(f"Handler failed for {msg.coordinate}")
        return False

    async def process_batch(self, batch: List[InboundMessage]) -> int:
        """
        Handle a batch in order and flush the acknowledged offsets.

        Returns:
            Number of messages acknowledged
        """
        acknowledged = 0
        for msg in batch:
            if not self.ledger.owns(msg.topic, msg.partition_id):
                logger.debug(f"{self.worker_id} skipping {msg.coordinate}, partition not owned")
                continue

            if not await self.handle(msg):
                if self.ledger.hold(msg.topic, msg.partition_id, msg.offset):
                    logger.warning(
                        f"{self.worker_id} holding commits for "
                        f"{msg.topic}[{msg.partition_id}] before offset {msg.offset}"
                    )
                continue

            try:
                if self.commit(msg.topic, msg.partition_id, msg.offset):
                    acknowledged += 1
            except OffsetRegression as e:
                logger.warning(f"{self.worker_id} {e}")

        await self.flush()
        return acknowledged

    async def run_once(self) -> int:
        """Poll one batch and process it."""
        batch = await asyncio.to_thread(self.client.poll, self.poll_timeout, self.max_records)
        if not batch:
            return 0
        return await self.process_batch(batch)

    async def run(self, topics: Iterable[str]) -> None:
        """Subscribe and process batches until `stop` is called."""
        self.client.subscribe(topics, self)
        self._running = True
        logger.info(f"{self.worker_id} started")

        try:
            while self._running:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    # Poll errors are retried on the next iteration
                    logger.exception(f"{self.worker_id} poll loop error")
                    await asyncio.sleep(self.poll_timeout)
        finally:
            await self.flush()
            await asyncio.to_thread(self.client.close)
            logger.info(f"{self.worker_id} stopped")

    def stop(self) -> None:
        self._running = False


# ============================================================================
# Consumer Group
# ============================================================================

async def log_message_handler(msg: InboundMessage) -> None:
    """Side-effect-only handler for log-topic messages."""
    value = msg.value.decode('utf-8', errors='replace') if isinstance(msg.value, bytes) else msg.value
    logger.info(f"Log message {msg.coordinate}: key={msg.key!r}, value={value}")


class ConsumerGroup:
    """
    Runs `concurrency` workers in the same consumer group.

    Audit-topic messages go to the idempotent writer, log-topic messages to
    the log handler. The group does not coordinate partition ownership
    itself; the broker assigns partitions to workers and the workers react.
    """

    def __init__(
        self,
        writer: IdempotentWriter,
        client_factory: ClientFactory,
        audit_topic: str = "audit-topic",
        log_topic: str = "log-topic",
        group_id: str = "my-consumer-group",
        concurrency: int = 3,
        poll_timeout: float = 1.0,
        max_records: int = 100,
        log_handler: MessageHandler = log_message_handler
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.writer = writer
        self.client_factory = client_factory
        self.audit_topic = audit_topic
        self.log_topic = log_topic
        self.group_id = group_id
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self.max_records = max_records
        self.handlers: Dict[str, MessageHandler] = {
            audit_topic: writer.write,
            log_topic: log_handler,
        }
        self.workers: List[PartitionWorker] = []
        self._tasks: List[asyncio.Task] = []

    @property
    def topics(self) -> List[str]:
        return [self.log_topic, self.audit_topic]

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def create_workers(self) -> List[PartitionWorker]:
        self.workers = [
            PartitionWorker(
                worker_id=worker_id,
                client=self.client_factory(worker_id),
                handlers=self.handlers,
                poll_timeout=self.poll_timeout,
                max_records=self.max_records
            )
            for worker_id in (f"{self.group_id}-worker-{i}" for i in range(self.concurrency))
        ]
        return self.workers

    async def start(self) -> None:
        """Create the workers and start polling in background tasks."""
        if self._tasks:
            return
        for worker in self.create_workers():
            self._tasks.append(
                asyncio.create_task(worker.run(self.topics), name=worker.worker_id)
            )
        logger.info(f"Consumer group {self.group_id} started with {self.concurrency} workers")

    async def stop(self) -> None:
        """Signal every worker to stop and wait for final commits."""
        for worker in self.workers:
            worker.stop()
        if self._tasks:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for worker, result in zip(self.workers, results):
                if isinstance(result, Exception):
                    logger.error(f"{worker.worker_id} exited with error: {result}")
        self._tasks = []
        logger.info(f"Consumer group {self.group_id} stopped")

    async def wait(self) -> None:
        """Block until every worker task has exited."""
        await asyncio.gather(*self._tasks)

    def assignments(self) -> List[PartitionAssignment]:
        return [a for worker in self.workers for a in worker.ledger.assignments()]


def kafka_client_factory(config: Settings) -> ClientFactory:
    """Build a factory that creates one Kafka group member per worker."""
    def factory(worker_id: str) -> BrokerClient:
        return KafkaBrokerClient(
            worker_id=worker_id,
            bootstrap_servers=config.kafka_bootstrap_servers,
            group_id=config.kafka_group_id,
            client_id=config.kafka_client_id,
            auto_offset_reset=config.kafka_auto_offset_reset,
            session_timeout_ms=config.kafka_session_timeout_ms
        )

    return factory


def build_consumer_group(
    writer: IdempotentWriter,
    config: Settings = settings,
    client_factory: Optional[ClientFactory] = None
) -> ConsumerGroup:
    return ConsumerGroup(
        writer=writer,
        client_factory=client_factory or kafka_client_factory(config),
        audit_topic=config.audit_topic,
        log_topic=config.log_topic,
        group_id=config.kafka_group_id,
        concurrency=config.consumer_concurrency,
        poll_timeout=config.poll_timeout_seconds,
        max_records=config.poll_max_records
    )


# ============================================================================
# Consumer Runner
# ============================================================================

async def run_consumer(config: Settings = settings) -> None:
    """Run the consumer group without the HTTP API."""
    from audit_ingest.database import Database
    from audit_ingest.services.audit_store import AuditStore

    database = Database(
        dsn=config.postgres_dsn,
        min_size=config.db_pool_min_size,
        max_size=config.db_pool_max_size,
        command_timeout=config.db_command_timeout,
        application_name=f"{config.kafka_client_id}-consumer"
    )
    await database.connect()

    store = AuditStore(database, max_page_limit=config.max_page_limit)
    await store.ensure_schema()
    writer = IdempotentWriter(store, idempotency_header=config.idempotency_header)
    group = build_consumer_group(writer, config)

    try:
        await group.start()
        await group.wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down consumer...")
    finally:
        await group.stop()
        await database.disconnect()


if __name__ == "__main__":
    # Run as standalone script
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format=settings.log_format
    )
    asyncio.run(run_consumer())
