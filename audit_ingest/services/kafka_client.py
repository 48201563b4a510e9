"""
Broker client used by consumer workers.

`BrokerClient` is the small surface a worker needs from a group member:
subscribe with rebalance callbacks, poll a batch, commit offsets, close.
`KafkaBrokerClient` implements it on confluent-kafka. All methods are
blocking; workers call them through `asyncio.to_thread`.

Rebalance callbacks fire from inside `poll`, on the thread running it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition

from audit_ingest.errors import StaleOwnership
from audit_ingest.models import InboundMessage, PartitionAssignment

logger = logging.getLogger(__name__)

TopicPartitionKey = Tuple[str, int]

# Commit failures meaning this member's generation is no longer valid
FENCED_ERROR_CODES = {
    KafkaError.ILLEGAL_GENERATION,
    KafkaError.UNKNOWN_MEMBER_ID,
    KafkaError.REBALANCE_IN_PROGRESS,
}


class RebalanceListener(Protocol):
    def on_partitions_assigned(self, assignments: List[PartitionAssignment]) -> None: ...

    def on_partitions_revoked(self, partitions: List[TopicPartitionKey]) -> None: ...

    def on_partitions_lost(self, partitions: List[TopicPartitionKey]) -> None: ...


class BrokerClient(ABC):
    """One member of a consumer group."""

    def __init__(self, worker_id: str):
        self.worker_id = worker_id

    @abstractmethod
    def subscribe(self, topics: Iterable[str], listener: RebalanceListener) -> None:
        """Join the group for `topics`; `listener` receives rebalance notifications."""

    @abstractmethod
    def poll(self, timeout: float, max_records: int) -> List[InboundMessage]:
        """Return up to `max_records` messages, or an empty list after `timeout` seconds."""

    @abstractmethod
    def commit(self, offsets: Mapping[TopicPartitionKey, int]) -> None:
        """
        Synchronously commit the last handled offset per partition.

        Raises:
            StaleOwnership: The group no longer considers this member the owner
        """

    @abstractmethod
    def close(self) -> None:
        """Leave the group."""


class KafkaBrokerClient(BrokerClient):
    """confluent-kafka consumer with manual commits."""

    def __init__(
        self,
        worker_id: str,
        bootstrap_servers: str,
        group_id: str,
        client_id: str = "audit-ingest",
        auto_offset_reset: str = "earliest",
        session_timeout_ms: int = 45000,
        extra_config: Optional[Dict[str, object]] = None
    ):
        super().__init__(worker_id)
        config = {
            "bootstrap.servers": bootstrap_servers,
            "group.id": group_id,
            "client.id": f"{client_id}-{worker_id}",
            "enable.auto.commit": False,
            "auto.offset.reset": auto_offset_reset,
            "session.timeout.ms": session_timeout_ms,
        }
        if extra_config:
            config.update(extra_config)

        self._consumer = Consumer(config)
        self._listener: Optional[RebalanceListener] = None

    def subscribe(self, topics: Iterable[str], listener: RebalanceListener) -> None:
        self._listener = listener
        self._consumer.subscribe(
            list(topics),
            on_assign=self._on_assign,
            on_revoke=self._on_revoke,
            on_lost=self._on_lost
        )
        logger.info(f"{self.worker_id} subscribed to {list(topics)}")

    def _on_assign(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        try:
            committed = consumer.committed(partitions, timeout=10) if partitions else []
        except KafkaException as e:
            # The assignment stands regardless; ownership must still be recorded
            logger.warning(f"{self.worker_id} could not fetch committed offsets on assign: {e}")
            committed = partitions
        assignments = [
            PartitionAssignment(
                topic=tp.topic,
                partition_id=tp.partition,
                owner_worker_id=self.worker_id,
                # Kafka stores the next offset to read; negative means none yet
                committed_offset=tp.offset - 1 if tp.offset >= 0 else None
            )
            for tp in committed
        ]
        self._listener.on_partitions_assigned(assignments)

    def _on_revoke(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        self._listener.on_partitions_revoked([(tp.topic, tp.partition) for tp in partitions])

    def _on_lost(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        self._listener.on_partitions_lost([(tp.topic, tp.partition) for tp in partitions])

    def poll(self, timeout: float, max_records: int) -> List[InboundMessage]:
        batch = []
        for msg in self._consumer.consume(num_messages=max_records, timeout=timeout):
            err = msg.error()
            if err is not None:
                if err.code() != KafkaError._PARTITION_EOF:
                    logger.warning(f"{self.worker_id} consume error: {err}")
                continue

            batch.append(InboundMessage(
                topic=msg.topic(),
                partition_id=msg.partition(),
                offset=msg.offset(),
                key=msg.key(),
                value=msg.value(),
                headers={
                    name: value.decode('utf-8', errors='replace')
                    for name, value in (msg.headers() or [])
                    if value is not None
                }
            ))
        return batch

    def commit(self, offsets: Mapping[TopicPartitionKey, int]) -> None:
        if not offsets:
            return
        # Kafka commits the offset of the next message to read
        tps = [TopicPartition(topic, partition, offset + 1) for (topic, partition), offset in offsets.items()]
        try:
            self._consumer.commit(offsets=tps, asynchronous=False)
        except KafkaException as e:
            err = e.args[0] if e.args else None
            if isinstance(err, KafkaError) and err.code() in FENCED_ERROR_CODES:
                topic, partition = next(iter(offsets))
                raise StaleOwnership(topic, partition) from e
            raise

    def close(self) -> None:
        self._consumer.close()
        logger.info(f"{self.worker_id} left the consumer group")
