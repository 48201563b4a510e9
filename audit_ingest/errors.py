"""
Error taxonomy for the ingestion and query paths.

Ingestion errors are contained per message by the consumer group and only
show up as log lines and consumer lag. Query errors propagate to the HTTP
layer, which maps them to status codes.
"""

from typing import Optional


class AuditIngestError(Exception):
    """Base class for all service errors."""


class DeserializationError(AuditIngestError):
    """A message body could not be decoded into an audit event."""


class DuplicateKey(AuditIngestError):
    """An entry with the same dedupe key already exists in the store."""

    def __init__(self, dedupe_key: str):
        super().__init__(f"duplicate dedupe key: {dedupe_key}")
        self.dedupe_key = dedupe_key


class StaleOwnership(AuditIngestError):
    """A commit was attempted for a partition this worker no longer owns."""

    def __init__(self, topic: str, partition_id: int, offset: Optional[int] = None):
        super().__init__(
            f"partition {topic}[{partition_id}] is not owned by this worker (offset={offset})"
        )
        self.topic = topic
        self.partition_id = partition_id
        self.offset = offset


class OffsetRegression(AuditIngestError):
    """A commit did not advance the partition's committed offset."""

    def __init__(self, topic: str, partition_id: int, offset: int, current: int):
        super().__init__(
            f"offset {offset} for {topic}[{partition_id}] does not advance past {current}"
        )
        self.topic = topic
        self.partition_id = partition_id
        self.offset = offset
        self.current = current


class StoreUnavailable(AuditIngestError):
    """Transient persistence failure (connection lost, timeout)."""


class InvalidQuery(AuditIngestError):
    """Query parameters rejected before reaching the store."""
