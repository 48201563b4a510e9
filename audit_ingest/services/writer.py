"""
Idempotent writer for audit-topic messages.

A message may be delivered more than once: broker redelivery, a restart
after persisting but before committing, or a rebalance that hands a
partially committed partition to another worker. Every delivery of the
same message maps to the same dedupe key, and the store's unique
constraint on that key turns the second insert into a no-op.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Optional, Tuple

from prometheus_client import Counter, Histogram
from pydantic import ValidationError

from audit_ingest.errors import DeserializationError, DuplicateKey
from audit_ingest.models import (
    AuditEvent, InboundMessage, NewAuditEntry, WriteOutcome, WriteResult
)
from audit_ingest.services.audit_store import AuditStore

logger = logging.getLogger(__name__)

# Prometheus metrics
entries_written = Counter(
    'audit_entries_written_total',
    'Audit entries written, by outcome',
    ['outcome']
)
store_write_duration = Histogram(
    'audit_store_write_seconds',
    'Audit store insert duration'
)


def compute_dedupe_key(
    topic: str,
    partition_id: int,
    offset: int,
    token: Optional[str] = None
) -> str:
    """
    Derive the dedupe key for a delivery.

    A caller-supplied idempotency token wins over the delivery coordinate,
    so that the same logical event published twice is also stored once.

    Returns:
        Hex-encoded SHA-256 digest
    """
    if token:
        material = f"token:{token}"
    else:
        material = f"{topic}:{partition_id}:{offset}"
    return hashlib.sha256(material.encode('utf-8')).hexdigest()


def decode_audit_event(value) -> Tuple[AuditEvent, Dict[str, Any]]:
    """
    Decode and validate a message body.

    Args:
        value: Raw message value (bytes or str)

    Returns:
        The validated event and the decoded JSON object as sent

    Raises:
        DeserializationError: Body is missing, not JSON, not an object,
            or lacks a valid refNo/date
    """
    if value is None:
        raise DeserializationError("message has no body")

    try:
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        body = json.loads(value)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DeserializationError(f"body is not valid JSON: {e}") from e

    if not isinstance(body, dict):
        raise DeserializationError(f"expected a JSON object, got {type(body).__name__}")

    try:
        event = AuditEvent.model_validate(body)
    except ValidationError as e:
        raise DeserializationError(f"invalid audit event: {e.errors()}") from e

    return event, body


class IdempotentWriter:
    """Turns an audit-topic message into exactly one audit entry."""

    def __init__(self, store: AuditStore, idempotency_header: str = "idempotency-key"):
        self.store = store
        self.idempotency_header = idempotency_header.lower()

    def dedupe_key_for(self, msg: InboundMessage) -> str:
        token = None
        for name, value in msg.headers.items():
            if name.lower() == self.idempotency_header and value:
                token = value
                break
        return compute_dedupe_key(msg.topic, msg.partition_id, msg.offset, token)

    async def write(self, msg: InboundMessage) -> WriteResult:
        """
        Persist the audit event carried by `msg`.

        Safe to call any number of times for the same message: the first call
        inserts, later calls report ALREADY_PRESENT.

        Raises:
            DeserializationError: Message body is not a valid audit event
            StoreUnavailable: Transient persistence failure
        """
        event, body = decode_audit_event(msg.value)
        dedupe_key = self.dedupe_key_for(msg)

        entry = NewAuditEntry(
            ref_no=event.ref_no,
            date=event.date,
            payload=body,
            dedupe_key=dedupe_key
        )

        try:
            with store_write_duration.time():
                entry_id = await self.store.insert(entry)
        except DuplicateKey:
            entries_written.labels(outcome=WriteOutcome.ALREADY_PRESENT.value).inc()
            logger.info(f"Duplicate delivery ignored: {msg.coordinate}, key={dedupe_key[:12]}")
            return WriteResult(outcome=WriteOutcome.ALREADY_PRESENT, dedupe_key=dedupe_key)

        entries_written.labels(outcome=WriteOutcome.INSERTED.value).inc()
        logger.info(f"Audit entry stored: id={entry_id}, ref_no={event.ref_no}, from={msg.coordinate}")
        return WriteResult(
            outcome=WriteOutcome.INSERTED,
            dedupe_key=dedupe_key,
            entry_id=entry_id
        )
