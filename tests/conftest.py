"""
Test fixtures and configuration for pytest.
"""

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from audit_ingest.models import InboundMessage, PartitionAssignment
from audit_ingest.services.audit_store import AuditStore
from audit_ingest.services.kafka_client import BrokerClient
from audit_ingest.services.query import QueryService
from audit_ingest.services.writer import IdempotentWriter

AUDIT_TOPIC = "audit-topic"
LOG_TOPIC = "log-topic"


class MockDatabase:
    """Mock database for testing without PostgreSQL.

    Understands the statements issued by AuditStore and keeps rows in memory.
    Set `fail_with` to an exception instance to simulate an outage, or map a
    refNo to an exception in `insert_failures` to fail its next insert only.
    """

    def __init__(self):
        self.rows: List[dict] = []
        self.executed: List[str] = []
        self.fail_with: Optional[Exception] = None
        self.insert_failures: Dict[str, Exception] = {}
        self._next_id = 1

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def execute(self, query: str, *args):
        """Mock execute."""
        self._maybe_fail()
        self.executed.append(query)
        return "CREATE TABLE"

    async def fetchval(self, query: str, *args):
        """Mock fetchval."""
        self._maybe_fail()
        if "INSERT INTO audit_entries" in query:
            ref_no, event_date, payload, dedupe_key = args
            if ref_no in self.insert_failures:
                raise self.insert_failures.pop(ref_no)
            if any(row["dedupe_key"] == dedupe_key for row in self.rows):
                # ON CONFLICT DO NOTHING still burns a sequence value
                self._next_id += 1
                return None
            entry_id = self._next_id
            self._next_id += 1
            self.rows.append({
                "id": entry_id,
                "ref_no": ref_no,
                "event_date": event_date,
                "payload": payload,
                "dedupe_key": dedupe_key,
            })
            return entry_id
        if "SELECT COUNT(*)" in query:
            ref_no, since = args
            return sum(
                1 for row in self.rows
                if row["ref_no"] == ref_no and row["event_date"] >= since
            )
        if query.strip() == "SELECT 1":
            return 1
        return None

    async def fetch(self, query: str, *args):
        """Mock fetch."""
        self._maybe_fail()
        if "ORDER BY id DESC" in query:
            limit, offset = args
            ordered = sorted(self.rows, key=lambda row: row["id"], reverse=True)
            return ordered[offset:offset + limit]
        return []

    async def health_check(self) -> bool:
        return self.fail_with is None


# ============================================================================
# Fake broker
# ============================================================================

class FakeBroker:
    """In-memory partitioned log with a round-robin group coordinator.

    Committed offsets follow the Kafka convention: the next offset to read.
    """

    def __init__(self, partitions: Dict[str, int]):
        self.partitions = partitions
        self.logs: Dict[Tuple[str, int], List[dict]] = {
            (topic, p): [] for topic, count in partitions.items() for p in range(count)
        }
        self.committed: Dict[Tuple[str, int], int] = {}
        self.members: List["FakeBrokerClient"] = []

    def produce(self, topic: str, partition: int, value, key=None, headers=None) -> int:
        log = self.logs[(topic, partition)]
        log.append({"key": key, "value": value, "headers": headers or {}})
        return len(log) - 1

    def join(self, client: "FakeBrokerClient"):
        self.members.append(client)
        self.rebalance()

    def leave(self, client: "FakeBrokerClient"):
        if client in self.members:
            self.members.remove(client)
            client.owned = set()
            self.rebalance()

    def rebalance(self):
        """Spread every subscribed partition across members, round robin."""
        targets = {client: set() for client in self.members}
        members = list(self.members)
        if members:
            all_partitions = sorted(
                tp for tp in self.logs
                if any(tp[0] in client.topics for client in members)
            )
            for i, tp in enumerate(all_partitions):
                targets[members[i % len(members)]].add(tp)
        for client, target in targets.items():
            client.schedule(target)


class FakeBrokerClient(BrokerClient):
    """Group member of a FakeBroker. Rebalance callbacks fire inside poll."""

    def __init__(self, broker: FakeBroker, worker_id: str):
        super().__init__(worker_id)
        self.broker = broker
        self.topics: List[str] = []
        self.listener = None
        self.owned = set()
        self.positions: Dict[Tuple[str, int], int] = {}
        self.commit_calls: List[Dict[Tuple[str, int], int]] = []
        self.closed = False
        self._target = None
        self._lock = threading.Lock()

    def subscribe(self, topics, listener):
        self.topics = list(topics)
        self.listener = listener
        self.broker.join(self)

    def schedule(self, target):
        with self._lock:
            self._target = set(target)

    def _apply_rebalance(self):
        with self._lock:
            target, self._target = self._target, None
        if target is None:
            return
        revoked = sorted(self.owned - target)
        assigned = sorted(target - self.owned)
        if revoked:
            self.listener.on_partitions_revoked(revoked)
        self.owned = target
        for tp in assigned:
            self.positions[tp] = self.broker.committed.get(tp, 0)
        if assigned:
            self.listener.on_partitions_assigned([
                PartitionAssignment(
                    topic=topic,
                    partition_id=partition,
                    owner_worker_id=self.worker_id,
                    committed_offset=self.broker.committed[(topic, partition)] - 1
                    if (topic, partition) in self.broker.committed else None
                )
                for topic, partition in assigned
            ])

    def poll(self, timeout, max_records):
        self._apply_rebalance()
        batch = []
        for tp in sorted(self.owned):
            log = self.broker.logs[tp]
            while self.positions[tp] < len(log) and len(batch) < max_records:
                offset = self.positions[tp]
                record = log[offset]
                batch.append(InboundMessage(
                    topic=tp[0],
                    partition_id=tp[1],
                    offset=offset,
                    key=record["key"],
                    value=record["value"],
                    headers=record["headers"],
                ))
                self.positions[tp] = offset + 1
        if not batch:
            time.sleep(min(timeout, 0.005))
        return batch

    def commit(self, offsets):
        self.commit_calls.append(dict(offsets))
        for tp, offset in offsets.items():
            self.broker.committed[tp] = offset + 1

    def close(self):
        self.closed = True
        self.broker.leave(self)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_db() -> MockDatabase:
    """Create a mock database for testing."""
    return MockDatabase()


@pytest.fixture
def store(mock_db: MockDatabase) -> AuditStore:
    return AuditStore(mock_db, max_page_limit=20)


@pytest.fixture
def writer(store: AuditStore) -> IdempotentWriter:
    return IdempotentWriter(store)


@pytest.fixture
def query_service(store: AuditStore) -> QueryService:
    return QueryService(store)


@pytest.fixture
def boundary() -> datetime:
    """A fixed instant used as the counting window boundary."""
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def audit_body() -> Callable[..., bytes]:
    """Build a serialized audit event."""

    def build(ref_no: str = "REF-001", date: Optional[datetime] = None, **extra) -> bytes:
        body = {
            "refNo": ref_no,
            "date": (date or datetime(2024, 5, 1, 12, 0, 0)).isoformat(),
            "endpoint": "/v1/payments",
            "status": "SUCCESS",
        }
        body.update(extra)
        return json.dumps(body).encode("utf-8")

    return build


@pytest.fixture
def make_message(audit_body) -> Callable[..., InboundMessage]:
    """Build an audit-topic message at a given coordinate."""

    def build(
        offset: int = 0,
        partition_id: int = 0,
        value=None,
        topic: str = AUDIT_TOPIC,
        key=None,
        headers: Optional[Dict[str, str]] = None,
        **body_fields
    ) -> InboundMessage:
        return InboundMessage(
            topic=topic,
            partition_id=partition_id,
            offset=offset,
            key=key,
            value=audit_body(**body_fields) if value is None else value,
            headers=headers or {},
        )

    return build


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker({AUDIT_TOPIC: 3, LOG_TOPIC: 2})


@pytest.fixture
def window_dates(boundary: datetime) -> List[datetime]:
    """Two instants before the boundary, one on it and two after."""
    return [
        boundary - timedelta(hours=2),
        boundary - timedelta(seconds=1),
        boundary,
        boundary + timedelta(minutes=5),
        boundary + timedelta(days=1),
    ]
