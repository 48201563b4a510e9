"""
Audit entry persistence.

Entries are append-only. Uniqueness of the dedupe key is enforced by the
database itself so that independent consumer workers never need to
coordinate through application-level locks.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import List

import asyncpg

from audit_ingest.database import Database
from audit_ingest.errors import DuplicateKey, StoreUnavailable
from audit_ingest.models import AuditEntry, NewAuditEntry, ensure_utc

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_entries (
    id          BIGSERIAL PRIMARY KEY,
    ref_no      TEXT NOT NULL,
    event_date  TIMESTAMPTZ NOT NULL,
    payload     JSONB NOT NULL,
    dedupe_key  TEXT NOT NULL,
    received_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT audit_entries_dedupe_key_key UNIQUE (dedupe_key)
);

CREATE INDEX IF NOT EXISTS idx_audit_entries_ref_no_date
    ON audit_entries (ref_no, event_date);
"""

# Errors that mean "try again later" rather than "this entry is bad"
# asyncpg.DataError subclasses both InterfaceError and ValueError; it means bad
# input and is re-raised ahead of these
TRANSIENT_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.TooManyConnectionsError,
    asyncio.TimeoutError,
    OSError,
)


class AuditStore:
    """Durable table of audit entries."""

    def __init__(self, db: Database, max_page_limit: int = 100):
        self.db = db
        self.max_page_limit = max_page_limit

    async def ensure_schema(self) -> None:
        """Create the audit table and its indexes if they do not exist."""
        try:
            await self.db.execute(SCHEMA)
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"schema setup failed: {e}") from e
        logger.info("Audit schema ready")

    async def insert(self, entry: NewAuditEntry) -> int:
        """
        Insert a new audit entry.

        Args:
            entry: The entry to persist

        Returns:
            The store-assigned ID

        Raises:
            DuplicateKey: An entry with the same dedupe key already exists
            StoreUnavailable: The database could not be reached
        """
        try:
            entry_id = await self.db.fetchval(
                """
                INSERT INTO audit_entries (ref_no, event_date, payload, dedupe_key)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (dedupe_key) DO NOTHING
                RETURNING id
                """,
                entry.ref_no,
                ensure_utc(entry.date),
                json.dumps(entry.payload),
                entry.dedupe_key
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateKey(entry.dedupe_key) from e
        except ValueError:
            raise
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"insert failed: {e}") from e

        # ON CONFLICT DO NOTHING returns no row for an existing key
        if entry_id is None:
            raise DuplicateKey(entry.dedupe_key)

        logger.debug(f"Audit entry stored: id={entry_id}, ref_no={entry.ref_no}")
        return entry_id

    def clamp_limit(self, limit: int) -> int:
        return min(limit, self.max_page_limit)

    async def page(self, offset: int, limit: int) -> List[AuditEntry]:
        """
        Fetch entries newest first.

        Args:
            offset: Number of entries to skip
            limit: Maximum number of entries, clamped to max_page_limit

        Returns:
            Entries ordered by ID descending
        """
        limit = self.clamp_limit(limit)
        if limit <= 0:
            return []

        try:
            rows = await self.db.fetch(
                """
                SELECT id, ref_no, event_date, payload
                FROM audit_entries
                ORDER BY id DESC
                LIMIT $1 OFFSET $2
                """,
                limit,
                offset
            )
        except ValueError:
            raise
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"page query failed: {e}") from e

        return [self._to_entry(row) for row in rows]

    async def count_by_ref_since(self, ref_no: str, since: datetime) -> int:
        """
        Count entries for a reference number dated at or after `since`.

        Read-committed, not a snapshot: entries inserted while the query runs
        may or may not be counted.
        """
        try:
            count = await self.db.fetchval(
                """
                SELECT COUNT(*) FROM audit_entries
                WHERE ref_no = $1 AND event_date >= $2
                """,
                ref_no,
                ensure_utc(since)
            )
        except ValueError:
            raise
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"count query failed: {e}") from e

        return int(count or 0)

    @staticmethod
    def _to_entry(row) -> AuditEntry:
        payload = row['payload']
        if isinstance(payload, str):
            payload = json.loads(payload)
        return AuditEntry(
            id=row['id'],
            ref_no=row['ref_no'],
            date=row['event_date'],
            payload=payload
        )
