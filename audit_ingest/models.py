"""
Pydantic models for audit events, stored entries, consumer state and API payloads.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# Broker Models
# ============================================================================

class InboundMessage(BaseModel):
    """A single delivery from the broker. Lives for one delivery attempt."""

    model_config = ConfigDict(frozen=True)

    topic: str
    partition_id: int = Field(..., ge=0)
    offset: int = Field(..., ge=0)
    key: Optional[Union[str, bytes]] = None
    value: Optional[Union[str, bytes]] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def coordinate(self) -> str:
        """Human readable delivery coordinate for log lines."""
        return f"{self.topic}[{self.partition_id}]@{self.offset}"


class PartitionAssignment(BaseModel):
    """Which worker currently owns a topic partition."""

    topic: str
    partition_id: int
    owner_worker_id: str
    committed_offset: Optional[int] = Field(
        default=None,
        description="Last offset known to be durably processed"
    )


# ============================================================================
# Audit Models
# ============================================================================

class AuditEvent(BaseModel):
    """
    Decoded body of an audit-topic message.

    Only `refNo` and `date` are required; any other field is kept and stored
    as part of the payload.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    ref_no: str = Field(..., alias="refNo", min_length=1)
    date: datetime

    @field_validator('date')
    @classmethod
    def normalize_date(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class NewAuditEntry(BaseModel):
    """An entry ready to be inserted; the store assigns the id."""

    ref_no: str
    date: datetime
    payload: Dict[str, Any]
    dedupe_key: str = Field(..., min_length=1)


class AuditEntry(BaseModel):
    """Audit entry projection returned by the read API."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    ref_no: str = Field(..., alias="refNo")
    date: datetime
    payload: Dict[str, Any]


class WriteOutcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"


class WriteResult(BaseModel):
    """Result of an idempotent write."""

    outcome: WriteOutcome
    dedupe_key: str
    entry_id: Optional[int] = None

    @property
    def inserted(self) -> bool:
        return self.outcome is WriteOutcome.INSERTED


# ============================================================================
# API Models
# ============================================================================

class RefNoCountRequest(BaseModel):
    """Request body for the reference number count endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    ref_no: str = Field(
        ...,
        alias="refNo",
        min_length=1,
        examples=["TXN-2024-000123"]
    )
    till: datetime = Field(
        ...,
        description="Count entries whose date is at or after this instant",
        examples=["2024-05-01T10:00:00"]
    )


class HealthStatus(BaseModel):
    """Health check response."""

    status: str = Field(..., examples=["healthy", "unhealthy"])
    version: str
    database: str = Field(..., examples=["connected", "disconnected"])
    consumers: str = Field(..., examples=["running", "stopped", "disabled"])
    uptime_seconds: float
    timestamp: datetime
