"""
Health check and monitoring endpoints.
"""

import time
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from audit_ingest.config import settings
from audit_ingest.database import Database, get_db
from audit_ingest.models import HealthStatus, PartitionAssignment
from audit_ingest.services.consumer_group import ConsumerGroup

router = APIRouter(tags=["monitoring"])

# Track application start time
START_TIME = time.time()


def get_consumer_group(request: Request) -> Optional[ConsumerGroup]:
    """Consumer group started by the lifespan, or None when disabled."""
    return getattr(request.app.state, "consumer_group", None)


@router.get("/health", response_model=HealthStatus)
async def health_check(
    db: Database = Depends(get_db),
    group: Optional[ConsumerGroup] = Depends(get_consumer_group)
):
    """
    Health check endpoint.

    Reports database connectivity and whether the consumer workers are
    running. Consumer lag is tracked by the broker, not here.
    """
    db_healthy = await db.health_check()

    if group is None:
        consumers = "disabled"
    else:
        consumers = "running" if group.running else "stopped"

    return HealthStatus(
        status="healthy" if db_healthy and consumers != "stopped" else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        consumers=consumers,
        uptime_seconds=time.time() - START_TIME,
        timestamp=datetime.now(timezone.utc)
    )


@router.get("/health/live")
async def liveness_check():
    """
    Kubernetes liveness probe.

    Simple check that the application is running.
    Does not check dependencies.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(db: Database = Depends(get_db)):
    """
    Kubernetes readiness probe.

    Verifies database connectivity.
    """
    db_healthy = await db.health_check()

    if not db_healthy:
        return Response(
            content='{"status": "not ready", "reason": "database disconnected"}',
            status_code=503,
            media_type="application/json"
        )

    return {"status": "ready"}


@router.get("/health/consumers", response_model=List[PartitionAssignment])
async def consumer_assignments(group: Optional[ConsumerGroup] = Depends(get_consumer_group)):
    """Partitions currently owned by this process's workers and their committed offsets."""
    if group is None:
        return []
    return group.assignments()


@router.get(settings.metrics_path)
async def metrics():
    """
    Prometheus metrics endpoint.

    Includes consumed/failed message counts, audit writes by outcome,
    store write latency and offset commits.
    """
    if not settings.enable_metrics:
        return Response(status_code=404)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@router.get("/info")
async def info():
    """Basic information about the running service."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "uptime_seconds": time.time() - START_TIME
    }
