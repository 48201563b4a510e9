"""
Audit history endpoints - GET /v1/audit, POST /v1/ref-no-count
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from audit_ingest.errors import InvalidQuery, StoreUnavailable
from audit_ingest.models import AuditEntry, RefNoCountRequest
from audit_ingest.services.query import QueryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["audit"])


def get_query_service(request: Request) -> QueryService:
    """Dependency injection for the query service built at startup."""
    return request.app.state.query_service


async def _audit_page(
    query: QueryService,
    page: Optional[int],
    limit: Optional[int]
) -> List[AuditEntry]:
    try:
        return await query.get_audit_logs(page=page, limit=limit)
    except InvalidQuery as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreUnavailable as e:
        logger.error(f"Audit page query failed: {e}")
        raise HTTPException(status_code=503, detail="audit store unavailable")


@router.get("/audit", response_model=List[AuditEntry])
async def audit_default(query: QueryService = Depends(get_query_service)):
    """
    Latest audit entries, newest first.

    Uses the default page (0) and limit (5).
    """
    return await _audit_page(query, None, None)


@router.get("/audit/{page}", response_model=List[AuditEntry])
async def audit_page(page: int, query: QueryService = Depends(get_query_service)):
    """One page of audit entries with the default limit."""
    return await _audit_page(query, page, None)


@router.get("/audit/{page}/{limit}", response_model=List[AuditEntry])
async def audit_page_limit(
    page: int,
    limit: int,
    query: QueryService = Depends(get_query_service)
):
    """
    One page of audit entries.

    **Path Parameters:**
    - `page`: zero-based page number
    - `limit`: page size; values above the configured maximum are clamped
    """
    return await _audit_page(query, page, limit)


@router.post("/ref-no-count", response_model=int)
async def ref_no_count(
    body: RefNoCountRequest,
    query: QueryService = Depends(get_query_service)
):
    """
    Count audit entries for a reference number.

    **Request Body:**
    - `refNo`: reference number to look for
    - `till`: ISO-8601 timestamp; entries dated at or after it are counted

    **Returns:** the number of matching entries
    """
    try:
        return await query.ref_no_count(body.ref_no, body.till)
    except InvalidQuery as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreUnavailable as e:
        logger.error(f"refNo count query failed: {e}")
        raise HTTPException(status_code=503, detail="audit store unavailable")
