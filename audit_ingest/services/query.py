"""
Read side of the audit history.

Stateless: every call goes to the store so results reflect the latest
committed entries.
"""

import logging
from datetime import datetime
from typing import List, Optional

from audit_ingest.errors import InvalidQuery
from audit_ingest.models import AuditEntry
from audit_ingest.services.audit_store import AuditStore

logger = logging.getLogger(__name__)

# Largest OFFSET PostgreSQL accepts (bigint)
MAX_OFFSET = 2 ** 63 - 1


class QueryService:
    """Translates page/limit and refNo/till parameters into store calls."""

    def __init__(self, store: AuditStore, default_page: int = 0, default_limit: int = 5):
        self.store = store
        self.default_page = default_page
        self.default_limit = default_limit

    async def get_audit_logs(
        self,
        page: Optional[int] = None,
        limit: Optional[int] = None
    ) -> List[AuditEntry]:
        """
        Get one page of audit history, newest first.

        Defaults only apply to omitted parameters; an explicit 0 is kept.
        Limits above the store maximum are clamped, not rejected.

        Raises:
            InvalidQuery: page or limit is negative, or the page lies beyond
                the largest offset the store can address
        """
        if page is None:
            page = self.default_page
        if limit is None:
            limit = self.default_limit

        if page < 0:
            raise InvalidQuery(f"page must be non-negative, got {page}")
        if limit < 0:
            raise InvalidQuery(f"limit must be non-negative, got {limit}")

        limit = self.store.clamp_limit(limit)
        offset = page * limit
        if offset > MAX_OFFSET:
            raise InvalidQuery(f"page {page} is out of range")
        return await self.store.page(offset=offset, limit=limit)

    async def ref_no_count(self, ref_no: str, till: datetime) -> int:
        """
        Count entries for `ref_no` dated at or after `till`.

        A `till` in the future is accepted and simply matches nothing.
        """
        if not ref_no or not ref_no.strip():
            raise InvalidQuery("refNo must not be empty")

        count = await self.store.count_by_ref_since(ref_no, till)
        logger.debug(f"refNo count: ref_no={ref_no}, since={till.isoformat()}, count={count}")
        return count
