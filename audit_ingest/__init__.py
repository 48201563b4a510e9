"""
Audit Ingest Service
====================

Kafka-fed audit history with exactly-once effect:
- Consumer group over log-topic and audit-topic with manual offset commits
- Idempotent writes keyed by delivery coordinate
- PostgreSQL as the audit store
- FastAPI read API for paginated history and refNo counts
"""

__version__ = "1.0.0"
