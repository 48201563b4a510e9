"""
Sample Publisher

Sends demo audit records and log lines to the topics consumed by the
Audit Ingest Service.

Usage:
    python scripts/publish_audit_events.py [count] [ref_no]
"""

import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from confluent_kafka import Producer

from audit_ingest.config import settings


class AuditEventPublisher:
    """
    Publishes audit records to audit-topic and free-form lines to log-topic.
    """

    def __init__(self, bootstrap_servers: str = settings.kafka_bootstrap_servers):
        self.producer = Producer({
            "bootstrap.servers": bootstrap_servers,
            "acks": "all",
            "enable.idempotence": True,
            "linger.ms": 5,
            "client.id": f"{settings.kafka_client_id}-publisher",
        })

    @staticmethod
    def _delivery_report(err, msg):
        if err is not None:
            print(f"Delivery failed for {msg.topic()}: {err}")
        else:
            print(f"Delivered to {msg.topic()}[{msg.partition()}] @ {msg.offset()}")

    def publish_audit(
        self,
        ref_no: str,
        details: Dict[str, Any],
        date: Optional[datetime] = None,
        idempotency_key: Optional[str] = None
    ):
        """
        Publish one audit record.

        Args:
            ref_no: Reference number the record is counted under
            details: Extra payload fields
            date: Event time (defaults to now, UTC)
            idempotency_key: Optional token; republishing with the same token
                is stored only once
        """
        body = {
            "refNo": ref_no,
            "date": (date or datetime.now(timezone.utc)).isoformat(),
            **details,
        }
        headers = [(settings.idempotency_header, idempotency_key.encode("utf-8"))] if idempotency_key else None
        self.producer.produce(
            settings.audit_topic,
            key=ref_no,
            value=json.dumps(body),
            headers=headers,
            on_delivery=self._delivery_report
        )
        self.producer.poll(0)

    def publish_log(self, line: str, key: Optional[str] = None):
        self.producer.produce(settings.log_topic, key=key, value=line, on_delivery=self._delivery_report)
        self.producer.poll(0)

    def close(self):
        self.producer.flush(10)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


if __name__ == "__main__":
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 5
    ref_no = sys.argv[2] if len(sys.argv) > 2 else "TXN-DEMO-001"

    print("=== Audit Event Publisher Demo ===\n")

    with AuditEventPublisher() as publisher:
        for i in range(count):
            publisher.publish_audit(
                ref_no=ref_no,
                details={
                    "endpoint": "/v1/payments",
                    "method": "POST",
                    "status": "SUCCESS",
                    "sequence": i,
                },
                idempotency_key=str(uuid.uuid4())
            )
            publisher.publish_log(f"payment request {i} for {ref_no} processed", key=ref_no)

        # Same token twice: the service stores it once
        token = str(uuid.uuid4())
        for _ in range(2):
            publisher.publish_audit(ref_no=ref_no, details={"status": "RETRIED"}, idempotency_key=token)

    print(f"\nPublished {count + 2} audit records and {count} log lines for {ref_no}")
