# =============================================================================
# Audit Log Sink
# =============================================================================
# Append-only record of every pipeline stage transition. Records carry a
# retention window (default 60 days); DynamoDB expires them through a ttl
# attribute, the in-memory sink prunes on demand.
# =============================================================================

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 60


class Stage:
    FILTER = "filter"
    AUTHORIZE = "authorize"
    ROUTE = "route"
    DISPATCH = "dispatch"
    INVOKE = "invoke"


class Outcome:
    ALLOWED = "allowed"
    COUNTED = "counted"
    BLOCKED = "blocked"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    MATCHED = "matched"
    NO_RULE_MATCHED = "no_rule_matched"
    DISPATCHED = "dispatched"
    REJECTED = "rejected"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class AuditRecord:
    request_id: str
    stage: str
    outcome: str
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "requestId": self.request_id,
            "stage": self.stage,
            "outcome": self.outcome,
            "detail": self.detail,
        }


class AuditSink:
    """Append-only audit log."""

    retention_days: int = DEFAULT_RETENTION_DAYS

    def append(self, record: AuditRecord) -> None:
        raise NotImplementedError

    def record(self, request_id: str, stage: str, outcome: str, **detail: Any) -> AuditRecord:
        """Build and append a record; sink failures never propagate."""
        entry = AuditRecord(request_id=request_id, stage=stage, outcome=outcome, detail=detail)
        try:
            self.append(entry)
        except Exception as e:
            logger.warning(f"Failed to append audit record stage={stage} outcome={outcome}: {e}")
        return entry


class MemoryAuditSink(AuditSink):
    """Thread-safe in-process sink, used for local runs and tests."""

    def __init__(self, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.retention_days = retention_days
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self, request_id: Optional[str] = None, stage: Optional[str] = None) -> List[AuditRecord]:
        with self._lock:
            snapshot = list(self._records)
        return [
            r for r in snapshot
            if (request_id is None or r.request_id == request_id) and (stage is None or r.stage == stage)
        ]

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop records older than the retention window; returns how many were dropped."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=self.retention_days)
        with self._lock:
            kept = [r for r in self._records if r.timestamp >= cutoff]
            dropped = len(self._records) - len(kept)
            self._records = kept
        return dropped


class DynamoAuditSink(AuditSink):
    """Writes records to a DynamoDB table with a ttl attribute."""

    def __init__(self, table, pk_name: str = "pk", retention_days: int = DEFAULT_RETENTION_DAYS):
        self.table = table
        self.pk_name = pk_name
        self.retention_days = retention_days

    def append(self, record: AuditRecord) -> None:
        item = {
            self.pk_name: f"AUDIT#{record.request_id}#{record.stage}#{uuid.uuid4().hex[:12]}",
            "itemType": "AUDIT_RECORD",
            **record.to_dict(),
            "ttl": int(time.time()) + 86400 * self.retention_days,
        }
        try:
            self.table.put_item(Item=item)
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to store audit record for {record.request_id}: {e}")
