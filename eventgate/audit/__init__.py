from eventgate.audit.sink import (
    AuditRecord,
    AuditSink,
    DynamoAuditSink,
    MemoryAuditSink,
    Outcome,
    Stage,
)

__all__ = [
    "AuditRecord",
    "AuditSink",
    "DynamoAuditSink",
    "MemoryAuditSink",
    "Outcome",
    "Stage",
]
