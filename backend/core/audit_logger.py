"""
Audit trail for signature and contract changes.

Rows are written inside the caller's unit of work so the audit entry commits
or rolls back together with the change it describes.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index
from sqlalchemy.orm import Session

from .clock import utcnow
from .database import Base

logger = logging.getLogger(__name__)


class AuditOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditLog(Base):
    """Database model for audit logs."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    table_name = Column(String(64), nullable=False)
    operation = Column(String(10), nullable=False)
    record_id = Column(Integer, nullable=True)
    changed_by = Column(Integer, nullable=True, index=True)
    summary = Column(Text, nullable=False)
    audit_metadata = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_audit_table_record", "table_name", "record_id"),
    )

    def __repr__(self):
        return f"<AuditLog(id={self.id}, {self.operation} {self.table_name}#{self.record_id})>"


class AuditLogger:
    def __init__(self, db: Session):
        self.db = db

    def log_action(
        self,
        table_name: str,
        operation: AuditOperation,
        record_id: Optional[int],
        changed_by: Optional[int],
        summary: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        entry = AuditLog(
            table_name=table_name,
            operation=operation.value,
            record_id=record_id,
            changed_by=changed_by,
            summary=summary,
            audit_metadata=metadata,
        )
        self.db.add(entry)
        logger.debug(f"Audit {operation.value} {table_name}#{record_id} by {changed_by}")
        return entry
