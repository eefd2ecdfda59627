# affiliate_engine/models/compliance.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON, event
from datetime import datetime
import enum

from ..db.base_class import Base


class AuditSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ComplianceAuditEvent(Base):
    """Append-only record of consequential affiliate decisions"""
    __tablename__ = "affiliate_compliance_events"

    id = Column(Integer, primary_key=True, index=True)
    affiliate_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    payout_id = Column(Integer, ForeignKey("affiliate_payouts.id", ondelete="SET NULL"), nullable=True, index=True)

    event_type = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False, default=AuditSeverity.INFO.value)
    message = Column(Text, nullable=False)
    event_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __str__(self):
        return f"ComplianceAuditEvent(type={self.event_type}, severity={self.severity}, affiliate={self.affiliate_user_id})"


@event.listens_for(ComplianceAuditEvent, "before_update")
def _reject_audit_event_update(mapper, connection, target):
    raise ValueError(f"Compliance audit events are immutable (id={target.id})")
