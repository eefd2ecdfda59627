# affiliate_engine/repositories/compliance_events.py
from typing import Optional, List
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.compliance import ComplianceAuditEvent


class ComplianceEventRepository:
    """Append-only access, there is deliberately no update or delete"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, audit_event: ComplianceAuditEvent) -> ComplianceAuditEvent:
        self.db.add(audit_event)
        self.db.flush()
        return audit_event

    def list_for_affiliate(self, affiliate_user_id: int, event_type: Optional[str] = None, limit: int = 50) -> List[ComplianceAuditEvent]:
        query = self.db.query(ComplianceAuditEvent).filter(
            ComplianceAuditEvent.affiliate_user_id == affiliate_user_id
        )
        if event_type:
            query = query.filter(ComplianceAuditEvent.event_type == event_type)
        return query.order_by(
            ComplianceAuditEvent.created_at.desc(),
            ComplianceAuditEvent.id.desc()
        ).limit(limit).all()

    def list_for_payout_or_affiliate(self, payout_id: int, affiliate_user_id: int, limit: int = 50) -> List[ComplianceAuditEvent]:
        return self.db.query(ComplianceAuditEvent).filter(
            or_(
                ComplianceAuditEvent.payout_id == payout_id,
                ComplianceAuditEvent.affiliate_user_id == affiliate_user_id
            )
        ).order_by(
            ComplianceAuditEvent.created_at.desc(),
            ComplianceAuditEvent.id.desc()
        ).limit(limit).all()
