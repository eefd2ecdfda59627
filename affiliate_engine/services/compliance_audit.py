# affiliate_engine/services/compliance_audit.py
from typing import Optional, Dict, Any
import logging
from sqlalchemy.orm import Session

from ..models.compliance import AuditSeverity, ComplianceAuditEvent
from ..repositories.compliance_events import ComplianceEventRepository

logger = logging.getLogger(__name__)


class ComplianceAuditService:
    """Appends compliance events inside the caller's transaction"""

    def __init__(self, db: Session):
        self.db = db
        self.events = ComplianceEventRepository(db)

    def log_event(
        self,
        affiliate_user_id: int,
        event_type: str,
        severity: AuditSeverity,
        message: str,
        actor_user_id: Optional[int] = None,
        payout_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ComplianceAuditEvent:
        audit_event = ComplianceAuditEvent(
            affiliate_user_id=affiliate_user_id,
            actor_user_id=actor_user_id,
            payout_id=payout_id,
            event_type=event_type,
            severity=AuditSeverity(severity).value,
            message=message,
            event_metadata=metadata
        )
        self.events.add(audit_event)

        log = logger.warning if audit_event.severity != AuditSeverity.INFO.value else logger.info
        log(f"Compliance event {event_type} ({audit_event.severity}) for affiliate {affiliate_user_id}: {message}")
        return audit_event
