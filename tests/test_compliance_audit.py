"""
Tests for the append-only compliance audit trail.
"""
import pytest

from affiliate_engine.models import AuditSeverity, ComplianceAuditEvent
from affiliate_engine.repositories.compliance_events import ComplianceEventRepository
from affiliate_engine.services.compliance_audit import ComplianceAuditService


class TestComplianceAuditService:

    def test_log_event(self, db, make_user):
        user = make_user()
        event = ComplianceAuditService(db).log_event(
            affiliate_user_id=user.id,
            event_type="payout_hold_compliance",
            severity=AuditSeverity.WARNING,
            message="held",
            metadata={"ledger_id": 7, "missing_reasons": ["tax_info_incomplete"]}
        )
        db.commit()

        stored = db.get(ComplianceAuditEvent, event.id)
        assert stored.severity == "warning"
        assert stored.event_metadata["missing_reasons"] == ["tax_info_incomplete"]
        assert stored.created_at is not None

    def test_events_cannot_be_updated(self, db, make_user):
        user = make_user()
        event = ComplianceAuditService(db).log_event(
            affiliate_user_id=user.id,
            event_type="affiliate_terms_accepted",
            severity="info",
            message="accepted"
        )
        db.commit()

        event.message = "rewritten"
        with pytest.raises(ValueError, match="immutable"):
            db.commit()
        db.rollback()

        assert db.get(ComplianceAuditEvent, event.id).message == "accepted"

    def test_unknown_severity_rejected(self, db, make_user):
        user = make_user()
        with pytest.raises(ValueError):
            ComplianceAuditService(db).log_event(
                affiliate_user_id=user.id,
                event_type="x",
                severity="urgent",
                message="nope"
            )

    def test_list_for_payout_or_affiliate(self, db, make_user):
        first = make_user()
        second = make_user()
        audit = ComplianceAuditService(db)
        audit.log_event(first.id, "a", AuditSeverity.INFO, "for first")
        audit.log_event(second.id, "b", AuditSeverity.INFO, "for second")
        db.commit()

        events = ComplianceEventRepository(db).list_for_payout_or_affiliate(payout_id=-1, affiliate_user_id=first.id)
        assert [e.message for e in events] == ["for first"]
