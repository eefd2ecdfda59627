"""
Tests for admin settlement of payouts and the admin payout views.
"""
import pytest

from affiliate_engine.core.exceptions import InvalidInput, NotFound
from affiliate_engine.models import (
    CommissionLedgerEntry,
    ComplianceAuditEvent,
    LedgerStatus,
    PayoutStatus,
)
from affiliate_engine.services.commission_service import CommissionService
from affiliate_engine.services.payout_service import PayoutService

ADMIN_ID = 999


@pytest.fixture
def payouts(db, stripe_service):
    return PayoutService(db, stripe_service)


@pytest.fixture
def payout(db, affiliate_service, payouts, make_paid_invoice, make_compliant, referral, now, after_lock):
    _, customer, profile = referral
    make_compliant(profile)
    make_paid_invoice(customer.id, amount=10000)
    CommissionService(db, affiliate_service).process_paid_payment("in_test_1", now=now)
    payouts.run_payouts(as_of=after_lock)
    return payouts.admin_recent_payouts()[0]


class TestAdminMarkPayoutPaid:

    def test_marks_payout_and_entries_paid(self, db, payouts, payout):
        result = payouts.admin_mark_payout_paid(payout.id, note="Batch 42", actor_user_id=ADMIN_ID)

        assert result.status == PayoutStatus.PAID.value
        assert result.paid_at is not None
        assert result.note == "Batch 42"

        entry = db.query(CommissionLedgerEntry).one()
        assert entry.status == LedgerStatus.PAID.value
        assert entry.paid_at == result.paid_at

        event = db.query(ComplianceAuditEvent).filter(
            ComplianceAuditEvent.event_type == "admin_mark_payout_paid"
        ).one()
        assert event.severity == "info"
        assert event.actor_user_id == ADMIN_ID
        assert event.payout_id == payout.id

    def test_already_paid_is_returned_unchanged(self, db, payouts, payout):
        first = payouts.admin_mark_payout_paid(payout.id, note="first", actor_user_id=ADMIN_ID)
        paid_at = first.paid_at

        second = payouts.admin_mark_payout_paid(payout.id, note="second", actor_user_id=ADMIN_ID)
        assert second.paid_at == paid_at
        assert second.note == "first"
        assert db.query(ComplianceAuditEvent).filter(
            ComplianceAuditEvent.event_type == "admin_mark_payout_paid"
        ).count() == 1

    def test_failed_payout_cannot_be_paid(self, payouts, payout):
        payouts.admin_mark_payout_failed(payout.id, note="bounced", actor_user_id=ADMIN_ID)
        with pytest.raises(InvalidInput):
            payouts.admin_mark_payout_paid(payout.id, note=None, actor_user_id=ADMIN_ID)

    def test_unknown_payout(self, payouts):
        with pytest.raises(NotFound):
            payouts.admin_mark_payout_paid(12345, note=None, actor_user_id=ADMIN_ID)


class TestAdminMarkPayoutFailed:

    def test_marks_failed_and_keeps_entries(self, db, payouts, payout):
        result = payouts.admin_mark_payout_failed(payout.id, note="account closed", actor_user_id=ADMIN_ID)

        assert result.status == PayoutStatus.FAILED.value
        assert result.note == "account closed"
        assert db.query(CommissionLedgerEntry).one().status == LedgerStatus.APPROVED.value

        event = db.query(ComplianceAuditEvent).filter(
            ComplianceAuditEvent.event_type == "admin_mark_payout_failed"
        ).one()
        assert event.severity == "warning"

    def test_already_failed_is_returned_unchanged(self, db, payouts, payout):
        payouts.admin_mark_payout_failed(payout.id, note="first", actor_user_id=ADMIN_ID)
        result = payouts.admin_mark_payout_failed(payout.id, note="second", actor_user_id=ADMIN_ID)
        assert result.note == "first"

    def test_paid_payout_cannot_fail(self, payouts, payout):
        payouts.admin_mark_payout_paid(payout.id, note=None, actor_user_id=ADMIN_ID)
        with pytest.raises(InvalidInput):
            payouts.admin_mark_payout_failed(payout.id, note=None, actor_user_id=ADMIN_ID)

    def test_unknown_payout(self, payouts):
        with pytest.raises(NotFound):
            payouts.admin_mark_payout_failed(12345, note=None, actor_user_id=ADMIN_ID)


class TestAdminPayoutViews:

    def test_payout_detail(self, payouts, payout, referral):
        affiliate, customer, _ = referral
        detail = payouts.admin_get_payout_detail(payout.id)

        assert detail.payout.id == payout.id
        assert detail.payout.total_cents == 2000
        [item] = detail.items
        assert item.invoice_id == "in_test_1"
        assert item.referred_user_id == customer.id
        assert item.amount_cents == 2000
        assert item.tax_info_complete is True
        assert item.terms_accepted_at is not None
        assert all(e.affiliate_user_id == affiliate.id for e in detail.events)

    def test_payout_detail_unknown(self, payouts):
        with pytest.raises(NotFound):
            payouts.admin_get_payout_detail(12345)

    def test_recent_payouts_are_capped(self, payouts, payout):
        assert [p.id for p in payouts.admin_recent_payouts(limit=500)] == [payout.id]
