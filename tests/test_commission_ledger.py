"""
Tests for commission crediting from paid invoices.
"""
import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy.orm import sessionmaker

from affiliate_engine.models import (
    AffiliateStatus,
    CommissionLedgerEntry,
    LedgerStatus,
    ReferralAttribution,
)
from affiliate_engine.services.commission_service import CommissionService, commission_amount


@pytest.fixture
def commissions(db, affiliate_service):
    return CommissionService(db, affiliate_service)


def _entries(db, invoice_id="in_test_1"):
    return db.query(CommissionLedgerEntry).filter(
        CommissionLedgerEntry.invoice_id == invoice_id
    ).order_by(CommissionLedgerEntry.level).all()


class TestCommissionAmount:

    @pytest.mark.parametrize("amount,rate_bps,expected", [
        (10000, 2000, 2000),
        (999, 2000, 199),
        (1, 2000, 0),
        (4999, 1, 0),
        (0, 2000, 0),
        (10000, 0, 0),
    ])
    def test_floors(self, amount, rate_bps, expected):
        assert commission_amount(amount, rate_bps) == expected


class TestProcessPaidPayment:

    def test_level_one_entry(self, db, commissions, make_paid_invoice, referral, now):
        affiliate, customer, _ = referral
        make_paid_invoice(customer.id, amount=10000)

        assert commissions.process_paid_payment("in_test_1", now=now) == 1

        [entry] = _entries(db)
        assert entry.affiliate_user_id == affiliate.id
        assert entry.referred_user_id == customer.id
        assert entry.level == 1
        assert entry.amount_cents == 2000
        assert entry.currency == "usd"
        assert entry.status == LedgerStatus.PENDING.value
        assert entry.reason == "subscription_paid"
        assert entry.available_at == now + timedelta(days=30)

        assert db.get(ReferralAttribution, customer.id).activated_at == now

    def test_duplicate_delivery_is_a_noop(self, db, commissions, make_paid_invoice, referral, now):
        _, customer, _ = referral
        make_paid_invoice(customer.id, amount=10000)

        assert commissions.process_paid_payment("in_test_1", now=now) == 1
        assert commissions.process_paid_payment("in_test_1", now=now + timedelta(hours=1)) == 0
        assert len(_entries(db)) == 1

    def test_concurrent_delivery_in_other_session_credits_once(self, db, engine, commissions, make_paid_invoice, referral, now):
        _, customer, _ = referral
        make_paid_invoice(customer.id, amount=10000)
        assert commissions.process_paid_payment("in_test_1", now=now) == 1

        other_db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
        try:
            racing = CommissionService(other_db)
            # Its duplicate check ran before the first delivery committed
            with patch.object(racing.ledger, "exists", return_value=False):
                assert racing.process_paid_payment("in_test_1", now=now) == 0
        finally:
            other_db.close()

        db.expire_all()
        [entry] = _entries(db)
        assert entry.level == 1
        assert entry.amount_cents == 2000

    def test_currency_is_lower_cased(self, db, commissions, make_paid_invoice, referral, now):
        _, customer, _ = referral
        make_paid_invoice(customer.id, amount=10000, currency="EUR")

        commissions.process_paid_payment("in_test_1", now=now)
        assert _entries(db)[0].currency == "eur"

    def test_level_two_uses_referring_affiliate_rate(self, db, commissions, make_user, affiliate_service, make_paid_invoice, referral, now):
        affiliate, customer, profile = referral
        upline = make_user(email="upline@example.com")
        upline_profile = affiliate_service.ensure_profile(upline.id)
        upline_profile.level_two_rate_bps = 0
        profile.level_two_rate_bps = 1000
        profile.parent_affiliate_user_id = upline.id
        db.commit()

        make_paid_invoice(customer.id, amount=10000)
        assert commissions.process_paid_payment("in_test_1", now=now) == 2

        level_one, level_two = _entries(db)
        assert level_one.amount_cents == 2000
        assert level_two.affiliate_user_id == upline.id
        assert level_two.level == 2
        assert level_two.amount_cents == 1000
        assert level_two.reason == "subscription_paid_level2"
        assert level_two.available_at == level_one.available_at

    def test_no_level_two_when_referring_rate_is_zero(self, db, commissions, make_user, affiliate_service, make_paid_invoice, referral, now):
        _, customer, profile = referral
        upline = make_user(email="upline@example.com")
        upline_profile = affiliate_service.ensure_profile(upline.id)
        upline_profile.level_two_rate_bps = 1500
        profile.level_two_rate_bps = 0
        profile.parent_affiliate_user_id = upline.id
        db.commit()

        make_paid_invoice(customer.id, amount=10000)
        assert commissions.process_paid_payment("in_test_1", now=now) == 1
        assert [e.level for e in _entries(db)] == [1]

    def test_no_level_two_for_inactive_upline(self, db, commissions, make_user, affiliate_service, make_paid_invoice, referral, now):
        _, customer, profile = referral
        upline = make_user(email="upline@example.com")
        upline_profile = affiliate_service.ensure_profile(upline.id)
        upline_profile.status = AffiliateStatus.BLOCKED.value
        profile.parent_affiliate_user_id = upline.id
        db.commit()

        make_paid_invoice(customer.id, amount=10000)
        assert commissions.process_paid_payment("in_test_1", now=now) == 1
        assert [e.level for e in _entries(db)] == [1]

    def test_zero_amounts_are_not_recorded(self, db, commissions, make_paid_invoice, referral, now):
        _, customer, profile = referral
        profile.level_one_rate_bps = 0
        db.commit()

        make_paid_invoice(customer.id, amount=10000)
        assert commissions.process_paid_payment("in_test_1", now=now) == 0
        assert _entries(db) == []
        # The conversion still locks the attribution
        assert db.get(ReferralAttribution, customer.id).activated_at == now

    @pytest.mark.parametrize("status,amount", [("open", 10000), ("paid", 0), ("void", 10000)])
    def test_non_creditable_invoice_is_a_noop(self, db, commissions, make_paid_invoice, referral, now, status, amount):
        _, customer, _ = referral
        make_paid_invoice(customer.id, amount=amount, status=status)

        assert commissions.process_paid_payment("in_test_1", now=now) == 0
        assert _entries(db) == []
        assert db.get(ReferralAttribution, customer.id).activated_at is None

    def test_unknown_invoice_is_a_noop(self, commissions):
        assert commissions.process_paid_payment("in_missing") == 0

    def test_unattributed_customer_is_a_noop(self, db, commissions, make_user, make_paid_invoice):
        customer = make_user()
        make_paid_invoice(customer.id, amount=10000)
        assert commissions.process_paid_payment("in_test_1") == 0
        assert _entries(db) == []

    def test_reversed_invoice_is_not_credited(self, db, commissions, make_paid_invoice, referral, now):
        _, customer, _ = referral
        make_paid_invoice(customer.id, amount=10000)

        commissions.reverse_invoice_commissions("in_test_1", "refund")
        assert commissions.process_paid_payment("in_test_1", now=now) == 0
        assert _entries(db) == []
