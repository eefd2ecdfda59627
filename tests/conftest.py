"""
Pytest configuration and shared fixtures for the affiliate engine tests.

Every test gets a fresh in-memory SQLite database and a fake Stripe gateway.
"""
import pytest
from datetime import datetime
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import affiliate_engine.models  # noqa: F401
from affiliate_engine.core.config import settings
from affiliate_engine.db.base_class import Base
from affiliate_engine.models import User, Invoice
from affiliate_engine.services.affiliate_service import AffiliateService
from affiliate_engine.services.stripe_service import StripeService


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now():
    """Fixed crediting time for deterministic lock windows"""
    return datetime(2026, 3, 15, 12, 0, 0)


@pytest.fixture
def after_lock(now):
    """A run time past the commission lock"""
    return datetime(2026, 4, 20, 9, 30, 0)


@pytest.fixture
def stripe_service():
    """Fake Stripe gateway; transfers echo their idempotency key in the id"""
    service = MagicMock(spec=StripeService)
    service.create_transfer.side_effect = lambda **kwargs: {
        "id": f"tr_{kwargs['idempotency_key'].rsplit(':', 1)[-1]}",
        "amount": kwargs["amount"],
        "currency": kwargs["currency"],
    }
    return service


@pytest.fixture
def affiliate_service(db, stripe_service):
    return AffiliateService(db, stripe_service)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(email=None, full_name=None):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            full_name=full_name
        )
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def make_compliant(db):
    """Give a profile everything the payout gate asks for"""

    def _make_compliant(profile, connect_account_id="acct_test"):
        profile.terms_accepted_at = datetime(2026, 2, 22, 10, 0, 0)
        profile.terms_version = settings.AFFILIATE_TERMS_VERSION
        profile.tax_info = {"legal_name": "Jane Partner", "tax_country": "US", "tax_id": "123-45-6789"}
        profile.stripe_connect_account_id = connect_account_id
        profile.stripe_payouts_enabled = True
        db.commit()
        return profile

    return _make_compliant


@pytest.fixture
def make_paid_invoice(db):

    def _make_paid_invoice(user_id, amount=10000, invoice_id="in_test_1", currency="usd", status="paid"):
        invoice = Invoice(
            stripe_invoice_id=invoice_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            status=status
        )
        db.add(invoice)
        db.commit()
        return invoice

    return _make_paid_invoice


@pytest.fixture
def referral(db, make_user, affiliate_service):
    """An affiliate and one referred customer attributed to them"""
    affiliate = make_user(email="partner@example.com", full_name="Jane Partner")
    customer = make_user(email="customer@example.com", full_name="Carl Customer")
    profile = affiliate_service.ensure_profile(affiliate.id)
    affiliate_service.capture_referral(customer.id, profile.referral_code, source="newsletter")
    return affiliate, customer, profile
