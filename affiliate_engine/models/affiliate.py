# affiliate_engine/models/affiliate.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Text, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..db.base_class import Base


class AffiliateStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REVERSED = "reversed"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


# Ledger states a refund or dispute may still claw back
REVERSIBLE_LEDGER_STATUSES = (
    LedgerStatus.PENDING.value,
    LedgerStatus.APPROVED.value,
    LedgerStatus.PAID.value,
)


class AffiliateProfile(Base):
    __tablename__ = "affiliate_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)

    # Normalized, globally unique, never reissued
    referral_code = Column(String(24), unique=True, nullable=False, index=True)
    status = Column(String, default=AffiliateStatus.ACTIVE.value, nullable=False)

    # Commission rates in basis points
    level_one_rate_bps = Column(Integer, nullable=False, default=2000)
    level_two_rate_bps = Column(Integer, nullable=False, default=500)

    # Single upline, receives level-2 commissions
    parent_affiliate_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    # Payout destination
    payout_email = Column(String, nullable=True)
    stripe_connect_account_id = Column(String, nullable=True, index=True)
    stripe_connect_country = Column(String(2), nullable=True)
    stripe_charges_enabled = Column(Boolean, default=False, nullable=False)
    stripe_payouts_enabled = Column(Boolean, default=False, nullable=False)
    stripe_details_submitted = Column(Boolean, default=False, nullable=False)
    stripe_requirements = Column(JSON, nullable=True)

    # Compliance
    terms_accepted_at = Column(DateTime, nullable=True)
    terms_version = Column(String, nullable=True)
    tax_info = Column(JSON, nullable=True)  # legal_name, tax_country, tax_id

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", foreign_keys=[user_id], back_populates="affiliate_profile")

    def __str__(self):
        return f"AffiliateProfile(user_id={self.user_id}, code={self.referral_code}, status={self.status})"

    @property
    def is_active(self) -> bool:
        return self.status == AffiliateStatus.ACTIVE.value


class ReferralAttribution(Base):
    """One row per referred customer. Immutable once activated_at is set."""
    __tablename__ = "affiliate_referral_attributions"

    referred_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    affiliate_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    referral_code = Column(String(24), nullable=False)
    source = Column(String, nullable=True)
    campaign = Column(String, nullable=True)

    # Set on first paid conversion
    activated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    referred_user = relationship("User", foreign_keys=[referred_user_id])

    def __str__(self):
        return f"ReferralAttribution(referred={self.referred_user_id}, affiliate={self.affiliate_user_id})"


class CommissionLedgerEntry(Base):
    __tablename__ = "affiliate_commission_ledger"
    __table_args__ = (
        UniqueConstraint("invoice_id", "affiliate_user_id", "level", name="uq_affiliate_ledger_invoice_affiliate_level"),
        Index("ix_affiliate_ledger_status_available_at", "status", "available_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    affiliate_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    referred_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    invoice_id = Column(String, nullable=False, index=True)

    level = Column(Integer, nullable=False)  # 1 or 2
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    status = Column(String, default=LedgerStatus.PENDING.value, nullable=False)
    available_at = Column(DateTime, nullable=False)
    reason = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    reversed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    payout_item = relationship("AffiliatePayoutItem", back_populates="ledger", uselist=False)

    def __str__(self):
        return f"CommissionLedgerEntry(invoice={self.invoice_id}, level={self.level}, amount={self.amount_cents}, status={self.status})"


class AffiliatePayout(Base):
    __tablename__ = "affiliate_payouts"

    id = Column(Integer, primary_key=True, index=True)
    affiliate_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String, default=PayoutStatus.PENDING.value, nullable=False, index=True)
    total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    # Period covered by this payout
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    # Stripe transfer tracking
    stripe_transfer_id = Column(String, nullable=True)
    stripe_transfer_status = Column(String, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("AffiliatePayoutItem", back_populates="payout", cascade="all, delete-orphan")

    def __str__(self):
        return f"AffiliatePayout(affiliate_user_id={self.affiliate_user_id}, total={self.total_cents} {self.currency}, status={self.status})"

    @property
    def transfer_idempotency_key(self) -> str:
        return f"affiliate:payout:transfer:{self.id}"


class AffiliatePayoutItem(Base):
    __tablename__ = "affiliate_payout_items"
    __table_args__ = (
        UniqueConstraint("payout_id", "ledger_id", name="uq_affiliate_payout_item_payout_ledger"),
    )

    id = Column(Integer, primary_key=True, index=True)
    payout_id = Column(Integer, ForeignKey("affiliate_payouts.id", ondelete="CASCADE"), nullable=False, index=True)
    # A commission can be paid out once
    ledger_id = Column(Integer, ForeignKey("affiliate_commission_ledger.id", ondelete="CASCADE"), nullable=False, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    payout = relationship("AffiliatePayout", back_populates="items")
    ledger = relationship("CommissionLedgerEntry", back_populates="payout_item")
