# affiliate_engine/models/__init__.py
from .user import User
from .invoice import Invoice
from .affiliate import (
    AffiliateStatus,
    LedgerStatus,
    PayoutStatus,
    AffiliateProfile,
    ReferralAttribution,
    CommissionLedgerEntry,
    AffiliatePayout,
    AffiliatePayoutItem,
)
from .compliance import AuditSeverity, ComplianceAuditEvent

# This ensures all models are registered
__all__ = [
    "User",
    "Invoice",
    "AffiliateStatus",
    "LedgerStatus",
    "PayoutStatus",
    "AffiliateProfile",
    "ReferralAttribution",
    "CommissionLedgerEntry",
    "AffiliatePayout",
    "AffiliatePayoutItem",
    "AuditSeverity",
    "ComplianceAuditEvent",
]
