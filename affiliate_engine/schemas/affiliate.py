# affiliate_engine/schemas/affiliate.py
from pydantic import BaseModel
from typing import Optional, Dict, Any, List
from datetime import datetime

from ..models.affiliate import AffiliateStatus


class TaxInfo(BaseModel):
    """Normalized tax and billing details stored on the profile"""
    legal_name: Optional[str] = None
    tax_country: Optional[str] = None
    tax_id: Optional[str] = None


class UpsertAffiliateProfileInput(BaseModel):
    """
    Self-service profile update.

    Only fields explicitly provided are applied. An empty parent_referral_code
    clears the upline.
    """
    payout_email: Optional[str] = None
    parent_referral_code: Optional[str] = None
    level_one_rate_bps: Optional[int] = None
    level_two_rate_bps: Optional[int] = None
    accept_terms: bool = False
    legal_name: Optional[str] = None
    tax_country: Optional[str] = None
    tax_id: Optional[str] = None


class AdminUpdateAffiliateInput(BaseModel):
    user_id: int
    status: Optional[AffiliateStatus] = None
    payout_email: Optional[str] = None
    level_one_rate_bps: Optional[int] = None
    level_two_rate_bps: Optional[int] = None


class AffiliateProfileOut(BaseModel):
    user_id: int
    referral_code: str
    status: str
    level_one_rate_bps: int
    level_two_rate_bps: int
    parent_affiliate_user_id: Optional[int] = None
    payout_email: Optional[str] = None
    stripe_connect_account_id: Optional[str] = None
    stripe_connect_country: Optional[str] = None
    stripe_charges_enabled: bool = False
    stripe_payouts_enabled: bool = False
    stripe_details_submitted: bool = False
    terms_accepted_at: Optional[datetime] = None
    terms_version: Optional[str] = None
    tax_info: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LedgerEntryOut(BaseModel):
    id: int
    affiliate_user_id: int
    referred_user_id: int
    invoice_id: str
    level: int
    amount_cents: int
    currency: str
    status: str
    available_at: datetime
    reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PayoutOut(BaseModel):
    id: int
    affiliate_user_id: int
    status: str
    total_cents: int
    currency: str
    period_start: datetime
    period_end: datetime
    stripe_transfer_id: Optional[str] = None
    stripe_transfer_status: Optional[str] = None
    paid_at: Optional[datetime] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ComplianceEventOut(BaseModel):
    id: int
    affiliate_user_id: int
    actor_user_id: Optional[int] = None
    payout_id: Optional[int] = None
    event_type: str
    severity: str
    message: str
    event_metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PayoutDetailItem(BaseModel):
    ledger_id: int
    invoice_id: str
    referred_user_id: int
    level: int
    amount_cents: int
    currency: str
    created_at: Optional[datetime] = None
    terms_accepted_at: Optional[datetime] = None
    tax_info_complete: bool


class PayoutDetail(BaseModel):
    payout: PayoutOut
    items: List[PayoutDetailItem]
    events: List[ComplianceEventOut]


class ReferralOut(BaseModel):
    referred_user_id: int
    referred_email: Optional[str] = None
    referred_name: Optional[str] = None
    referral_code: str
    source: Optional[str] = None
    campaign: Optional[str] = None
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None


class HierarchyNode(BaseModel):
    user_id: int
    email: Optional[str] = None
    name: Optional[str] = None
    referral_code: str = ""
    level: int
    direct_referral_count: int = 0
    active_referral_count: int = 0
    total_commissions_cents: int = 0
    joined_at: Optional[datetime] = None
    children: List["HierarchyNode"] = []


class AffiliateDashboard(BaseModel):
    profile: AffiliateProfileOut
    referral_count: int
    active_referral_count: int
    pending_commissions_cents: int
    paid_commissions_cents: int
    payout_missing_reasons: List[str]
    recent_referrals: List[ReferralOut]
    recent_ledger_entries: List[LedgerEntryOut]
    payouts: List[PayoutOut]
    hierarchy: List[HierarchyNode]


class AdminOverview(BaseModel):
    period_days: int
    active_affiliates: int
    total_referral_count: int
    period_referral_count: int
    pending_commissions_cents: int
    paid_commissions_cents: int
    reversed_commissions_cents: int
    paid_out_cents: int


class AdminAffiliateRow(BaseModel):
    user_id: int
    name: Optional[str] = None
    email: Optional[str] = None
    referral_code: str
    status: str
    referrals: int
    pending_cents: int
    paid_cents: int
    created_at: Optional[datetime] = None
    terms_accepted_at: Optional[datetime] = None
    tax_info_complete: bool


HierarchyNode.model_rebuild()
