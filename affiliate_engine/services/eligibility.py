# affiliate_engine/services/eligibility.py
import re
from typing import Optional, List, Dict, Any

from ..models.affiliate import AffiliateProfile, AffiliateStatus

TERMS_NOT_ACCEPTED = "terms_not_accepted"
TAX_INFO_INCOMPLETE = "tax_info_incomplete"
STRIPE_PAYOUT_NOT_READY = "stripe_payout_not_ready"
AFFILIATE_NOT_ACTIVE = "affiliate_not_active"
AFFILIATE_PROFILE_MISSING = "affiliate_profile_missing"

COUNTRY_CODE_PATTERN = re.compile(r"^[A-Z]{2}$")


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def normalize_tax_info(
    legal_name: Optional[str] = None,
    tax_country: Optional[str] = None,
    tax_id: Optional[str] = None
) -> Dict[str, Optional[str]]:
    """Trim fields and upper-case the country; an invalid country is dropped"""
    country = _clean(tax_country)
    if country:
        country = country.upper()
    return {
        "legal_name": _clean(legal_name),
        "tax_country": country if country and COUNTRY_CODE_PATTERN.match(country) else None,
        "tax_id": _clean(tax_id),
    }


def is_tax_info_complete(tax_info: Any) -> bool:
    if not isinstance(tax_info, dict):
        return False
    country = _clean(tax_info.get("tax_country")) or ""
    return bool(
        _clean(tax_info.get("legal_name"))
        and COUNTRY_CODE_PATTERN.match(country)
        and _clean(tax_info.get("tax_id"))
    )


class PayoutEligibilityGate:
    """
    Decides whether an affiliate may receive money right now.

    Always evaluated against the profile as currently stored, so an affiliate
    suspended between crediting and payout is held.
    """

    def __init__(self, required_terms_version: str):
        self.required_terms_version = required_terms_version

    def missing_reasons(self, profile: Optional[AffiliateProfile]) -> List[str]:
        if profile is None:
            return [AFFILIATE_PROFILE_MISSING]

        reasons = []
        if not profile.terms_accepted_at or profile.terms_version != self.required_terms_version:
            reasons.append(TERMS_NOT_ACCEPTED)
        if not is_tax_info_complete(profile.tax_info):
            reasons.append(TAX_INFO_INCOMPLETE)
        if not profile.stripe_connect_account_id or not profile.stripe_payouts_enabled:
            reasons.append(STRIPE_PAYOUT_NOT_READY)
        if profile.status != AffiliateStatus.ACTIVE.value:
            reasons.append(AFFILIATE_NOT_ACTIVE)
        return reasons

    def is_eligible(self, profile: Optional[AffiliateProfile]) -> bool:
        return not self.missing_reasons(profile)
