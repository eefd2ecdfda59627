# affiliate_engine/services/reporting_service.py
from typing import Optional, List, Dict
from datetime import datetime, timedelta
import logging
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.affiliate import LedgerStatus
from ..repositories.users import UserRepository
from ..repositories.profiles import AffiliateProfileRepository
from ..repositories.attributions import AttributionRepository
from ..repositories.ledger import LedgerRepository
from ..repositories.payouts import PayoutRepository
from ..schemas.affiliate import (
    AffiliateDashboard,
    AffiliateProfileOut,
    AdminAffiliateRow,
    AdminOverview,
    HierarchyNode,
    LedgerEntryOut,
    PayoutOut,
    ReferralOut,
)
from .affiliate_service import AffiliateService
from .eligibility import PayoutEligibilityGate, is_tax_info_complete

logger = logging.getLogger(__name__)

HIERARCHY_MAX_DEPTH = 2
UNPAID_STATUSES = (LedgerStatus.PENDING.value, LedgerStatus.APPROVED.value)


class ReportingService:
    """Read models for the affiliate dashboard and the admin console"""

    def __init__(self, db: Session, affiliate_service: Optional[AffiliateService] = None):
        self.db = db
        self.affiliate_service = affiliate_service or AffiliateService(db)
        self.users = UserRepository(db)
        self.profiles = AffiliateProfileRepository(db)
        self.attributions = AttributionRepository(db)
        self.ledger = LedgerRepository(db)
        self.payouts = PayoutRepository(db)
        self.gate = PayoutEligibilityGate(settings.AFFILIATE_TERMS_VERSION)

    def get_dashboard(self, user_id: int) -> AffiliateDashboard:
        profile = self.affiliate_service.ensure_profile(user_id)

        recent = self.attributions.list_recent_for_affiliate(user_id, limit=12)
        referred_users = self.users.get_many(a.referred_user_id for a in recent)

        return AffiliateDashboard(
            profile=AffiliateProfileOut.model_validate(profile),
            referral_count=self.attributions.count_for_affiliate(user_id),
            active_referral_count=self.attributions.count_for_affiliate(user_id, activated_only=True),
            pending_commissions_cents=self.ledger.sum_amount(UNPAID_STATUSES, affiliate_user_id=user_id),
            paid_commissions_cents=self.ledger.sum_amount([LedgerStatus.PAID.value], affiliate_user_id=user_id),
            payout_missing_reasons=self.gate.missing_reasons(profile),
            recent_referrals=[
                ReferralOut(
                    referred_user_id=a.referred_user_id,
                    referred_email=referred_users[a.referred_user_id].email if a.referred_user_id in referred_users else None,
                    referred_name=referred_users[a.referred_user_id].full_name if a.referred_user_id in referred_users else None,
                    referral_code=a.referral_code,
                    source=a.source,
                    campaign=a.campaign,
                    created_at=a.created_at,
                    activated_at=a.activated_at
                )
                for a in recent
            ],
            recent_ledger_entries=[
                LedgerEntryOut.model_validate(e)
                for e in self.ledger.list_recent_for_affiliate(user_id, limit=20)
            ],
            payouts=[PayoutOut.model_validate(p) for p in self.payouts.list_for_affiliate(user_id, limit=12)],
            hierarchy=self.build_hierarchy(user_id)
        )

    def build_hierarchy(self, user_id: int, max_depth: int = HIERARCHY_MAX_DEPTH) -> List[HierarchyNode]:
        """
        Converted referrals of an affiliate, nested up to max_depth levels.

        Breadth-first: one adjacency query and one batch of aggregates per
        level. A user already placed in the tree is never expanded again, so
        cyclic attributions cannot loop.
        """
        roots: List[HierarchyNode] = []
        nodes_by_parent: Dict[int, List[HierarchyNode]] = {user_id: roots}
        visited = {user_id}
        frontier = [user_id]

        for level in range(1, max_depth + 1):
            if not frontier:
                break

            edges = [
                a for a in self.attributions.list_activated_for_affiliates(frontier)
                if a.referred_user_id not in visited
            ]
            if not edges:
                break

            child_ids = [a.referred_user_id for a in edges]
            users = self.users.get_many(child_ids)
            profiles = self.profiles.get_many(child_ids)
            direct_counts = self.attributions.count_by_affiliates(child_ids)
            active_counts = self.attributions.count_by_affiliates(child_ids, activated_only=True)
            commission_totals = self.ledger.sum_by_affiliates(child_ids)

            next_frontier = []
            for attribution in edges:
                child_id = attribution.referred_user_id
                if child_id in visited:
                    continue
                visited.add(child_id)

                user = users.get(child_id)
                profile = profiles.get(child_id)
                node = HierarchyNode(
                    user_id=child_id,
                    email=user.email if user else None,
                    name=user.full_name if user else None,
                    referral_code=profile.referral_code if profile else "",
                    level=level,
                    direct_referral_count=direct_counts.get(child_id, 0),
                    active_referral_count=active_counts.get(child_id, 0),
                    total_commissions_cents=commission_totals.get(child_id, 0),
                    joined_at=attribution.activated_at,
                    children=[]
                )
                nodes_by_parent[attribution.affiliate_user_id].append(node)
                nodes_by_parent[child_id] = node.children
                next_frontier.append(child_id)

            frontier = next_frontier

        return roots

    def get_admin_overview(self, period_days: int = 30) -> AdminOverview:
        period_days = max(1, period_days)
        period_end = datetime.utcnow()
        period_start = period_end - timedelta(days=period_days)

        return AdminOverview(
            period_days=period_days,
            active_affiliates=self.profiles.count_active(),
            total_referral_count=self.attributions.count_all(),
            period_referral_count=self.attributions.count_all(period_start, period_end),
            pending_commissions_cents=self.ledger.sum_amount([LedgerStatus.PENDING.value]),
            paid_commissions_cents=self.ledger.sum_amount([LedgerStatus.PAID.value]),
            reversed_commissions_cents=self.ledger.sum_amount([LedgerStatus.REVERSED.value]),
            paid_out_cents=self.payouts.sum_paid_total()
        )

    def list_admin_affiliates(self, skip: int = 0, first: int = 50, keyword: Optional[str] = None) -> List[AdminAffiliateRow]:
        profiles = self.profiles.list_for_admin(skip=skip, first=first, keyword=keyword)
        user_ids = [p.user_id for p in profiles]

        users = self.users.get_many(user_ids)
        referrals = self.attributions.count_by_affiliates(user_ids)
        pending = self.ledger.sum_by_affiliates(user_ids, UNPAID_STATUSES)
        paid = self.ledger.sum_by_affiliates(user_ids, [LedgerStatus.PAID.value])

        rows = []
        for profile in profiles:
            user = users.get(profile.user_id)
            rows.append(AdminAffiliateRow(
                user_id=profile.user_id,
                name=user.full_name if user else None,
                email=user.email if user else None,
                referral_code=profile.referral_code,
                status=profile.status,
                referrals=referrals.get(profile.user_id, 0),
                pending_cents=pending.get(profile.user_id, 0),
                paid_cents=paid.get(profile.user_id, 0),
                created_at=profile.created_at,
                terms_accepted_at=profile.terms_accepted_at,
                tax_info_complete=is_tax_info_complete(profile.tax_info)
            ))
        return rows
