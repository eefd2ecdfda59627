# affiliate_engine/repositories/attributions.py
from typing import Optional, List, Dict, Iterable
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.affiliate import ReferralAttribution


class AttributionRepository:

    def __init__(self, db: Session):
        self.db = db

    def get(self, referred_user_id: int) -> Optional[ReferralAttribution]:
        return self.db.query(ReferralAttribution).filter(
            ReferralAttribution.referred_user_id == referred_user_id
        ).first()

    def add(self, attribution: ReferralAttribution) -> ReferralAttribution:
        self.db.add(attribution)
        self.db.flush()
        return attribution

    def update_unactivated(
        self,
        referred_user_id: int,
        affiliate_user_id: int,
        referral_code: str,
        source: Optional[str],
        campaign: Optional[str]
    ) -> bool:
        """Reassign an attribution, guarded so an activated row is never touched"""
        updated = self.db.query(ReferralAttribution).filter(
            ReferralAttribution.referred_user_id == referred_user_id,
            ReferralAttribution.activated_at.is_(None)
        ).update(
            {
                "affiliate_user_id": affiliate_user_id,
                "referral_code": referral_code,
                "source": source,
                "campaign": campaign,
                "updated_at": datetime.utcnow(),
            },
            synchronize_session=False
        )
        return updated > 0

    def activate(self, referred_user_id: int, activated_at: datetime) -> bool:
        """Stamp first conversion; an existing timestamp is kept"""
        updated = self.db.query(ReferralAttribution).filter(
            ReferralAttribution.referred_user_id == referred_user_id,
            ReferralAttribution.activated_at.is_(None)
        ).update({"activated_at": activated_at}, synchronize_session=False)
        return updated > 0

    def count_for_affiliate(self, affiliate_user_id: int, activated_only: bool = False) -> int:
        query = self.db.query(ReferralAttribution).filter(
            ReferralAttribution.affiliate_user_id == affiliate_user_id
        )
        if activated_only:
            query = query.filter(ReferralAttribution.activated_at.isnot(None))
        return query.count()

    def count_by_affiliates(self, affiliate_user_ids: Iterable[int], activated_only: bool = False) -> Dict[int, int]:
        ids = list(set(affiliate_user_ids))
        if not ids:
            return {}
        query = self.db.query(
            ReferralAttribution.affiliate_user_id,
            func.count(ReferralAttribution.referred_user_id)
        ).filter(ReferralAttribution.affiliate_user_id.in_(ids))
        if activated_only:
            query = query.filter(ReferralAttribution.activated_at.isnot(None))
        rows = query.group_by(ReferralAttribution.affiliate_user_id).all()
        return {affiliate_id: count for affiliate_id, count in rows}

    def count_all(self, created_from: Optional[datetime] = None, created_to: Optional[datetime] = None) -> int:
        query = self.db.query(ReferralAttribution)
        if created_from is not None:
            query = query.filter(ReferralAttribution.created_at >= created_from)
        if created_to is not None:
            query = query.filter(ReferralAttribution.created_at <= created_to)
        return query.count()

    def list_recent_for_affiliate(self, affiliate_user_id: int, limit: int = 12) -> List[ReferralAttribution]:
        return self.db.query(ReferralAttribution).filter(
            ReferralAttribution.affiliate_user_id == affiliate_user_id
        ).order_by(ReferralAttribution.created_at.desc()).limit(limit).all()

    def list_activated_for_affiliates(self, affiliate_user_ids: Iterable[int]) -> List[ReferralAttribution]:
        """Adjacency query used by the hierarchy traversal"""
        ids = list(set(affiliate_user_ids))
        if not ids:
            return []
        return self.db.query(ReferralAttribution).filter(
            ReferralAttribution.affiliate_user_id.in_(ids),
            ReferralAttribution.activated_at.isnot(None)
        ).order_by(ReferralAttribution.activated_at.desc()).all()
