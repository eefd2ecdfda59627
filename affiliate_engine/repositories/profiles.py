# affiliate_engine/repositories/profiles.py
from typing import Optional, List, Dict, Iterable
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.affiliate import AffiliateProfile, AffiliateStatus
from ..models.user import User


class AffiliateProfileRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_user_id(self, user_id: int) -> Optional[AffiliateProfile]:
        return self.db.query(AffiliateProfile).filter(
            AffiliateProfile.user_id == user_id
        ).first()

    def get_many(self, user_ids: Iterable[int]) -> Dict[int, AffiliateProfile]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        profiles = self.db.query(AffiliateProfile).filter(
            AffiliateProfile.user_id.in_(ids)
        ).all()
        return {profile.user_id: profile for profile in profiles}

    def get_by_referral_code(self, referral_code: str) -> Optional[AffiliateProfile]:
        """Lookup by an already normalized code"""
        return self.db.query(AffiliateProfile).filter(
            AffiliateProfile.referral_code == referral_code
        ).first()

    def referral_code_exists(self, referral_code: str) -> bool:
        return self.db.query(AffiliateProfile.id).filter(
            AffiliateProfile.referral_code == referral_code
        ).first() is not None

    def get_by_connect_account_id(self, account_id: str) -> Optional[AffiliateProfile]:
        return self.db.query(AffiliateProfile).filter(
            AffiliateProfile.stripe_connect_account_id == account_id
        ).first()

    def add(self, profile: AffiliateProfile) -> AffiliateProfile:
        self.db.add(profile)
        self.db.flush()
        return profile

    def count_active(self) -> int:
        return self.db.query(AffiliateProfile).filter(
            AffiliateProfile.status == AffiliateStatus.ACTIVE.value
        ).count()

    def list_for_admin(self, skip: int = 0, first: int = 50, keyword: Optional[str] = None) -> List[AffiliateProfile]:
        query = self.db.query(AffiliateProfile).join(
            User, User.id == AffiliateProfile.user_id
        )

        if keyword:
            pattern = f"%{keyword.strip()}%"
            query = query.filter(or_(
                AffiliateProfile.referral_code.ilike(pattern),
                User.email.ilike(pattern),
                User.full_name.ilike(pattern)
            ))

        return query.order_by(
            AffiliateProfile.created_at.desc(),
            AffiliateProfile.id.desc()
        ).offset(max(skip, 0)).limit(min(first, 200)).all()
