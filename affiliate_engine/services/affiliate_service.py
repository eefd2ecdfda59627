# affiliate_engine/services/affiliate_service.py
from typing import Optional, Any
from datetime import datetime
import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..core.config import settings
from ..core.exceptions import InvalidInput
from ..models.affiliate import AffiliateProfile, AffiliateStatus, ReferralAttribution
from ..models.compliance import AuditSeverity
from ..repositories.users import UserRepository
from ..repositories.profiles import AffiliateProfileRepository
from ..repositories.attributions import AttributionRepository
from ..schemas.affiliate import UpsertAffiliateProfileInput, AdminUpdateAffiliateInput
from .compliance_audit import ComplianceAuditService
from .eligibility import COUNTRY_CODE_PATTERN, normalize_tax_info
from .fraud import normalize_email_for_fraud_check
from .referral_codes import normalize_referral_code, generate_unique_referral_code
from .stripe_service import StripeService, stripe_field

logger = logging.getLogger(__name__)

LEVEL_ONE_RATE_RANGE = (0, 5000)
LEVEL_TWO_RATE_RANGE = (0, 2000)


def _validate_rates(level_one_rate_bps: Optional[int], level_two_rate_bps: Optional[int]) -> None:
    if level_one_rate_bps is not None and not (LEVEL_ONE_RATE_RANGE[0] <= level_one_rate_bps <= LEVEL_ONE_RATE_RANGE[1]):
        raise InvalidInput("level_one_rate_bps must be in range 0..5000")
    if level_two_rate_bps is not None and not (LEVEL_TWO_RATE_RANGE[0] <= level_two_rate_bps <= LEVEL_TWO_RATE_RANGE[1]):
        raise InvalidInput("level_two_rate_bps must be in range 0..2000")


class AffiliateService:
    """Affiliate profiles, referral attribution and Connect onboarding"""

    def __init__(self, db: Session, stripe_service: Optional[StripeService] = None):
        self.db = db
        self.stripe_service = stripe_service
        self.users = UserRepository(db)
        self.profiles = AffiliateProfileRepository(db)
        self.attributions = AttributionRepository(db)
        self.audit = ComplianceAuditService(db)

    def ensure_profile(self, user_id: int) -> AffiliateProfile:
        """
        Return the user's affiliate profile, creating it on first use.

        New profiles start active with the configured default rates and a
        freshly issued referral code.
        """
        existing = self.profiles.get_by_user_id(user_id)
        if existing:
            return existing

        user = self.users.get(user_id)
        seed = "partner"
        if user and user.email:
            seed = user.email.split("@")[0] or seed
        elif user and user.full_name:
            seed = user.full_name

        try:
            profile = AffiliateProfile(
                user_id=user_id,
                referral_code=generate_unique_referral_code(self.db, seed),
                status=AffiliateStatus.ACTIVE.value,
                level_one_rate_bps=settings.AFFILIATE_DEFAULT_LEVEL_ONE_RATE_BPS,
                level_two_rate_bps=settings.AFFILIATE_DEFAULT_LEVEL_TWO_RATE_BPS
            )
            self.profiles.add(profile)
            self.db.commit()
            logger.info(f"Created affiliate profile for user {user_id} with code {profile.referral_code}")
            return profile
        except IntegrityError:
            # Another request created the profile first
            self.db.rollback()
            existing = self.profiles.get_by_user_id(user_id)
            if existing:
                return existing
            logger.error(f"Could not create affiliate profile for user {user_id}")
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error creating affiliate profile for user {user_id}: {str(e)}")
            raise

    def upsert_profile(self, user_id: int, data: UpsertAffiliateProfileInput) -> AffiliateProfile:
        """Apply the fields the affiliate explicitly sent"""
        profile = self.ensure_profile(user_id)
        provided = data.model_fields_set

        parent_user_id = profile.parent_affiliate_user_id
        if "parent_referral_code" in provided:
            normalized = normalize_referral_code(data.parent_referral_code or "")
            if not normalized:
                parent_user_id = None
            else:
                parent = self.profiles.get_by_referral_code(normalized)
                if not parent:
                    raise InvalidInput("Invalid parent referral code.")
                if parent.user_id == user_id:
                    raise InvalidInput("Self parent referral is not allowed.")
                parent_user_id = parent.user_id

        _validate_rates(data.level_one_rate_bps, data.level_two_rate_bps)

        tax_fields = {"legal_name", "tax_country", "tax_id"} & provided
        tax_info = normalize_tax_info(data.legal_name, data.tax_country, data.tax_id)

        try:
            if "payout_email" in provided:
                profile.payout_email = (data.payout_email or "").strip() or None
            profile.parent_affiliate_user_id = parent_user_id
            if data.level_one_rate_bps is not None:
                profile.level_one_rate_bps = data.level_one_rate_bps
            if data.level_two_rate_bps is not None:
                profile.level_two_rate_bps = data.level_two_rate_bps

            if data.accept_terms:
                profile.terms_accepted_at = datetime.utcnow()
                profile.terms_version = settings.AFFILIATE_TERMS_VERSION
                self.audit.log_event(
                    affiliate_user_id=user_id,
                    event_type="affiliate_terms_accepted",
                    severity=AuditSeverity.INFO,
                    message="Affiliate accepted partner terms.",
                    metadata={"terms_version": settings.AFFILIATE_TERMS_VERSION}
                )

            if tax_fields:
                profile.tax_info = tax_info
                self.audit.log_event(
                    affiliate_user_id=user_id,
                    event_type="affiliate_tax_info_updated",
                    severity=AuditSeverity.INFO,
                    message="Affiliate updated tax and billing information.",
                    metadata={
                        "has_legal_name": bool(tax_info["legal_name"]),
                        "tax_country": tax_info["tax_country"],
                        "has_tax_id": bool(tax_info["tax_id"]),
                    }
                )

            self.db.commit()
            logger.info(f"Updated affiliate profile for user {user_id}")
            return profile
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error updating affiliate profile for user {user_id}: {str(e)}")
            raise

    def capture_referral(
        self,
        referred_user_id: int,
        code: str,
        source: Optional[str] = None,
        campaign: Optional[str] = None
    ) -> bool:
        """
        Attribute a customer to the affiliate owning the code.

        Before the first paid conversion the latest valid code wins; after it
        the attribution is locked and the call is a successful no-op.
        """
        normalized_code = normalize_referral_code(code)
        if not normalized_code:
            raise InvalidInput("Referral code is required.")

        profile = self.profiles.get_by_referral_code(normalized_code)
        if not profile or profile.status != AffiliateStatus.ACTIVE.value:
            raise InvalidInput("Invalid or inactive referral code.")

        if profile.user_id == referred_user_id:
            raise InvalidInput("Self-referral is not allowed.")

        referred_email = normalize_email_for_fraud_check(self.users.get_email(referred_user_id))
        affiliate_email = normalize_email_for_fraud_check(self.users.get_email(profile.user_id))

        if referred_email and affiliate_email and referred_email == affiliate_email:
            try:
                self.audit.log_event(
                    affiliate_user_id=profile.user_id,
                    event_type="referral_rejected_alias_self_referral",
                    severity=AuditSeverity.CRITICAL,
                    message="Referral rejected because affiliate and referred email normalize to the same identity.",
                    metadata={
                        "source": source,
                        "campaign": campaign,
                        "normalized_affiliate_email": affiliate_email,
                        "normalized_referred_email": referred_email,
                    }
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Database error recording alias self-referral for user {referred_user_id}: {str(e)}")
                raise
            raise InvalidInput("Self-referral alias is not allowed.")

        existing = self.attributions.get(referred_user_id)
        if existing and existing.activated_at:
            logger.info(f"Attribution for user {referred_user_id} is locked to affiliate {existing.affiliate_user_id}")
            return True

        try:
            if existing:
                self.attributions.update_unactivated(
                    referred_user_id, profile.user_id, normalized_code, source, campaign
                )
            else:
                self.attributions.add(ReferralAttribution(
                    referred_user_id=referred_user_id,
                    affiliate_user_id=profile.user_id,
                    referral_code=normalized_code,
                    source=source,
                    campaign=campaign
                ))
            self.db.commit()
        except IntegrityError:
            # Concurrent first capture won the insert, retry as an update
            self.db.rollback()
            try:
                self.attributions.update_unactivated(
                    referred_user_id, profile.user_id, normalized_code, source, campaign
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Database error capturing referral for user {referred_user_id}: {str(e)}")
                raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error capturing referral for user {referred_user_id}: {str(e)}")
            raise

        logger.info(f"Captured referral of user {referred_user_id} by affiliate {profile.user_id} ({normalized_code})")
        return True

    def setup_stripe_connect(self, user_id: int, country: str, email: Optional[str] = None) -> str:
        """
        Start or resume Connect onboarding.

        Returns:
            str: Stripe-hosted onboarding URL
        """
        if self.stripe_service is None:
            raise InvalidInput("Stripe is not configured.")

        profile = self.ensure_profile(user_id)
        country = (country or "").strip().upper()
        if not COUNTRY_CODE_PATTERN.match(country):
            raise InvalidInput("Invalid country code")

        account_id = profile.stripe_connect_account_id
        if not account_id:
            account = self.stripe_service.create_connect_account(country, user_id, email=email)
            account_id = stripe_field(account, "id")

        onboarding_url = f"{settings.active_frontend_url.rstrip('/')}{settings.AFFILIATE_CONNECT_RETURN_PATH}"
        link = self.stripe_service.create_account_link(account_id, onboarding_url, onboarding_url)

        try:
            profile.stripe_connect_account_id = account_id
            profile.stripe_connect_country = country
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error storing Connect account for user {user_id}: {str(e)}")
            raise

        self.sync_stripe_connect_account(self.stripe_service.retrieve_account(account_id))
        return stripe_field(link, "url")

    def sync_stripe_connect_account(self, account: Any) -> Optional[AffiliateProfile]:
        """Copy Connect readiness flags onto the owning profile"""
        account_id = stripe_field(account, "id")
        metadata = stripe_field(account, "metadata") or {}
        affiliate_user_id = stripe_field(metadata, "affiliate_user_id")

        profile = None
        if affiliate_user_id:
            try:
                profile = self.profiles.get_by_user_id(int(affiliate_user_id))
            except (TypeError, ValueError):
                logger.warning(f"Connect account {account_id} carries unusable affiliate_user_id {affiliate_user_id!r}")
        if profile is None and account_id:
            profile = self.profiles.get_by_connect_account_id(account_id)

        if profile is None:
            logger.info(f"No affiliate profile for Connect account {account_id}, ignoring")
            return None

        country = stripe_field(account, "country")
        requirements = stripe_field(account, "requirements")
        try:
            profile.stripe_connect_account_id = account_id
            profile.stripe_connect_country = country.upper() if country else profile.stripe_connect_country
            profile.stripe_charges_enabled = bool(stripe_field(account, "charges_enabled"))
            profile.stripe_payouts_enabled = bool(stripe_field(account, "payouts_enabled"))
            profile.stripe_details_submitted = bool(stripe_field(account, "details_submitted"))
            profile.stripe_requirements = dict(requirements) if requirements else None
            self.db.commit()
            logger.info(
                f"Synced Connect account {account_id} for affiliate {profile.user_id} "
                f"(payouts_enabled={profile.stripe_payouts_enabled})"
            )
            return profile
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error syncing Connect account {account_id}: {str(e)}")
            raise

    def admin_update_affiliate(self, data: AdminUpdateAffiliateInput, actor_user_id: int) -> AffiliateProfile:
        _validate_rates(data.level_one_rate_bps, data.level_two_rate_bps)

        profile = self.ensure_profile(data.user_id)
        status = data.status.value if data.status else None

        try:
            if status:
                profile.status = status
            if data.payout_email is not None:
                profile.payout_email = data.payout_email.strip() or None
            if data.level_one_rate_bps is not None:
                profile.level_one_rate_bps = data.level_one_rate_bps
            if data.level_two_rate_bps is not None:
                profile.level_two_rate_bps = data.level_two_rate_bps

            self.audit.log_event(
                affiliate_user_id=data.user_id,
                actor_user_id=actor_user_id,
                event_type="admin_update_affiliate_profile",
                severity=AuditSeverity.INFO,
                message="Admin updated affiliate profile settings.",
                metadata={
                    "status": status,
                    "payout_email": data.payout_email,
                    "level_one_rate_bps": data.level_one_rate_bps,
                    "level_two_rate_bps": data.level_two_rate_bps,
                }
            )
            self.db.commit()
            logger.info(f"Admin {actor_user_id} updated affiliate {data.user_id}")
            return profile
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error updating affiliate {data.user_id}: {str(e)}")
            raise
