"""
Tests for affiliate profile management and Stripe Connect onboarding.
"""
import pytest
from unittest.mock import patch

from affiliate_engine.core.config import settings
from affiliate_engine.core.exceptions import InvalidInput
from affiliate_engine.models import AffiliateProfile, AffiliateStatus, ComplianceAuditEvent
from affiliate_engine.schemas.affiliate import AdminUpdateAffiliateInput, UpsertAffiliateProfileInput


class TestEnsureProfile:

    def test_creates_profile_with_defaults(self, make_user, affiliate_service):
        user = make_user(email="jane.doe@example.com")
        profile = affiliate_service.ensure_profile(user.id)

        assert profile.user_id == user.id
        assert profile.status == AffiliateStatus.ACTIVE.value
        assert profile.level_one_rate_bps == settings.AFFILIATE_DEFAULT_LEVEL_ONE_RATE_BPS
        assert profile.level_two_rate_bps == settings.AFFILIATE_DEFAULT_LEVEL_TWO_RATE_BPS
        assert profile.referral_code.startswith("JANEDOE")

    def test_returns_existing_profile(self, db, make_user, affiliate_service):
        user = make_user()
        first = affiliate_service.ensure_profile(user.id)
        second = affiliate_service.ensure_profile(user.id)

        assert first.id == second.id
        assert db.query(AffiliateProfile).count() == 1


class TestUpsertProfile:

    def test_sets_parent_by_code(self, make_user, affiliate_service):
        parent = make_user()
        child = make_user()
        parent_profile = affiliate_service.ensure_profile(parent.id)

        profile = affiliate_service.upsert_profile(
            child.id, UpsertAffiliateProfileInput(parent_referral_code=parent_profile.referral_code.lower())
        )
        assert profile.parent_affiliate_user_id == parent.id

        profile = affiliate_service.upsert_profile(child.id, UpsertAffiliateProfileInput(parent_referral_code=""))
        assert profile.parent_affiliate_user_id is None

    def test_omitted_parent_is_kept(self, make_user, affiliate_service):
        parent = make_user()
        child = make_user()
        parent_profile = affiliate_service.ensure_profile(parent.id)
        affiliate_service.upsert_profile(child.id, UpsertAffiliateProfileInput(parent_referral_code=parent_profile.referral_code))

        profile = affiliate_service.upsert_profile(child.id, UpsertAffiliateProfileInput(payout_email="pay@example.com"))
        assert profile.parent_affiliate_user_id == parent.id
        assert profile.payout_email == "pay@example.com"

    def test_invalid_parent_codes(self, make_user, affiliate_service):
        user = make_user()
        own = affiliate_service.ensure_profile(user.id)

        with pytest.raises(InvalidInput, match="Invalid parent"):
            affiliate_service.upsert_profile(user.id, UpsertAffiliateProfileInput(parent_referral_code="NOPE"))
        with pytest.raises(InvalidInput, match="Self parent"):
            affiliate_service.upsert_profile(user.id, UpsertAffiliateProfileInput(parent_referral_code=own.referral_code))

    @pytest.mark.parametrize("field,value", [
        ("level_one_rate_bps", 5001),
        ("level_one_rate_bps", -1),
        ("level_two_rate_bps", 2001),
    ])
    def test_rate_bounds(self, make_user, affiliate_service, field, value):
        user = make_user()
        with pytest.raises(InvalidInput):
            affiliate_service.upsert_profile(user.id, UpsertAffiliateProfileInput(**{field: value}))

    def test_accept_terms_and_tax_info_are_audited(self, db, make_user, affiliate_service):
        user = make_user()
        profile = affiliate_service.upsert_profile(user.id, UpsertAffiliateProfileInput(
            accept_terms=True,
            legal_name=" Jane Partner ",
            tax_country="us",
            tax_id="123-45-6789"
        ))

        assert profile.terms_version == settings.AFFILIATE_TERMS_VERSION
        assert profile.terms_accepted_at is not None
        assert profile.tax_info == {"legal_name": "Jane Partner", "tax_country": "US", "tax_id": "123-45-6789"}

        event_types = {e.event_type for e in db.query(ComplianceAuditEvent).all()}
        assert event_types == {"affiliate_terms_accepted", "affiliate_tax_info_updated"}


class TestAdminUpdateAffiliate:

    def test_updates_and_audits(self, db, make_user, affiliate_service):
        user = make_user()
        profile = affiliate_service.admin_update_affiliate(
            AdminUpdateAffiliateInput(user_id=user.id, status=AffiliateStatus.SUSPENDED, level_one_rate_bps=3000),
            actor_user_id=42
        )

        assert profile.status == "suspended"
        assert profile.level_one_rate_bps == 3000
        event = db.query(ComplianceAuditEvent).one()
        assert event.event_type == "admin_update_affiliate_profile"
        assert event.actor_user_id == 42
        assert event.event_metadata["status"] == "suspended"

    def test_rejects_out_of_range_rate(self, make_user, affiliate_service):
        user = make_user()
        with pytest.raises(InvalidInput):
            affiliate_service.admin_update_affiliate(
                AdminUpdateAffiliateInput(user_id=user.id, level_two_rate_bps=5000), actor_user_id=42
            )


class TestStripeConnect:

    def test_setup_creates_account_and_link(self, make_user, affiliate_service, stripe_service):
        user = make_user()
        stripe_service.create_connect_account.return_value = {"id": "acct_new"}
        stripe_service.create_account_link.return_value = {"url": "https://connect.stripe.com/setup/abc"}
        stripe_service.retrieve_account.return_value = {
            "id": "acct_new",
            "country": "de",
            "charges_enabled": False,
            "payouts_enabled": True,
            "details_submitted": True,
            "metadata": {"affiliate_user_id": str(user.id)},
            "requirements": {"currently_due": []},
        }

        with patch.object(settings, "FRONTEND_URL", "https://app.example.com"), \
                patch.object(settings, "DEV_FRONTEND_URL", ""):
            url = affiliate_service.setup_stripe_connect(user.id, " de ", email="jane@example.com")

        assert url == "https://connect.stripe.com/setup/abc"
        stripe_service.create_connect_account.assert_called_once_with("DE", user.id, email="jane@example.com")
        expected_link = f"https://app.example.com{settings.AFFILIATE_CONNECT_RETURN_PATH}"
        stripe_service.create_account_link.assert_called_once_with("acct_new", expected_link, expected_link)

        profile = affiliate_service.ensure_profile(user.id)
        assert profile.stripe_connect_account_id == "acct_new"
        assert profile.stripe_connect_country == "DE"
        assert profile.stripe_payouts_enabled is True
        assert profile.stripe_details_submitted is True

    def test_existing_account_is_reused(self, db, make_user, affiliate_service, stripe_service):
        user = make_user()
        profile = affiliate_service.ensure_profile(user.id)
        profile.stripe_connect_account_id = "acct_existing"
        db.commit()
        stripe_service.create_account_link.return_value = {"url": "https://connect.stripe.com/x"}
        stripe_service.retrieve_account.return_value = {"id": "acct_existing", "metadata": {}}

        affiliate_service.setup_stripe_connect(user.id, "US")
        stripe_service.create_connect_account.assert_not_called()

    def test_invalid_country(self, make_user, affiliate_service):
        user = make_user()
        with pytest.raises(InvalidInput, match="country"):
            affiliate_service.setup_stripe_connect(user.id, "USA")

    def test_sync_by_account_id(self, db, make_user, affiliate_service):
        user = make_user()
        profile = affiliate_service.ensure_profile(user.id)
        profile.stripe_connect_account_id = "acct_1"
        db.commit()

        synced = affiliate_service.sync_stripe_connect_account({
            "id": "acct_1",
            "country": "fr",
            "payouts_enabled": True,
            "charges_enabled": True,
            "details_submitted": True,
        })
        assert synced.user_id == user.id
        assert synced.stripe_payouts_enabled is True
        assert synced.stripe_connect_country == "FR"

    def test_sync_unknown_account_is_ignored(self, affiliate_service):
        assert affiliate_service.sync_stripe_connect_account({"id": "acct_nobody"}) is None
