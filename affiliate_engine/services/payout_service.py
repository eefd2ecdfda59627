# affiliate_engine/services/payout_service.py
from typing import Optional, List, Tuple
from collections import OrderedDict
from datetime import datetime
import logging
import stripe
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..core.config import settings
from ..core.exceptions import InvalidInput, NotFound
from ..models.affiliate import AffiliatePayout, CommissionLedgerEntry, PayoutStatus
from ..models.compliance import AuditSeverity
from ..repositories.profiles import AffiliateProfileRepository
from ..repositories.ledger import LedgerRepository
from ..repositories.payouts import PayoutRepository
from ..repositories.compliance_events import ComplianceEventRepository
from ..schemas.affiliate import (
    PayoutOut,
    PayoutDetail,
    PayoutDetailItem,
    ComplianceEventOut,
)
from .compliance_audit import ComplianceAuditService
from .eligibility import PayoutEligibilityGate, is_tax_info_complete
from .stripe_service import StripeService, stripe_field

logger = logging.getLogger(__name__)

TRANSFER_STATUS_CREATED = "created"
PAYOUT_DETAIL_EVENT_LIMIT = 50
RECENT_PAYOUTS_CAP = 100


class PayoutService:
    """
    Scheduled payout batching and admin settlement.

    A run is safe to repeat and to overlap with another run: ledger rows move
    forward through guarded updates and each commission can be linked to a
    single payout only.
    """

    def __init__(
        self,
        db: Session,
        stripe_service: StripeService,
        gate: Optional[PayoutEligibilityGate] = None
    ):
        self.db = db
        self.stripe_service = stripe_service
        self.gate = gate or PayoutEligibilityGate(settings.AFFILIATE_TERMS_VERSION)
        self.profiles = AffiliateProfileRepository(db)
        self.ledger = LedgerRepository(db)
        self.payouts = PayoutRepository(db)
        self.events = ComplianceEventRepository(db)
        self.audit = ComplianceAuditService(db)

    def run_payouts(self, as_of: Optional[datetime] = None) -> int:
        """
        Release matured commissions and pay eligible affiliates.

        Stripe transfer errors do not abort the run; each one is audited and
        the payout is retried by the next run.

        Args:
            as_of: Run time, defaults to utcnow

        Returns:
            int: Number of payouts created by this run
        """
        as_of = as_of or datetime.utcnow()
        logger.info(f"Starting affiliate payout run as of {as_of.isoformat()}")

        failed_transfers = self._resume_unsent_transfers()
        self._release_matured_commissions(as_of)

        period_start = as_of.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        payout_count = 0

        for (affiliate_user_id, currency), entries in self._group_unclaimed().items():
            total_cents = sum(entry.amount_cents for entry in entries)
            if total_cents <= 0:
                continue

            profile = self.profiles.get_by_user_id(affiliate_user_id)
            if not self.gate.is_eligible(profile):
                logger.warning(f"Affiliate {affiliate_user_id} no longer eligible, leaving {len(entries)} approved entries unpaid")
                continue

            payout = self._create_payout(affiliate_user_id, currency, entries, total_cents, period_start, as_of)
            if payout is None:
                continue
            payout_count += 1

            if not self._send_transfer(payout, profile.stripe_connect_account_id):
                failed_transfers += 1

        if failed_transfers:
            logger.error(f"Affiliate payout run finished with {failed_transfers} failed transfers, {payout_count} payouts created")
        else:
            logger.info(f"Affiliate payout run finished, {payout_count} payouts created")
        return payout_count

    def _resume_unsent_transfers(self) -> int:
        """Request transfers for payouts committed without one; returns the number that failed again"""
        failed = 0
        for payout in self.payouts.list_processing_without_transfer():
            profile = self.profiles.get_by_user_id(payout.affiliate_user_id)
            if not profile or not profile.stripe_connect_account_id or not profile.stripe_payouts_enabled:
                logger.warning(f"Payout {payout.id} has no ready transfer destination, cannot resume")
                continue
            logger.info(f"Resuming transfer for payout {payout.id}")
            if not self._send_transfer(payout, profile.stripe_connect_account_id):
                failed += 1
        return failed

    def _release_matured_commissions(self, as_of: datetime) -> None:
        releasable = self.ledger.list_releasable(as_of)
        if not releasable:
            return

        eligible_ids = []
        try:
            for entry, profile in releasable:
                reasons = self.gate.missing_reasons(profile)
                if not reasons:
                    eligible_ids.append(entry.id)
                    continue
                self.audit.log_event(
                    affiliate_user_id=entry.affiliate_user_id,
                    event_type="payout_hold_compliance",
                    severity=AuditSeverity.WARNING,
                    message="Payout held due to missing compliance prerequisites.",
                    metadata={"ledger_id": entry.id, "missing_reasons": reasons}
                )

            approved = self.ledger.approve_pending(eligible_ids)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error releasing matured commissions: {str(e)}")
            raise

        logger.info(
            f"Released {approved} of {len(releasable)} matured commissions, "
            f"{len(releasable) - len(eligible_ids)} held for compliance"
        )

    def _group_unclaimed(self) -> "OrderedDict[Tuple[int, str], List[CommissionLedgerEntry]]":
        groups: "OrderedDict[Tuple[int, str], List[CommissionLedgerEntry]]" = OrderedDict()
        for entry in self.ledger.list_unclaimed_approved():
            groups.setdefault((entry.affiliate_user_id, entry.currency), []).append(entry)
        return groups

    def _create_payout(
        self,
        affiliate_user_id: int,
        currency: str,
        entries: List[CommissionLedgerEntry],
        total_cents: int,
        period_start: datetime,
        period_end: datetime
    ) -> Optional[AffiliatePayout]:
        """Insert the payout and claim its entries in one transaction"""
        ledger_ids = [entry.id for entry in entries]
        try:
            # A concurrent run may have claimed some entries since they were read
            claimed = self.payouts.linked_ledger_ids(ledger_ids)
            if claimed:
                remaining = [entry for entry in entries if entry.id not in claimed]
                ledger_ids = [entry.id for entry in remaining]
                total_cents = sum(entry.amount_cents for entry in remaining)
                if total_cents <= 0:
                    logger.info(f"Entries for affiliate {affiliate_user_id} ({currency}) already claimed by another run")
                    return None

            payout = self.payouts.add(AffiliatePayout(
                affiliate_user_id=affiliate_user_id,
                status=PayoutStatus.PROCESSING.value,
                total_cents=total_cents,
                currency=currency,
                period_start=period_start,
                period_end=period_end
            ))
            self.payouts.add_items(payout.id, ledger_ids)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Entries for affiliate {affiliate_user_id} ({currency}) claimed concurrently, skipping")
            return None
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error creating payout for affiliate {affiliate_user_id}: {str(e)}")
            raise

        logger.info(f"Created payout {payout.id} of {total_cents} {currency} for affiliate {affiliate_user_id} ({len(ledger_ids)} entries)")
        return payout

    def _send_transfer(self, payout: AffiliatePayout, destination: str) -> bool:
        """
        Request the Stripe transfer for a processing payout.

        A failed transfer leaves the payout processing without a transfer id, so
        the next run resumes it under the same idempotency key. The failure is
        recorded and the rest of the run carries on.
        """
        if payout.stripe_transfer_id:
            return True

        try:
            transfer = self.stripe_service.create_transfer(
                amount=payout.total_cents,
                currency=payout.currency,
                destination=destination,
                idempotency_key=payout.transfer_idempotency_key,
                metadata={
                    "affiliate_user_id": str(payout.affiliate_user_id),
                    "payout_id": str(payout.id),
                },
                description=f"Affiliate payout {payout.id}"
            )
        except stripe.StripeError as e:
            logger.error(f"Transfer for payout {payout.id} failed, will retry next run: {str(e)}")
            self._record_transfer_failure(payout, destination, e)
            return False

        try:
            self.payouts.set_transfer(payout.id, stripe_field(transfer, "id"), TRANSFER_STATUS_CREATED)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error storing transfer for payout {payout.id}: {str(e)}")
            raise
        return True

    def _record_transfer_failure(self, payout: AffiliatePayout, destination: str, error: stripe.StripeError) -> None:
        try:
            self.audit.log_event(
                affiliate_user_id=payout.affiliate_user_id,
                payout_id=payout.id,
                event_type="payout_transfer_failed",
                severity=AuditSeverity.WARNING,
                message="Stripe transfer for payout failed; it will be retried on the next payout run.",
                metadata={
                    "destination": destination,
                    "error_code": getattr(error, "code", None),
                    "error": str(error),
                }
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error recording transfer failure for payout {payout.id}: {str(e)}")
            raise

    def _get_payout_or_raise(self, payout_id: int) -> AffiliatePayout:
        payout = self.payouts.get(payout_id)
        if not payout:
            raise NotFound("Payout not found", {"payout_id": payout_id})
        return payout

    def admin_mark_payout_paid(self, payout_id: int, note: Optional[str], actor_user_id: int) -> AffiliatePayout:
        """Confirm settlement and mark every linked commission paid"""
        payout = self._get_payout_or_raise(payout_id)

        if payout.status == PayoutStatus.PAID.value:
            return payout
        if payout.status == PayoutStatus.FAILED.value:
            raise InvalidInput("Cannot mark a failed payout as paid. Create a new payout run.")

        paid_at = datetime.utcnow()
        try:
            moved = self.payouts.transition(
                payout.id,
                payout.status,
                {"status": PayoutStatus.PAID.value, "paid_at": paid_at, "note": note, "updated_at": paid_at}
            )
            if not moved:
                # Settled concurrently; report whatever state won
                self.db.rollback()
                return self._terminal_or_raise(payout_id, PayoutStatus.PAID)

            ledger_count = self.ledger.mark_paid(self.payouts.ledger_ids_for_payout(payout.id), paid_at)
            self.audit.log_event(
                affiliate_user_id=payout.affiliate_user_id,
                actor_user_id=actor_user_id,
                payout_id=payout.id,
                event_type="admin_mark_payout_paid",
                severity=AuditSeverity.INFO,
                message="Admin marked payout as paid.",
                metadata={"note": note, "paid_at": paid_at.isoformat(), "ledger_entries": ledger_count}
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error marking payout {payout_id} paid: {str(e)}")
            raise

        logger.info(f"Admin {actor_user_id} marked payout {payout_id} paid ({ledger_count} ledger entries)")
        return self.payouts.get(payout_id)

    def admin_mark_payout_failed(self, payout_id: int, note: Optional[str], actor_user_id: int) -> AffiliatePayout:
        """Record a failed settlement; ledger entries stay approved and linked"""
        payout = self._get_payout_or_raise(payout_id)

        if payout.status == PayoutStatus.FAILED.value:
            return payout
        if payout.status == PayoutStatus.PAID.value:
            raise InvalidInput("Cannot fail a paid payout.")

        try:
            moved = self.payouts.transition(
                payout.id,
                payout.status,
                {"status": PayoutStatus.FAILED.value, "note": note, "updated_at": datetime.utcnow()}
            )
            if not moved:
                self.db.rollback()
                return self._terminal_or_raise(payout_id, PayoutStatus.FAILED)

            self.audit.log_event(
                affiliate_user_id=payout.affiliate_user_id,
                actor_user_id=actor_user_id,
                payout_id=payout.id,
                event_type="admin_mark_payout_failed",
                severity=AuditSeverity.WARNING,
                message="Admin marked payout as failed.",
                metadata={"note": note}
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error marking payout {payout_id} failed: {str(e)}")
            raise

        logger.warning(f"Admin {actor_user_id} marked payout {payout_id} failed")
        return self.payouts.get(payout_id)

    def _terminal_or_raise(self, payout_id: int, wanted: PayoutStatus) -> AffiliatePayout:
        payout = self._get_payout_or_raise(payout_id)
        if payout.status == wanted.value:
            return payout
        raise InvalidInput(f"Payout {payout_id} is already {payout.status}.")

    def admin_get_payout_detail(self, payout_id: int) -> PayoutDetail:
        payout = self._get_payout_or_raise(payout_id)
        profile = self.profiles.get_by_user_id(payout.affiliate_user_id)
        terms_accepted_at = profile.terms_accepted_at if profile else None
        tax_info_complete = is_tax_info_complete(profile.tax_info) if profile else False

        items = [
            PayoutDetailItem(
                ledger_id=ledger.id,
                invoice_id=ledger.invoice_id,
                referred_user_id=ledger.referred_user_id,
                level=ledger.level,
                amount_cents=ledger.amount_cents,
                currency=ledger.currency,
                created_at=ledger.created_at,
                terms_accepted_at=terms_accepted_at,
                tax_info_complete=tax_info_complete
            )
            for _, ledger in self.payouts.list_items_with_ledger(payout.id)
        ]
        events = self.events.list_for_payout_or_affiliate(
            payout.id, payout.affiliate_user_id, limit=PAYOUT_DETAIL_EVENT_LIMIT
        )

        return PayoutDetail(
            payout=PayoutOut.model_validate(payout),
            items=items,
            events=[ComplianceEventOut.model_validate(e) for e in events]
        )

    def admin_recent_payouts(self, limit: int = 20) -> List[AffiliatePayout]:
        return self.payouts.list_recent(min(limit, RECENT_PAYOUTS_CAP))
