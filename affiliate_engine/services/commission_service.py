# affiliate_engine/services/commission_service.py
from typing import Optional, List
from datetime import datetime, timedelta
import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..core.config import settings
from ..models.affiliate import CommissionLedgerEntry, LedgerStatus
from ..models.compliance import AuditSeverity
from ..repositories.invoices import InvoiceRepository
from ..repositories.profiles import AffiliateProfileRepository
from ..repositories.attributions import AttributionRepository
from ..repositories.ledger import LedgerRepository
from .affiliate_service import AffiliateService
from .compliance_audit import ComplianceAuditService

logger = logging.getLogger(__name__)

LEVEL_ONE = 1
LEVEL_TWO = 2
BPS_DENOMINATOR = 10000


def commission_amount(amount: int, rate_bps: int) -> int:
    """Commission in minor units, always rounded down"""
    if amount <= 0 or rate_bps <= 0:
        return 0
    return (amount * rate_bps) // BPS_DENOMINATOR


class CommissionService:
    """
    Credits and reverses commissions for invoices.

    Both operations are idempotent; duplicate or reordered Stripe deliveries
    converge on the same ledger state.
    """

    def __init__(self, db: Session, affiliate_service: Optional[AffiliateService] = None):
        self.db = db
        self.affiliate_service = affiliate_service or AffiliateService(db)
        self.invoices = InvoiceRepository(db)
        self.profiles = AffiliateProfileRepository(db)
        self.attributions = AttributionRepository(db)
        self.ledger = LedgerRepository(db)
        self.audit = ComplianceAuditService(db)

    def process_paid_payment(self, invoice_id: str, now: Optional[datetime] = None) -> int:
        """
        Credit level-1 and level-2 commissions for a paid invoice.

        Args:
            invoice_id: Stripe invoice id of the local payment record
            now: Crediting time, defaults to utcnow

        Returns:
            int: Number of ledger entries written, 0 for any no-op
        """
        now = now or datetime.utcnow()

        invoice = self.invoices.get_by_stripe_id(invoice_id)
        if not invoice or not invoice.is_creditable:
            logger.info(f"Invoice {invoice_id} is not creditable, skipping commissions")
            return 0

        attribution = self.attributions.get(invoice.user_id)
        if not attribution:
            logger.info(f"Invoice {invoice_id} paid by unattributed user {invoice.user_id}")
            return 0

        profile = self.affiliate_service.ensure_profile(attribution.affiliate_user_id)

        if self.ledger.exists(invoice_id, profile.user_id, LEVEL_ONE):
            logger.info(f"Commissions for invoice {invoice_id} already credited to affiliate {profile.user_id}")
            return 0

        available_at = now + timedelta(days=settings.AFFILIATE_COMMISSION_LOCK_DAYS)
        currency = (invoice.currency or "usd").lower()
        entries: List[CommissionLedgerEntry] = []

        level_one_amount = commission_amount(invoice.amount, profile.level_one_rate_bps)
        if level_one_amount > 0:
            entries.append(CommissionLedgerEntry(
                affiliate_user_id=profile.user_id,
                referred_user_id=invoice.user_id,
                invoice_id=invoice_id,
                level=LEVEL_ONE,
                amount_cents=level_one_amount,
                currency=currency,
                status=LedgerStatus.PENDING.value,
                available_at=available_at,
                reason="subscription_paid"
            ))

        # The upline earns the level-two rate set on the referring affiliate
        if (
            profile.parent_affiliate_user_id
            and profile.parent_affiliate_user_id != profile.user_id
            and profile.level_two_rate_bps > 0
        ):
            parent = self.profiles.get_by_user_id(profile.parent_affiliate_user_id)
            if parent and parent.is_active:
                level_two_amount = commission_amount(invoice.amount, profile.level_two_rate_bps)
                if level_two_amount > 0:
                    entries.append(CommissionLedgerEntry(
                        affiliate_user_id=parent.user_id,
                        referred_user_id=invoice.user_id,
                        invoice_id=invoice_id,
                        level=LEVEL_TWO,
                        amount_cents=level_two_amount,
                        currency=currency,
                        status=LedgerStatus.PENDING.value,
                        available_at=available_at,
                        reason="subscription_paid_level2"
                    ))

        try:
            for entry in entries:
                self.ledger.add(entry)
            self.attributions.activate(invoice.user_id, now)
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same invoice credited it first
            self.db.rollback()
            logger.info(f"Duplicate crediting of invoice {invoice_id} rejected by ledger constraint")
            return 0
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error crediting invoice {invoice_id}: {str(e)}")
            raise

        for entry in entries:
            logger.info(
                f"Credited level {entry.level} commission of {entry.amount_cents} {entry.currency} "
                f"to affiliate {entry.affiliate_user_id} for invoice {invoice_id}"
            )
        return len(entries)

    def reverse_invoice_commissions(self, invoice_id: str, reason: str = "refund") -> int:
        """
        Claw back every live commission of an invoice.

        The invoice mirror is marked reversed as well, so a paid event that
        arrives later cannot credit it again.

        Returns:
            int: Number of ledger entries moved to reversed
        """
        reversed_at = datetime.utcnow()
        try:
            paid_entries = self.ledger.list_for_invoice(invoice_id, statuses=[LedgerStatus.PAID.value])
            paid_snapshot = [(e.id, e.affiliate_user_id, e.amount_cents, e.currency, e.level) for e in paid_entries]

            count = self.ledger.reverse_for_invoice(invoice_id, reason, reversed_at)
            self.invoices.mark_reversed(invoice_id, reason, reversed_at)

            for ledger_id, affiliate_user_id, amount_cents, currency, level in paid_snapshot:
                self.audit.log_event(
                    affiliate_user_id=affiliate_user_id,
                    event_type="paid_commission_reversed",
                    severity=AuditSeverity.CRITICAL,
                    message="A commission that was already paid out has been reversed and must be recovered.",
                    metadata={
                        "ledger_id": ledger_id,
                        "invoice_id": invoice_id,
                        "level": level,
                        "amount_cents": amount_cents,
                        "currency": currency,
                        "reason": reason,
                    }
                )

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error reversing commissions for invoice {invoice_id}: {str(e)}")
            raise

        if count:
            logger.info(f"Reversed {count} commission entries for invoice {invoice_id} ({reason})")
        else:
            logger.info(f"No reversible commissions for invoice {invoice_id} ({reason})")
        return count
