# affiliate_engine/webhooks/stripe_events.py
from typing import Optional, Any
import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.invoice import Invoice
from ..repositories.invoices import InvoiceRepository
from ..services.affiliate_service import AffiliateService
from ..services.commission_service import CommissionService
from ..services.stripe_service import StripeService, stripe_field

logger = logging.getLogger(__name__)

INVOICE_EVENTS = {
    "invoice.created",
    "invoice.updated",
    "invoice.finalization_failed",
    "invoice.payment_failed",
    "invoice.paid",
}
REVERSING_INVOICE_STATUSES = {"void", "uncollectible"}


def _object_id(ref: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object"""
    if ref is None:
        return None
    if isinstance(ref, str):
        return ref
    return stripe_field(ref, "id")


class StripeEventHandler:
    """
    Routes verified Stripe events to the commission and affiliate services.

    Signature verification and transport happen upstream. Every handler
    re-reads current state from Stripe and is safe to run more than once, so
    redelivered or reordered events converge.
    """

    def __init__(
        self,
        db: Session,
        stripe_service: StripeService,
        affiliate_service: Optional[AffiliateService] = None,
        commission_service: Optional[CommissionService] = None
    ):
        self.db = db
        self.stripe_service = stripe_service
        self.affiliate_service = affiliate_service or AffiliateService(db, stripe_service)
        self.commission_service = commission_service or CommissionService(db, self.affiliate_service)
        self.invoices = InvoiceRepository(db)

    def handle_event(self, event: Any) -> bool:
        """
        Dispatch one event.

        Returns:
            bool: True when the event type is one this engine consumes
        """
        event_type = stripe_field(event, "type")
        data_object = stripe_field(stripe_field(event, "data"), "object")
        logger.info(f"Handling Stripe event {stripe_field(event, 'id')} ({event_type})")

        if event_type in INVOICE_EVENTS:
            self._on_invoice_updated(data_object)
        elif event_type == "charge.refunded":
            self._on_charge_refunded(data_object)
        elif event_type == "charge.dispute.created":
            self._on_dispute_created(data_object)
        elif event_type == "charge.dispute.closed":
            self._on_dispute_closed(data_object)
        elif event_type == "account.updated":
            account = self.stripe_service.retrieve_account(stripe_field(data_object, "id"))
            self.affiliate_service.sync_stripe_connect_account(account)
        else:
            logger.debug(f"Ignoring Stripe event type {event_type}")
            return False
        return True

    def _on_invoice_updated(self, data_object: Any) -> None:
        invoice = self.stripe_service.retrieve_invoice(stripe_field(data_object, "id"))
        mirror = self._save_invoice(invoice)
        if mirror is None:
            return

        status = stripe_field(invoice, "status")
        if status == "paid":
            self.commission_service.process_paid_payment(mirror.stripe_invoice_id)
        elif status in REVERSING_INVOICE_STATUSES:
            self.commission_service.reverse_invoice_commissions(mirror.stripe_invoice_id, f"invoice_{status}")

    def _on_charge_refunded(self, charge: Any) -> None:
        invoice_id = _object_id(stripe_field(charge, "invoice"))
        if not invoice_id:
            logger.info(f"Refunded charge {stripe_field(charge, 'id')} has no invoice, ignoring")
            return
        self._reverse(invoice_id, "refund")

    def _on_dispute_created(self, dispute: Any) -> None:
        invoice_id = self._invoice_id_for_dispute(dispute)
        if invoice_id:
            self._reverse(invoice_id, "dispute_open")

    def _on_dispute_closed(self, dispute: Any) -> None:
        invoice_id = self._invoice_id_for_dispute(dispute)
        if not invoice_id:
            return

        if stripe_field(dispute, "status") == "won":
            # Already reversed when the dispute opened, and reversal is terminal
            logger.info(f"Dispute {stripe_field(dispute, 'id')} on invoice {invoice_id} won, commissions stay reversed")
            return
        self._reverse(invoice_id, "dispute_lost")

    def _invoice_id_for_dispute(self, dispute: Any) -> Optional[str]:
        charge_id = _object_id(stripe_field(dispute, "charge"))
        if not charge_id:
            logger.info(f"Dispute {stripe_field(dispute, 'id')} has no charge, ignoring")
            return None

        charge = self.stripe_service.retrieve_charge(charge_id)
        invoice_id = _object_id(stripe_field(charge, "invoice"))
        if not invoice_id:
            logger.info(f"Disputed charge {charge_id} has no invoice, ignoring")
        return invoice_id

    def _reverse(self, invoice_id: str, reason: str) -> None:
        # Mirror the invoice first so a paid event delivered later sees it reversed
        if self.invoices.get_by_stripe_id(invoice_id) is None:
            self._save_invoice(self.stripe_service.retrieve_invoice(invoice_id))
        self.commission_service.reverse_invoice_commissions(invoice_id, reason)

    def _save_invoice(self, invoice: Any) -> Optional[Invoice]:
        """Refresh the local payment record; unattributable invoices are skipped"""
        invoice_id = stripe_field(invoice, "id")
        existing = self.invoices.get_by_stripe_id(invoice_id)

        user_id = stripe_field(stripe_field(invoice, "metadata") or {}, "user_id")
        if user_id is None and existing is not None:
            user_id = existing.user_id
        try:
            user_id = int(user_id) if user_id is not None else None
        except (TypeError, ValueError):
            logger.warning(f"Invoice {invoice_id} carries unusable user_id {user_id!r}")
            user_id = None

        if user_id is None:
            logger.info(f"Invoice {invoice_id} is not linked to a user, ignoring")
            return None

        try:
            mirror = self.invoices.save(
                stripe_invoice_id=invoice_id,
                user_id=user_id,
                amount=stripe_field(invoice, "total") or 0,
                currency=stripe_field(invoice, "currency"),
                status=stripe_field(invoice, "status")
            )
            self.db.commit()
            return mirror
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error saving invoice {invoice_id}: {str(e)}")
            raise
