# affiliate_engine/repositories/invoices.py
from typing import Optional
from datetime import datetime
from sqlalchemy.orm import Session

from ..models.invoice import Invoice


class InvoiceRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_stripe_id(self, stripe_invoice_id: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(
            Invoice.stripe_invoice_id == stripe_invoice_id
        ).first()

    def save(
        self,
        stripe_invoice_id: str,
        user_id: int,
        amount: int,
        currency: str,
        status: str
    ) -> Invoice:
        """Insert or refresh the local mirror with the latest Stripe state"""
        invoice = self.get_by_stripe_id(stripe_invoice_id)
        if invoice is None:
            invoice = Invoice(stripe_invoice_id=stripe_invoice_id, user_id=user_id)
            self.db.add(invoice)
        invoice.amount = amount
        invoice.currency = (currency or "usd").lower()
        invoice.status = status
        self.db.flush()
        return invoice

    def mark_reversed(self, stripe_invoice_id: str, reason: str, reversed_at: datetime) -> bool:
        updated = self.db.query(Invoice).filter(
            Invoice.stripe_invoice_id == stripe_invoice_id,
            Invoice.reversed_at.is_(None)
        ).update(
            {"reversed_at": reversed_at, "reversal_reason": reason},
            synchronize_session=False
        )
        return updated > 0
