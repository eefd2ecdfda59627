# affiliate_engine/models/invoice.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from datetime import datetime

from ..db.base_class import Base

class Invoice(Base):
    """Local mirror of a Stripe invoice, the payment record commissions are credited from"""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    stripe_invoice_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String, nullable=False, default="draft")  # Stripe invoice status

    # Set once a refund, void or dispute has clawed back commissions
    reversal_reason = Column(String, nullable=True)
    reversed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"Invoice(id={self.stripe_invoice_id}, amount={self.amount} {self.currency}, status={self.status})"

    @property
    def is_creditable(self) -> bool:
        return self.status == "paid" and (self.amount or 0) > 0 and self.reversed_at is None
