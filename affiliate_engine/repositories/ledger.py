# affiliate_engine/repositories/ledger.py
from typing import Optional, List, Dict, Tuple, Iterable, Sequence
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.affiliate import (
    AffiliateProfile,
    AffiliatePayoutItem,
    CommissionLedgerEntry,
    LedgerStatus,
    REVERSIBLE_LEDGER_STATUSES,
)


class LedgerRepository:
    """
    Commission ledger access.

    Every status transition is a conditional bulk UPDATE guarded on the
    expected current status, so concurrent payout runs, admin actions and
    webhook deliveries can only ever move a row forward once.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, ledger_id: int) -> Optional[CommissionLedgerEntry]:
        return self.db.query(CommissionLedgerEntry).filter(
            CommissionLedgerEntry.id == ledger_id
        ).first()

    def exists(self, invoice_id: str, affiliate_user_id: int, level: int) -> bool:
        return self.db.query(CommissionLedgerEntry.id).filter(
            CommissionLedgerEntry.invoice_id == invoice_id,
            CommissionLedgerEntry.affiliate_user_id == affiliate_user_id,
            CommissionLedgerEntry.level == level
        ).first() is not None

    def add(self, entry: CommissionLedgerEntry) -> CommissionLedgerEntry:
        self.db.add(entry)
        return entry

    def list_for_invoice(self, invoice_id: str, statuses: Optional[Sequence[str]] = None) -> List[CommissionLedgerEntry]:
        query = self.db.query(CommissionLedgerEntry).filter(
            CommissionLedgerEntry.invoice_id == invoice_id
        )
        if statuses is not None:
            query = query.filter(CommissionLedgerEntry.status.in_(list(statuses)))
        return query.order_by(CommissionLedgerEntry.level.asc()).all()

    def reverse_for_invoice(self, invoice_id: str, reason: str, reversed_at: datetime) -> int:
        return self.db.query(CommissionLedgerEntry).filter(
            CommissionLedgerEntry.invoice_id == invoice_id,
            CommissionLedgerEntry.status.in_(REVERSIBLE_LEDGER_STATUSES)
        ).update(
            {
                "status": LedgerStatus.REVERSED.value,
                "reversed_at": reversed_at,
                "reason": reason,
                "updated_at": reversed_at,
            },
            synchronize_session=False
        )

    def list_releasable(self, as_of: datetime) -> List[Tuple[CommissionLedgerEntry, Optional[AffiliateProfile]]]:
        """Pending entries past their lock, with the affiliate's current profile"""
        return self.db.query(CommissionLedgerEntry, AffiliateProfile).outerjoin(
            AffiliateProfile,
            AffiliateProfile.user_id == CommissionLedgerEntry.affiliate_user_id
        ).filter(
            CommissionLedgerEntry.status == LedgerStatus.PENDING.value,
            CommissionLedgerEntry.available_at <= as_of
        ).order_by(
            CommissionLedgerEntry.affiliate_user_id.asc(),
            CommissionLedgerEntry.created_at.asc(),
            CommissionLedgerEntry.id.asc()
        ).all()

    def approve_pending(self, ledger_ids: Iterable[int]) -> int:
        ids = list(ledger_ids)
        if not ids:
            return 0
        return self.db.query(CommissionLedgerEntry).filter(
            CommissionLedgerEntry.id.in_(ids),
            CommissionLedgerEntry.status == LedgerStatus.PENDING.value
        ).update(
            {"status": LedgerStatus.APPROVED.value, "updated_at": datetime.utcnow()},
            synchronize_session=False
        )

    def list_unclaimed_approved(self) -> List[CommissionLedgerEntry]:
        """Approved entries not yet linked to any payout"""
        return self.db.query(CommissionLedgerEntry).outerjoin(
            AffiliatePayoutItem,
            AffiliatePayoutItem.ledger_id == CommissionLedgerEntry.id
        ).filter(
            CommissionLedgerEntry.status == LedgerStatus.APPROVED.value,
            AffiliatePayoutItem.id.is_(None)
        ).order_by(
            CommissionLedgerEntry.affiliate_user_id.asc(),
            CommissionLedgerEntry.created_at.asc(),
            CommissionLedgerEntry.id.asc()
        ).all()

    def mark_paid(self, ledger_ids: Iterable[int], paid_at: datetime) -> int:
        ids = list(ledger_ids)
        if not ids:
            return 0
        return self.db.query(CommissionLedgerEntry).filter(
            CommissionLedgerEntry.id.in_(ids),
            CommissionLedgerEntry.status == LedgerStatus.APPROVED.value
        ).update(
            {"status": LedgerStatus.PAID.value, "paid_at": paid_at, "updated_at": paid_at},
            synchronize_session=False
        )

    def list_recent_for_affiliate(self, affiliate_user_id: int, limit: int = 20) -> List[CommissionLedgerEntry]:
        return self.db.query(CommissionLedgerEntry).filter(
            CommissionLedgerEntry.affiliate_user_id == affiliate_user_id
        ).order_by(
            CommissionLedgerEntry.created_at.desc(),
            CommissionLedgerEntry.id.desc()
        ).limit(limit).all()

    def sum_amount(self, statuses: Optional[Sequence[str]] = None, affiliate_user_id: Optional[int] = None) -> int:
        query = self.db.query(func.coalesce(func.sum(CommissionLedgerEntry.amount_cents), 0))
        if statuses is not None:
            query = query.filter(CommissionLedgerEntry.status.in_(list(statuses)))
        if affiliate_user_id is not None:
            query = query.filter(CommissionLedgerEntry.affiliate_user_id == affiliate_user_id)
        return int(query.scalar() or 0)

    def sum_by_affiliates(self, affiliate_user_ids: Iterable[int], statuses: Optional[Sequence[str]] = None) -> Dict[int, int]:
        ids = list(set(affiliate_user_ids))
        if not ids:
            return {}
        query = self.db.query(
            CommissionLedgerEntry.affiliate_user_id,
            func.coalesce(func.sum(CommissionLedgerEntry.amount_cents), 0)
        ).filter(CommissionLedgerEntry.affiliate_user_id.in_(ids))
        if statuses is not None:
            query = query.filter(CommissionLedgerEntry.status.in_(list(statuses)))
        rows = query.group_by(CommissionLedgerEntry.affiliate_user_id).all()
        return {affiliate_id: int(total) for affiliate_id, total in rows}
