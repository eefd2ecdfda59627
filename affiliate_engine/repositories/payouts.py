# affiliate_engine/repositories/payouts.py
from typing import Optional, List, Tuple, Iterable, Set
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.affiliate import (
    AffiliatePayout,
    AffiliatePayoutItem,
    CommissionLedgerEntry,
    PayoutStatus,
)


class PayoutRepository:

    def __init__(self, db: Session):
        self.db = db

    def get(self, payout_id: int) -> Optional[AffiliatePayout]:
        return self.db.query(AffiliatePayout).filter(
            AffiliatePayout.id == payout_id
        ).first()

    def add(self, payout: AffiliatePayout) -> AffiliatePayout:
        self.db.add(payout)
        self.db.flush()
        return payout

    def linked_ledger_ids(self, ledger_ids: Iterable[int]) -> Set[int]:
        """Subset of ledger_ids already claimed by some payout"""
        ids = list(set(ledger_ids))
        if not ids:
            return set()
        rows = self.db.query(AffiliatePayoutItem.ledger_id).filter(
            AffiliatePayoutItem.ledger_id.in_(ids)
        ).all()
        return {row[0] for row in rows}

    def add_items(self, payout_id: int, ledger_ids: Iterable[int]) -> int:
        """Link ledger entries to a payout, skipping entries that are already linked"""
        ids = list(dict.fromkeys(ledger_ids))
        already_linked = self.linked_ledger_ids(ids)
        created = 0
        for ledger_id in ids:
            if ledger_id in already_linked:
                continue
            self.db.add(AffiliatePayoutItem(payout_id=payout_id, ledger_id=ledger_id))
            created += 1
        self.db.flush()
        return created

    def ledger_ids_for_payout(self, payout_id: int) -> List[int]:
        rows = self.db.query(AffiliatePayoutItem.ledger_id).filter(
            AffiliatePayoutItem.payout_id == payout_id
        ).all()
        return [row[0] for row in rows]

    def list_items_with_ledger(self, payout_id: int) -> List[Tuple[AffiliatePayoutItem, CommissionLedgerEntry]]:
        return self.db.query(AffiliatePayoutItem, CommissionLedgerEntry).join(
            CommissionLedgerEntry,
            CommissionLedgerEntry.id == AffiliatePayoutItem.ledger_id
        ).filter(
            AffiliatePayoutItem.payout_id == payout_id
        ).order_by(CommissionLedgerEntry.created_at.asc(), CommissionLedgerEntry.id.asc()).all()

    def list_processing_without_transfer(self) -> List[AffiliatePayout]:
        return self.db.query(AffiliatePayout).filter(
            AffiliatePayout.status == PayoutStatus.PROCESSING.value,
            AffiliatePayout.stripe_transfer_id.is_(None)
        ).order_by(AffiliatePayout.id.asc()).all()

    def set_transfer(self, payout_id: int, transfer_id: str, transfer_status: str) -> bool:
        """Store the transfer id once; a payout that already has one is left alone"""
        updated = self.db.query(AffiliatePayout).filter(
            AffiliatePayout.id == payout_id,
            AffiliatePayout.stripe_transfer_id.is_(None)
        ).update(
            {
                "stripe_transfer_id": transfer_id,
                "stripe_transfer_status": transfer_status,
                "updated_at": datetime.utcnow(),
            },
            synchronize_session=False
        )
        return updated > 0

    def transition(self, payout_id: int, from_status: str, values: dict) -> bool:
        """Conditional status change, succeeds only from the expected status"""
        updated = self.db.query(AffiliatePayout).filter(
            AffiliatePayout.id == payout_id,
            AffiliatePayout.status == from_status
        ).update(values, synchronize_session=False)
        return updated > 0

    def list_recent(self, limit: int = 20) -> List[AffiliatePayout]:
        return self.db.query(AffiliatePayout).order_by(
            AffiliatePayout.created_at.desc(),
            AffiliatePayout.id.desc()
        ).limit(max(1, min(limit, 100))).all()

    def list_for_affiliate(self, affiliate_user_id: int, limit: int = 12) -> List[AffiliatePayout]:
        return self.db.query(AffiliatePayout).filter(
            AffiliatePayout.affiliate_user_id == affiliate_user_id
        ).order_by(
            AffiliatePayout.created_at.desc(),
            AffiliatePayout.id.desc()
        ).limit(limit).all()

    def sum_paid_total(self) -> int:
        total = self.db.query(func.coalesce(func.sum(AffiliatePayout.total_cents), 0)).filter(
            AffiliatePayout.status == PayoutStatus.PAID.value
        ).scalar()
        return int(total or 0)
