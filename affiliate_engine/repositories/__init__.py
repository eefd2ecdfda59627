"""
Typed data access for the affiliate engine.

Each repository wraps a single SQLAlchemy session and exposes explicit
methods per entity; services never build ad-hoc queries against tables they
do not own. Repositories flush but never commit, so the calling service owns
the transaction boundary.
"""
from .users import UserRepository
from .invoices import InvoiceRepository
from .profiles import AffiliateProfileRepository
from .attributions import AttributionRepository
from .ledger import LedgerRepository
from .payouts import PayoutRepository
from .compliance_events import ComplianceEventRepository

__all__ = [
    "UserRepository",
    "InvoiceRepository",
    "AffiliateProfileRepository",
    "AttributionRepository",
    "LedgerRepository",
    "PayoutRepository",
    "ComplianceEventRepository",
]
