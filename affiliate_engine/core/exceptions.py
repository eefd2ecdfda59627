"""
Affiliate engine error taxonomy.

InvalidInput covers caller mistakes (bad referral code, self-referral,
out-of-range rates, illegal settlement transitions) and is never retried.
NotFound is raised for unknown payouts or profiles. Infrastructure failures
(SQLAlchemyError, stripe.error.StripeError) are not wrapped; they propagate to
the event consumer or scheduler, which retry the idempotent operation.
"""

from typing import Optional, Dict, Any


class AffiliateError(Exception):
    """Base class for affiliate engine errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidInput(AffiliateError):
    """The caller supplied something the engine will never accept"""


class NotFound(AffiliateError):
    """A payout, profile or invoice does not exist"""
