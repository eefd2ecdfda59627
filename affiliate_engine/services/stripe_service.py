import stripe
from typing import Dict, Any, Optional
import logging

from ..core.config import settings

logger = logging.getLogger(__name__)

class StripeService:
    """
    Thin gateway over the Stripe SDK.

    Only transfers and Connect onboarding move money or state on the Stripe
    side; everything else is a read. Errors are logged and re-raised so the
    event consumer or payout scheduler can retry.
    """

    def __init__(self, api_key: Optional[str] = None):
        stripe.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.logger = logging.getLogger(__name__)

    def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None
    ):
        """
        Create a transfer to a connected account.

        Args:
            amount: Amount in minor units
            currency: Lower-case ISO currency code
            destination: Stripe Connect account id
            idempotency_key: Stable key, repeated calls return the same transfer

        Returns:
            stripe.Transfer
        """
        try:
            transfer = stripe.Transfer.create(
                amount=amount,
                currency=currency,
                destination=destination,
                metadata=metadata or {},
                description=description,
                idempotency_key=idempotency_key
            )
            logger.info(f"Created transfer {transfer.id} of {amount} {currency} to {destination}")
            return transfer
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating transfer ({idempotency_key}): {str(e)}")
            raise

    def retrieve_invoice(self, invoice_id: str):
        try:
            return stripe.Invoice.retrieve(invoice_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving invoice {invoice_id}: {str(e)}")
            raise

    def retrieve_charge(self, charge_id: str):
        try:
            return stripe.Charge.retrieve(charge_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving charge {charge_id}: {str(e)}")
            raise

    def retrieve_account(self, account_id: str):
        try:
            return stripe.Account.retrieve(account_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving account {account_id}: {str(e)}")
            raise

    def create_connect_account(self, country: str, affiliate_user_id: int, email: Optional[str] = None):
        """Create an Express account able to receive transfers"""
        try:
            params = {
                "type": "express",
                "country": country,
                "capabilities": {"transfers": {"requested": True}},
                "business_type": "individual",
                "metadata": {"affiliate_user_id": str(affiliate_user_id)},
            }
            if email:
                params["email"] = email
            account = stripe.Account.create(**params)
            logger.info(f"Created Connect account {account.id} for affiliate {affiliate_user_id}")
            return account
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating Connect account for affiliate {affiliate_user_id}: {str(e)}")
            raise

    def create_account_link(self, account_id: str, refresh_url: str, return_url: str):
        try:
            return stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding"
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating onboarding link for {account_id}: {str(e)}")
            raise


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject, a plain dict payload or a test double"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)
