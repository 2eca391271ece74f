"""Bank transfer payouts through Stripe Connect."""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal

import stripe

from .directory import MemberDirectory
from .errors import PayoutError
from .settings import Settings

logger = logging.getLogger(__name__)


class BankTransferService(ABC):
    @abstractmethod
    def issue_transfer(self, payee_id: str, amount_eur: Decimal) -> str:
        """Send `amount_eur` to the payee and return the transfer id."""


class StripeBankTransfer(BankTransferService):
    # Member property holding the payee's connected Stripe account.
    ACCOUNT_PROPERTY = "stripeAccountId"

    def __init__(self, settings: Settings, directory: MemberDirectory):
        self._api_key = settings.stripe_secret_key
        self._directory = directory

    def issue_transfer(self, payee_id: str, amount_eur: Decimal) -> str:
        logger.info("Issuing bank transfer of %s EUR to %s", amount_eur, payee_id)
        if not self._api_key:
            raise PayoutError("Stripe is not configured", {"payeeId": payee_id})

        member = self._directory.get_member(payee_id)
        account_id = (member.get("properties") or {}).get(self.ACCOUNT_PROPERTY)
        if not account_id:
            raise PayoutError(
                f"Member {payee_id} has no connected Stripe account",
                {"payeeId": payee_id},
            )

        amount_cents = int((amount_eur * 100).to_integral_value())
        try:
            transfer = stripe.Transfer.create(
                api_key=self._api_key,
                amount=amount_cents,
                currency="eur",
                destination=account_id,
                description="Referral reward",
                metadata={"payeeId": payee_id},
            )
        except stripe.StripeError as e:
            raise PayoutError(f"Stripe transfer to {payee_id} failed: {e}", {"payeeId": payee_id}) from e

        logger.info("Stripe transfer %s created for %s", transfer.id, payee_id)
        return transfer.id
