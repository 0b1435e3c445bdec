"""
Offramp quote service.

Requests conversion quotes from the backend and decides when a held quote is
too close to expiry to execute. Quote payload and signature are opaque and
passed through untouched.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from chatpay.core.api_client import PaymentsApiClient
from chatpay.core.errors import ComplianceError, QuoteError, is_compliance_rejection
from chatpay.core.models import Quote
from chatpay.core.units import UnitConverter

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuoteService:
    """Service for requesting and checking offramp quotes."""

    def __init__(
        self,
        api_client: PaymentsApiClient,
        converter: UnitConverter,
        destination_currency: str = "USD",
        destination_country: str = "USA",
        expiry_margin_seconds: float = 30,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize quote service.

        Args:
            api_client: Backend API client
            converter: Unit converter
            destination_currency: Fixed settlement currency for payouts
            destination_country: Payout country sent with quote requests
            expiry_margin_seconds: Treat quotes expiring within this margin as expired
            clock: Current UTC time source (injectable for tests)
        """
        self.api_client = api_client
        self.converter = converter
        self.destination_currency = destination_currency.upper()
        self.destination_country = destination_country.lower()
        self.expiry_margin_seconds = expiry_margin_seconds
        self._clock = clock

    async def request_quote(
        self,
        access_token: str,
        amount: Decimal,
        currency: str,
        preferred_bank_account_id: Optional[str] = None
    ) -> Quote:
        """
        Request an offramp quote.

        Args:
            access_token: User access token
            amount: Display amount to convert
            currency: Source currency
            preferred_bank_account_id: Payout bank account (optional)

        Returns:
            Parsed Quote

        Raises:
            ComplianceError: Backend reports KYC/KYB not approved
            QuoteError: Quote rejected or missing payload/signature
        """
        amount_base = self.converter.to_base_unit(amount, currency)
        payload = {
            "amount": amount_base,
            "currency": currency.upper(),
            "sourceCountry": "none",
            "destinationCountry": self.destination_country,
            "destinationCurrency": self.destination_currency,
            "onlyRemittance": True,
        }
        if preferred_bank_account_id:
            payload["preferredBankAccountId"] = preferred_bank_account_id

        logger.info(f"Requesting offramp quote: {amount} {currency} -> {self.destination_currency}")
        data = await self.api_client.request_offramp_quote(access_token, payload)

        if isinstance(data, dict) and data.get("error"):
            error_text = str(data["error"])
            if is_compliance_rejection(error_text):
                raise ComplianceError(error_text)
            raise QuoteError(error_text)

        quote = Quote.from_api(data, currency=currency, amount_base=amount_base)
        logger.info(
            f"Quote received: {quote.destination_amount} {quote.destination_currency}, "
            f"expires {quote.expires_at.isoformat() if quote.expires_at else 'n/a'}"
        )
        return quote

    def needs_requote(self, quote: Quote) -> bool:
        """True if the quote is expired or expires within the safety margin."""
        return quote.expires_within(self.expiry_margin_seconds, self._clock())
