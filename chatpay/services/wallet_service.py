"""
Wallet management service.

Lists the user's custodial wallets, reads and changes the default wallet
that transfers are funded from, and looks up supported networks and
single-token balances.
"""

import logging
from typing import Any, List

from chatpay.core.api_client import PaymentsApiClient
from chatpay.core.errors import TransportError
from chatpay.core.models import TokenBalance, Wallet
from chatpay.core.units import UnitConverter
from chatpay.services.balance_service import parse_base_amount

logger = logging.getLogger(__name__)


class WalletService:
    """Service for wallet listing and default-wallet selection."""

    def __init__(self, api_client: PaymentsApiClient, converter: UnitConverter):
        self.api_client = api_client
        self.converter = converter

    async def list_wallets(self, access_token: str) -> List[Wallet]:
        """
        Get all wallets of the user, default wallet first.

        Raises:
            SessionError: Access token rejected
            TransportError: Backend unavailable or response malformed
        """
        data = await self.api_client.get_wallets(access_token)
        if not isinstance(data, list):
            raise TransportError("Wallet list response is not a list")

        wallets = [Wallet.from_api(item) for item in data if isinstance(item, dict)]
        wallets.sort(key=lambda w: not w.is_default)
        return wallets

    async def get_default_wallet(self, access_token: str) -> Wallet:
        data = await self.api_client.get_default_wallet(access_token)
        return self._wallet_from(data)

    async def set_default_wallet(self, access_token: str, wallet_id: str) -> Wallet:
        """
        Make ``wallet_id`` the wallet transfers are funded from.

        Returns:
            The wallet as the backend now reports it
        """
        data = await self.api_client.set_default_wallet(access_token, wallet_id)
        wallet = self._wallet_from(data)
        logger.info(f"Default wallet set to {wallet.id or wallet_id}")
        return wallet

    async def list_networks(self, access_token: str) -> List[str]:
        data = await self.api_client.get_networks(access_token)
        if not isinstance(data, list):
            raise TransportError("Network list response is not a list")
        return [str(network) for network in data if network]

    async def get_token_balance(self, access_token: str, chain_id: str, token: str) -> TokenBalance:
        """
        Balance of one token on one chain.

        The balance is read as base units; ``decimals`` comes from the
        response, falling back to the configured exponent for the symbol.

        Raises:
            BalanceUnavailableError: Balance is not a base-unit integer
        """
        data = await self.api_client.get_token_balance(access_token, chain_id, token)
        if not isinstance(data, dict):
            raise TransportError("Token balance response is not an object")

        symbol = str(data.get("symbol") or token).upper()
        decimals = data.get("decimals")
        if decimals is None:
            decimals = self.converter.decimals(symbol) if self.converter.is_supported(symbol) else 0

        return TokenBalance(
            symbol=symbol,
            amount_base=parse_base_amount(data.get("balance"), symbol),
            decimals=int(decimals),
            address=str(data.get("address") or ""),
        )

    @staticmethod
    def _wallet_from(data: Any) -> Wallet:
        if not isinstance(data, dict):
            raise TransportError("Wallet response is not an object")
        return Wallet.from_api(data)
