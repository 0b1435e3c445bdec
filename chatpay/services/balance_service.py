"""
Balance verification service.

Fetches balances fresh before every value-moving call and checks that the
requested total per currency fits. The check fails closed: when balances
cannot be fetched the transfer is not attempted.
"""

import logging
from collections import defaultdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from chatpay.core.api_client import PaymentsApiClient
from chatpay.core.errors import (
    BalanceUnavailableError,
    InsufficientBalanceError,
    SessionError,
    TransportError,
)
from chatpay.core.models import BalanceSnapshot, WalletBalance
from chatpay.core.units import UnitConverter

logger = logging.getLogger(__name__)


class BalanceService:
    """Service for reading wallet balances and gating transfers on them."""

    def __init__(self, api_client: PaymentsApiClient, converter: UnitConverter):
        """
        Initialize balance service.

        Args:
            api_client: Backend API client
            converter: Unit converter for the supported currencies
        """
        self.api_client = api_client
        self.converter = converter

    async def get_wallet_balances(self, access_token: str) -> List[WalletBalance]:
        """
        Get per-wallet balances in base units.

        Raises:
            BalanceUnavailableError: Balances could not be fetched or parsed
            SessionError: Access token rejected
        """
        try:
            data = await self.api_client.get_balances(access_token)
        except SessionError:
            raise
        except TransportError as e:
            logger.error(f"Failed to fetch balances: {e}")
            raise BalanceUnavailableError("Could not fetch balances") from e

        if not isinstance(data, list):
            raise BalanceUnavailableError("Balance response is not a list")

        wallets = []
        for wallet in data:
            balances: Dict[str, int] = defaultdict(int)
            for token in wallet.get("balances") or []:
                symbol = str(token.get("symbol", "")).upper()
                if not symbol:
                    continue
                balances[symbol] += parse_base_amount(token.get("balance"), symbol)
            wallets.append(WalletBalance(
                wallet_id=str(wallet.get("walletId") or wallet.get("id") or ""),
                network=str(wallet.get("network") or ""),
                is_default=bool(wallet.get("isDefault")),
                balances=dict(balances),
            ))
        return wallets

    async def get_snapshot(self, access_token: str) -> BalanceSnapshot:
        """
        Available balance per currency.

        Transfers are funded from the default wallet, so only default wallets
        count when one is flagged; otherwise all wallets are summed.
        """
        wallets = await self.get_wallet_balances(access_token)
        funding = [w for w in wallets if w.is_default] or wallets

        totals: Dict[str, int] = defaultdict(int)
        for wallet in funding:
            for currency, amount in wallet.balances.items():
                totals[currency] += amount
        return BalanceSnapshot(balances=dict(totals))

    async def verify(self, access_token: str, required: Mapping[str, int]) -> BalanceSnapshot:
        """
        Check that every required base-unit total is covered.

        Args:
            access_token: User access token
            required: Currency -> total base units needed

        Returns:
            The snapshot the decision was made on

        Raises:
            InsufficientBalanceError: A currency total exceeds its balance
            BalanceUnavailableError: Balances could not be fetched
        """
        snapshot = await self.get_snapshot(access_token)

        for currency, needed in required.items():
            available = snapshot.available(currency)
            if needed > available:
                logger.info(f"Insufficient {currency}: required {needed}, available {available}")
                raise InsufficientBalanceError(
                    currency,
                    required=self.converter.from_base_unit(needed, currency),
                    available=self.converter.from_base_unit(available, currency),
                )
        return snapshot

    @staticmethod
    def required_totals(amounts: Iterable[Tuple[str, str]]) -> Dict[str, int]:
        """Sum ``(currency, base_amount)`` pairs per currency."""
        totals: Dict[str, int] = defaultdict(int)
        for currency, base_amount in amounts:
            totals[currency.upper()] += int(base_amount)
        return dict(totals)


def parse_base_amount(balance: Any, symbol: str) -> int:
    """
    Balances are integer counts of base units however they are written,
    so ``"100"``, ``"100.0"`` and ``"1E+2"`` are all 100. A fractional value
    cannot be a base-unit count and fails closed.
    """
    raw = str(balance if balance is not None else "0").strip() or "0"
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise BalanceUnavailableError(f"Malformed {symbol} balance: {raw}") from e

    if not value.is_finite() or value != value.to_integral_value():
        raise BalanceUnavailableError(f"{symbol} balance is not a base-unit integer: {raw}")
    return int(value)
