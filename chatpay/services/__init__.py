"""
Services layer for the ChatPay transfer bot.

This layer provides the business services the Telegram bot and the flow
engine call: sessions, balances, wallets, quotes and transfer execution.
"""

from chatpay.services.session_service import SessionManager
from chatpay.services.balance_service import BalanceService
from chatpay.services.wallet_service import WalletService
from chatpay.services.quote_service import QuoteService
from chatpay.services.transfer_service import TransferService

__all__ = [
    'SessionManager',
    'BalanceService',
    'WalletService',
    'QuoteService',
    'TransferService',
]
