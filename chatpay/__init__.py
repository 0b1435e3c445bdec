"""
ChatPay: conversational transfer bot for a custodial payments platform.

Users move funds through multi-step Telegram conversations:
- Send: direct transfer to a wallet address or email
- Withdraw: transfer out to an external wallet
- Offramp: quote-based conversion to a bank payout
- Batch: one amount to many recipients
"""

__version__ = "0.1.0"
