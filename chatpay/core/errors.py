"""
Error hierarchy for transfer conversations.

Every error raised inside a flow step derives from ChatPayError. The flow
engine decides per class whether to re-prompt the same step (UserInputError)
or abort the flow and clear its state (everything else).
"""

import re
from decimal import Decimal
from typing import Dict, List, Optional


class ChatPayError(Exception):
    """Base class for all expected transfer-flow failures."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class UserInputError(ChatPayError):
    """Malformed user input. The same step is prompted again."""


class UnsupportedCurrencyError(UserInputError):
    """Currency is not in the configured supported set."""

    def __init__(self, currency: str, supported: Optional[List[str]] = None):
        supported_text = ", ".join(supported) if supported else "none"
        super().__init__(f"Unsupported currency: {currency}. Supported: {supported_text}")
        self.currency = currency
        self.supported = list(supported or [])


class SessionError(ChatPayError):
    """No access token for the user; login is required."""


class BalanceError(ChatPayError):
    """Balance check blocked a value-moving call."""


class InsufficientBalanceError(BalanceError):
    """Requested total exceeds the available balance for a currency."""

    def __init__(self, currency: str, required: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient {currency} balance: required {required}, available {available}"
        )
        self.currency = currency
        self.required = required
        self.available = available


class BalanceUnavailableError(BalanceError):
    """Balances could not be fetched; the transfer is not attempted."""


class QuoteError(ChatPayError):
    """Offramp quote missing, malformed or rejected."""


class ComplianceError(ChatPayError):
    """Backend rejected the request because KYC/KYB is not approved."""


class BackendValidationError(ChatPayError):
    """Backend rejected request fields; carries messages per field."""

    def __init__(self, field_errors: Dict[str, List[str]], message: str = "Validation failed"):
        super().__init__(message)
        self.field_errors = field_errors


class TransportError(ChatPayError):
    """Network failure or unexpected backend response."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


# NOTE: the backend has no dedicated error code for unapproved business
# verification yet, so detection matches on message text. Switch to the
# structured code once the API exposes one.
_COMPLIANCE_PATTERN = re.compile(r"\bkyb\b|\bkyc\b|not\s+approved", re.IGNORECASE)


def is_compliance_rejection(text: Optional[str]) -> bool:
    """Return True if a backend error text signals missing KYC/KYB approval."""
    if not text:
        return False
    return bool(_COMPLIANCE_PATTERN.search(str(text)))
