"""
Input validation for transfer conversation steps.

Each parser takes the raw chat text and either returns the normalized value
or raises UserInputError with a message the user can act on.
"""

import re
from decimal import Decimal, InvalidOperation, localcontext
from typing import Tuple

from web3 import Web3

from chatpay.core.errors import UserInputError
from chatpay.core.units import UnitConverter

_WALLET_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_COUNTRY_PATTERN = re.compile(r"^[A-Za-z]{3}$")
_WALLET_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

MAX_NAME_LENGTH = 100
MAX_INTEGER_DIGITS = 24


def parse_currency(text: str, converter: UnitConverter) -> str:
    """Return the uppercase currency code if supported."""
    code = (text or "").strip().upper()
    if not converter.is_supported(code):
        supported = ", ".join(converter.supported_currencies)
        raise UserInputError(f"❌ Unsupported currency. Choose one of: {supported}")
    return code


def parse_amount(text: str, currency: str, converter: UnitConverter) -> Decimal:
    """
    Parse a strictly positive, finite display amount.

    The amount may not carry more fractional digits than the currency's
    base-unit exponent, so it converts to base units without rounding.
    """
    raw = (text or "").strip().replace(",", "")
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        raise UserInputError("❌ Invalid amount. Please enter a positive number.")

    if not amount.is_finite() or amount <= 0:
        raise UserInputError("❌ Invalid amount. Please enter a positive number.")

    if amount.adjusted() + 1 > MAX_INTEGER_DIGITS:
        raise UserInputError(
            f"❌ Amount is too large. Use at most {MAX_INTEGER_DIGITS} digits before the decimal point."
        )

    decimals = converter.decimals(currency)
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(amount.as_tuple().digits))
        exponent = amount.normalize().as_tuple().exponent
    if exponent < 0 and -exponent > decimals:
        raise UserInputError(
            f"❌ Too many decimal places. {currency} supports up to {decimals}."
        )
    return amount


def is_valid_wallet_address(address: str) -> bool:
    """EVM address: 0x + 40 hex chars, with a valid checksum when mixed-case."""
    if not address or not _WALLET_PATTERN.match(address):
        return False
    return Web3.is_address(address)


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(_EMAIL_PATTERN.match(email))


def parse_wallet_address(text: str) -> str:
    address = (text or "").strip()
    if not is_valid_wallet_address(address):
        raise UserInputError(
            "❌ Invalid wallet address format.\n"
            "Format: 0x followed by 40 hex characters"
        )
    return address


def parse_email(text: str) -> str:
    email = (text or "").strip()
    if not is_valid_email(email):
        raise UserInputError("❌ Invalid email address format.")
    return email


def parse_destination(text: str) -> Tuple[str, bool]:
    """
    Parse a recipient that may be an email or a wallet address.

    Returns:
        (destination, is_email)
    """
    value = (text or "").strip()
    if "@" in value:
        return parse_email(value), True
    return parse_wallet_address(value), False


def parse_name(text: str, label: str) -> str:
    name = " ".join((text or "").split())
    if not name:
        raise UserInputError(f"❌ {label} cannot be empty.")
    if len(name) > MAX_NAME_LENGTH:
        raise UserInputError(f"❌ {label} is too long (max {MAX_NAME_LENGTH} characters).")
    return name


def parse_country(text: str) -> str:
    """ISO 3166-1 alpha-3 country code, uppercased."""
    code = (text or "").strip()
    if not _COUNTRY_PATTERN.match(code):
        raise UserInputError("❌ Invalid country. Use a 3-letter country code, e.g. USA.")
    return code.upper()


def parse_wallet_id(text: str) -> str:
    wallet_id = (text or "").strip()
    if not _WALLET_ID_PATTERN.match(wallet_id):
        raise UserInputError("❌ Invalid wallet ID. Pick one of your wallets.")
    return wallet_id
