"""
Conversion between display amounts and backend base units.

The backend expresses every amount as an integer count of the currency's
smallest unit. Each supported currency has its own exponent, e.g. with
``USDC: 9`` the display amount ``10`` is ``10000000000`` base units.
"""

from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Dict, List, Mapping, Optional, Union

from chatpay.core.config_loader import DEFAULT_CURRENCIES
from chatpay.core.errors import UnsupportedCurrencyError

Amount = Union[Decimal, int, str]


class UnitConverter:
    """Pure converter between display decimals and integer base units."""

    def __init__(self, decimals: Optional[Mapping[str, int]] = None):
        """
        Args:
            decimals: Currency code -> base-unit exponent. Defaults to DEFAULT_CURRENCIES.
        """
        table = decimals if decimals is not None else DEFAULT_CURRENCIES
        self._decimals: Dict[str, int] = {code.upper(): int(exp) for code, exp in table.items()}

    @property
    def supported_currencies(self) -> List[str]:
        return list(self._decimals)

    def is_supported(self, currency: str) -> bool:
        return bool(currency) and currency.upper() in self._decimals

    def decimals(self, currency: str) -> int:
        """
        Get the base-unit exponent for a currency.

        Raises:
            UnsupportedCurrencyError: Currency is not configured
        """
        code = (currency or "").upper()
        if code not in self._decimals:
            raise UnsupportedCurrencyError(currency, self.supported_currencies)
        return self._decimals[code]

    def to_base_unit(self, amount: Amount, currency: str) -> str:
        """
        Convert a display amount to base units.

        Args:
            amount: Display amount (Decimal, int or decimal string)
            currency: Currency code

        Returns:
            Base-unit amount as an integer string, rounded half-up
        """
        exponent = self.decimals(currency)
        value = Decimal(str(amount))
        with localcontext() as ctx:
            ctx.prec = max(ctx.prec, _digits_needed(value, exponent))
            scaled = value.scaleb(exponent)
            return str(int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP)))

    def from_base_unit(self, base_amount: Amount, currency: str) -> Decimal:
        """
        Convert a base-unit amount to its display value.

        Args:
            base_amount: Integer base units (int or integer string)
            currency: Currency code

        Returns:
            Display amount as Decimal
        """
        exponent = self.decimals(currency)
        value = Decimal(int(Decimal(str(base_amount))))
        with localcontext() as ctx:
            ctx.prec = max(ctx.prec, _digits_needed(value))
            return value.scaleb(-exponent)

    def format_display(self, base_amount: Amount, currency: str) -> str:
        """Render a base-unit amount for humans, e.g. ``10.5 USDC``."""
        value = self.from_base_unit(base_amount, currency)
        return f"{format_decimal(value)} {currency.upper()}"


def format_decimal(value: Decimal) -> str:
    """Plain notation without trailing zeros (``10.500`` -> ``10.5``)."""
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, _digits_needed(value))
        normalized = value.normalize()
        if normalized == normalized.to_integral():
            return str(normalized.quantize(Decimal(1)))
        return f"{normalized:f}"


def _digits_needed(value: Decimal, shift: int = 0) -> int:
    """Precision that keeps ``value.scaleb(shift)`` and its integral part exact."""
    if not value.is_finite():
        raise ValueError(f"Not a finite amount: {value}")
    _, digits, exponent = value.as_tuple()
    return len(digits) + max(exponent + shift, 0) + 1
