"""Data models exchanged with the payments backend."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from chatpay.core.errors import QuoteError


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch seconds/milliseconds into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class Fee:
    amount_base: str
    currency: str


@dataclass
class Quote:
    """
    Offramp conversion quote.

    ``payload`` and ``signature`` are opaque backend tokens. They are stored
    and replayed byte-for-byte at execution; nothing here parses them.
    """

    amount_base: str
    currency: str
    destination_amount: str
    destination_currency: str
    rate: str
    fee: Fee
    expires_at: Optional[datetime]
    payload: str
    signature: str

    @classmethod
    def from_api(cls, data: Dict[str, Any], currency: str, amount_base: str) -> "Quote":
        """
        Build a quote from the backend response.

        Args:
            data: Quote response body
            currency: Source currency requested
            amount_base: Source amount requested, in base units

        Raises:
            QuoteError: payload or signature missing
        """
        if not isinstance(data, dict):
            raise QuoteError("Quote response is not an object")

        payload = data.get("quotePayload") or data.get("payload")
        signature = data.get("quoteSignature") or data.get("signature")
        if not payload or not signature:
            raise QuoteError("Quote response is missing payload or signature")

        fee_data = data.get("fee") or {}
        if not isinstance(fee_data, dict):
            fee_data = {"amount": fee_data}

        try:
            expires_at = parse_timestamp(data.get("expiresAt"))
        except (TypeError, ValueError) as e:
            raise QuoteError(f"Quote expiry is malformed: {data.get('expiresAt')}") from e

        return cls(
            amount_base=str(data.get("amount") or amount_base),
            currency=str(data.get("currency") or currency).upper(),
            destination_amount=str(data.get("toAmount") or data.get("destinationAmount") or "0"),
            destination_currency=str(
                data.get("toCurrency") or data.get("destinationCurrency") or ""
            ).upper(),
            rate=str(data.get("rate") or ""),
            fee=Fee(
                amount_base=str(fee_data.get("amount") or data.get("totalFee") or "0"),
                currency=str(fee_data.get("currency") or currency).upper(),
            ),
            expires_at=expires_at,
            payload=payload,
            signature=signature,
        )

    def expires_within(self, seconds: float, now: datetime) -> bool:
        """True if the quote has expired or will within ``seconds``."""
        if self.expires_at is None:
            return False
        return (self.expires_at - now).total_seconds() <= seconds


@dataclass
class TransferRequest:
    """Outbound send/withdraw request. Amount is always in base units."""

    amount: str
    currency: str
    purpose_code: str = "self"
    wallet_address: Optional[str] = None
    email: Optional[str] = None

    def __post_init__(self):
        if bool(self.wallet_address) == bool(self.email):
            raise ValueError("TransferRequest needs exactly one of wallet_address or email")
        if not self.amount.isdigit():
            raise ValueError(f"Amount must be an integer base-unit string: {self.amount}")
        self.currency = self.currency.upper()

    @property
    def destination(self) -> str:
        return self.wallet_address or self.email

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "amount": self.amount,
            "currency": self.currency,
            "purposeCode": self.purpose_code,
        }
        if self.wallet_address:
            payload["walletAddress"] = self.wallet_address
        else:
            payload["email"] = self.email
        return payload


@dataclass
class CustomerData:
    name: str
    business_name: str
    email: str
    country: str

    def to_payload(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "businessName": self.business_name,
            "email": self.email,
            "country": self.country,
        }


@dataclass
class Transfer:
    """Transfer record returned by the backend."""

    id: str
    status: str
    type: str
    amount: str
    currency: str
    total_fee: str = "0"
    fee_currency: str = ""
    mode: str = ""
    purpose_code: str = ""
    source: str = ""
    destination: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Transfer":
        source_account = data.get("sourceAccount") or {}
        destination_account = data.get("destinationAccount") or {}
        try:
            created_at = parse_timestamp(data.get("createdAt"))
        except (TypeError, ValueError):
            created_at = None
        return cls(
            id=str(data.get("id", "")),
            status=str(data.get("status", "unknown")),
            type=str(data.get("type", "")),
            amount=str(data.get("amount", "0")),
            currency=str(data.get("currency", "")).upper(),
            total_fee=str(data.get("totalFee") or "0"),
            fee_currency=str(data.get("feeCurrency") or data.get("currency") or "").upper(),
            mode=str(data.get("mode") or ""),
            purpose_code=str(data.get("purposeCode") or ""),
            source=_account_label(source_account),
            destination=_account_label(destination_account),
            created_at=created_at,
        )


def _account_label(account: Dict[str, Any]) -> str:
    return (
        account.get("walletAddress")
        or account.get("payeeEmail")
        or account.get("bankAccountNumber")
        or "Unknown"
    )


@dataclass
class BatchItem:
    """One batch recipient, collected during the recipients step."""

    destination: str
    amount_display: str
    currency: str

    @property
    def is_email(self) -> bool:
        return "@" in self.destination


@dataclass
class BatchItemResult:
    request_id: str
    item: BatchItem
    transfer: Optional[Transfer] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.transfer is not None and self.error is None


@dataclass
class BatchReport:
    """Per-item outcome of a batch submission. Partial success is normal."""

    results: List[BatchItemResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.succeeded)

    @property
    def failures(self) -> List[BatchItemResult]:
        return [r for r in self.results if not r.succeeded]


@dataclass
class BalanceSnapshot:
    """Available base-unit balance per currency at one point in time."""

    balances: Dict[str, int] = field(default_factory=dict)

    def available(self, currency: str) -> int:
        return self.balances.get(currency.upper(), 0)


@dataclass
class WalletBalance:
    wallet_id: str
    network: str
    is_default: bool
    balances: Dict[str, int] = field(default_factory=dict)


@dataclass
class Wallet:
    """A custodial wallet as listed by the backend."""

    id: str
    network: str
    wallet_address: str
    wallet_type: str = ""
    is_default: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Wallet":
        return cls(
            id=str(data.get("id") or data.get("walletId") or ""),
            network=str(data.get("network") or ""),
            wallet_address=str(data.get("walletAddress") or ""),
            wallet_type=str(data.get("walletType") or ""),
            is_default=bool(data.get("isDefault")),
        )

    @property
    def short_address(self) -> str:
        if len(self.wallet_address) <= 12:
            return self.wallet_address
        return f"{self.wallet_address[:8]}...{self.wallet_address[-4:]}"


@dataclass
class TokenBalance:
    """Balance of one token on one chain, in the token's base units."""

    symbol: str
    amount_base: int
    decimals: int
    address: str = ""


@dataclass
class TransferPage:
    page: int
    limit: int
    count: int
    has_more: bool
    transfers: List[Transfer] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TransferPage":
        return cls(
            page=int(data.get("page") or 1),
            limit=int(data.get("limit") or 0),
            count=int(data.get("count") or 0),
            has_more=bool(data.get("hasMore")),
            transfers=[Transfer.from_api(t) for t in data.get("data") or []],
        )
