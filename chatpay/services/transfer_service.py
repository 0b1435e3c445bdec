"""
Transfer execution service.

Turns fully collected flow parameters into backend requests: converts
display amounts to base units, re-checks balances, calls the backend and
returns parsed results. Batch submissions report per item; partial success
is a normal outcome.
"""

import logging
import uuid
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from chatpay.core.api_client import PaymentsApiClient
from chatpay.core.errors import TransportError
from chatpay.core.models import (
    BatchItem,
    BatchItemResult,
    BatchReport,
    CustomerData,
    Quote,
    Transfer,
    TransferPage,
    TransferRequest,
)
from chatpay.core.units import UnitConverter
from chatpay.services.balance_service import BalanceService

logger = logging.getLogger(__name__)


def _default_request_id(index: int) -> str:
    return f"batch-{uuid.uuid4().hex[:12]}-{index}"


class TransferService:
    """Service for executing transfers against the backend."""

    def __init__(
        self,
        api_client: PaymentsApiClient,
        converter: UnitConverter,
        balance_service: BalanceService,
        purpose_code: str = "self",
        source_of_funds: str = "salary",
        recipient_relationship: str = "self",
        request_id_factory: Optional[Callable[[int], str]] = None
    ):
        """
        Initialize transfer service.

        Args:
            api_client: Backend API client
            converter: Unit converter
            balance_service: Balance verifier consulted before every execution
            purpose_code: Purpose code attached to every transfer
            source_of_funds: Source-of-funds tag for offramps
            recipient_relationship: Recipient relationship tag for offramps
            request_id_factory: Builds batch request ids from the item index
        """
        self.api_client = api_client
        self.converter = converter
        self.balance_service = balance_service
        self.purpose_code = purpose_code
        self.source_of_funds = source_of_funds
        self.recipient_relationship = recipient_relationship
        self._request_id = request_id_factory or _default_request_id

    def build_request(self, destination: str, amount: Decimal, currency: str) -> TransferRequest:
        """Build a base-unit TransferRequest for an email or wallet destination."""
        amount_base = self.converter.to_base_unit(amount, currency)
        if "@" in destination:
            return TransferRequest(
                amount=amount_base, currency=currency, purpose_code=self.purpose_code, email=destination
            )
        return TransferRequest(
            amount=amount_base, currency=currency, purpose_code=self.purpose_code, wallet_address=destination
        )

    async def send(self, access_token: str, destination: str, amount: Decimal, currency: str) -> Transfer:
        """
        Send funds to an email or wallet address.

        Raises:
            InsufficientBalanceError / BalanceUnavailableError: Balance check failed
            BackendValidationError, ComplianceError, TransportError: Backend rejected the call
        """
        request = self.build_request(destination, amount, currency)
        await self.balance_service.verify(access_token, {request.currency: int(request.amount)})

        logger.info(f"Sending {request.amount} base units of {request.currency}")
        data = await self.api_client.send_transfer(access_token, request.to_payload())
        return self._parse_transfer(data)

    async def withdraw(self, access_token: str, wallet_address: str, amount: Decimal, currency: str) -> Transfer:
        """Withdraw funds to an external wallet."""
        request = self.build_request(wallet_address, amount, currency)
        await self.balance_service.verify(access_token, {request.currency: int(request.amount)})

        logger.info(f"Withdrawing {request.amount} base units of {request.currency}")
        data = await self.api_client.withdraw_to_wallet(access_token, request.to_payload())
        return self._parse_transfer(data)

    async def offramp(
        self,
        access_token: str,
        quote: Quote,
        wallet_id: str,
        customer: CustomerData
    ) -> Transfer:
        """
        Create a bank offramp from a held quote.

        The quote payload and signature are forwarded exactly as received.
        """
        await self.balance_service.verify(access_token, {quote.currency: int(quote.amount_base)})

        payload = {
            "purposeCode": self.purpose_code,
            "sourceOfFunds": self.source_of_funds,
            "recipientRelationship": self.recipient_relationship,
            "quotePayload": quote.payload,
            "quoteSignature": quote.signature,
            "preferredWalletId": wallet_id,
            "customerData": customer.to_payload(),
        }
        logger.info(f"Creating offramp of {quote.amount_base} base units of {quote.currency}")
        data = await self.api_client.create_offramp(access_token, payload)
        return self._parse_transfer(data)

    async def send_batch(self, access_token: str, items: List[BatchItem]) -> BatchReport:
        """
        Send a batch of transfers.

        The combined total per currency must be covered before anything is
        submitted. After submission each item succeeds or fails on its own.
        """
        if not items:
            raise ValueError("Batch has no items")

        requests: Dict[str, TransferRequest] = {}
        ordered: List[tuple] = []
        for index, item in enumerate(items):
            request_id = self._request_id(index)
            request = self.build_request(item.destination, Decimal(item.amount_display), item.currency)
            requests[request_id] = request
            ordered.append((request_id, item))

        required = BalanceService.required_totals(
            (r.currency, r.amount) for r in requests.values()
        )
        await self.balance_service.verify(access_token, required)

        logger.info(f"Submitting batch of {len(items)} transfer(s)")
        data = await self.api_client.send_batch(
            access_token,
            [{"requestId": rid, "request": req.to_payload()} for rid, req in requests.items()],
        )

        responses = (data or {}).get("responses")
        if not isinstance(responses, list):
            raise TransportError("Batch response has no responses list", detail=str(data)[:200])
        by_id = {str(r.get("requestId")): r for r in responses if isinstance(r, dict)}

        report = BatchReport()
        for request_id, item in ordered:
            entry = by_id.get(request_id)
            report.results.append(self._batch_result(request_id, item, entry))

        logger.info(f"Batch finished: {report.success_count} succeeded, {report.failed_count} failed")
        return report

    async def list_transfers(self, access_token: str, page: int = 1, limit: int = 5) -> TransferPage:
        data = await self.api_client.list_transfers(
            access_token, page=page, limit=limit, types=["send", "receive", "withdraw"]
        )
        return TransferPage.from_api(data or {})

    def _batch_result(self, request_id: str, item: BatchItem, entry: Optional[dict]) -> BatchItemResult:
        if entry is None:
            return BatchItemResult(request_id=request_id, item=item, error="No response from backend")

        error = entry.get("error")
        if error:
            if isinstance(error, dict):
                reason = error.get("message") or error.get("error") or str(error)
            else:
                reason = str(error)
            return BatchItemResult(request_id=request_id, item=item, error=str(reason))

        response = entry.get("response")
        if not isinstance(response, dict):
            return BatchItemResult(request_id=request_id, item=item, error="Empty response from backend")
        return BatchItemResult(request_id=request_id, item=item, transfer=Transfer.from_api(response))

    @staticmethod
    def _parse_transfer(data) -> Transfer:
        if not isinstance(data, dict):
            raise TransportError("Unexpected transfer response", detail=str(data)[:200])
        return Transfer.from_api(data)
