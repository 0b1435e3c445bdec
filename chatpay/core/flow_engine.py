"""
Transfer conversation engine.

Drives the per-user state machine for send, withdraw, offramp and batch
flows. Each inbound text is validated against the user's current step:

- valid input is stored and the flow advances one step (or executes at
  the confirm step)
- invalid input re-prompts the same step, leaving the stored state as is
- ``cancel`` at any step discards the flow without touching the backend
- any other failure aborts the flow and clears its state

Every call returns exactly one reply for the user.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from chatpay.core.errors import (
    BackendValidationError,
    BalanceUnavailableError,
    ChatPayError,
    ComplianceError,
    InsufficientBalanceError,
    QuoteError,
    SessionError,
    TransportError,
    UserInputError,
)
from chatpay.core.flow_store import FlowStore
from chatpay.core.flows import (
    BatchFlow,
    FlowKind,
    FlowState,
    OfframpFlow,
    SendFlow,
    WithdrawFlow,
    new_flow,
)
from chatpay.core.formatters import (
    format_batch_report,
    format_field_errors,
    format_quote,
    format_transfer_receipt,
)
from chatpay.core.models import BatchItem, CustomerData
from chatpay.core.units import UnitConverter, format_decimal
from chatpay.core.validators import (
    parse_amount,
    parse_country,
    parse_currency,
    parse_destination,
    parse_email,
    parse_name,
    parse_wallet_address,
    parse_wallet_id,
)
from chatpay.services.balance_service import BalanceService
from chatpay.services.quote_service import QuoteService
from chatpay.services.session_service import SessionManager
from chatpay.services.transfer_service import TransferService

logger = logging.getLogger(__name__)

CONFIRM = "confirm"
CANCEL = "cancel"
ACCEPT = "accept"
DONE = "done"

FLOW_LABELS = {
    FlowKind.SEND: "Transfer",
    FlowKind.WITHDRAW: "Withdrawal",
    FlowKind.OFFRAMP: "Offramp",
    FlowKind.BATCH: "Batch transfer",
}

LOGIN_REQUIRED = "🔒 Please log in first: /token <access_token>"
GENERIC_FAILURE = "❌ An error occurred. Please try again."
CONFIRM_HINT = "Reply 'confirm' to proceed or 'cancel' to abort."


@dataclass
class FlowReply:
    """One outbound message: text plus optional keyboard rows of choices."""

    text: str
    choices: Optional[List[List[str]]] = None
    finished: bool = False


class FlowEngine:
    """
    Per-user transfer conversation state machine.

    Holds no per-user data itself; all flow state lives in the shared
    FlowStore. Messages for one user are handled one at a time under the
    store's per-user lock.
    """

    def __init__(
        self,
        store: FlowStore,
        converter: UnitConverter,
        session_manager: SessionManager,
        balance_service: BalanceService,
        quote_service: QuoteService,
        transfer_service: TransferService,
        max_batch_recipients: int = 20,
        kyc_url: str = ""
    ):
        self.store = store
        self.converter = converter
        self.session_manager = session_manager
        self.balance_service = balance_service
        self.quote_service = quote_service
        self.transfer_service = transfer_service
        self.max_batch_recipients = max_batch_recipients
        self.kyc_url = kyc_url

        self._handlers: Dict[str, Callable[[FlowState, str], Awaitable[FlowReply]]] = {
            "currency": self._on_currency,
            "batch_currency": self._on_currency,
            "amount": self._on_amount,
            "batch_amount": self._on_amount,
            "destination": self._on_destination,
            "wallet": self._on_wallet,
            "quote": self._on_quote,
            "wallet_id": self._on_wallet_id,
            "customer_name": self._on_customer_name,
            "business_name": self._on_business_name,
            "email": self._on_email,
            "country": self._on_country,
            "batch_recipients": self._on_batch_recipient,
            "confirm": self._on_confirm,
            "batch_confirm": self._on_confirm,
        }

    def has_active_flow(self, user_id: int) -> bool:
        return self.store.get(user_id) is not None

    async def start(self, user_id: int, kind: FlowKind) -> FlowReply:
        """
        Start a new flow, replacing any flow the user already has.

        Requires a session; without one no state is created.
        """
        async with self.store.lock(user_id):
            if self.session_manager.get_token(user_id) is None:
                return FlowReply(LOGIN_REQUIRED, finished=True)

            previous = self.store.get(user_id)
            state = new_flow(kind, user_id)
            self.store.set(user_id, state)
            logger.info(f"User {user_id} started {state.kind.value} flow")

            reply = await self._prompt(state)
            if previous is not None:
                reply.text = (
                    f"ℹ️ Your unfinished {FLOW_LABELS[previous.kind].lower()} was dropped.\n\n"
                    f"{reply.text}"
                )
            return reply

    async def cancel(self, user_id: int) -> FlowReply:
        async with self.store.lock(user_id):
            return self._cancel(user_id)

    async def handle_text(self, user_id: int, text: str) -> Optional[FlowReply]:
        """
        Feed one inbound text to the user's active flow.

        Returns:
            The reply to send, or None when the user has no active flow
        """
        async with self.store.lock(user_id):
            state = self.store.get(user_id)
            if state is None:
                return None

            text = (text or "").strip()
            if text.lower() == CANCEL:
                return self._cancel(user_id)

            return await self._run_step(state, text)

    def _cancel(self, user_id: int) -> FlowReply:
        state = self.store.get(user_id)
        if state is None:
            return FlowReply("No active transfer to cancel.", finished=True)
        self.store.clear(user_id)
        logger.info(f"User {user_id} cancelled {state.kind.value} flow at {state.step.value}")
        return FlowReply(f"🚫 {FLOW_LABELS[state.kind]} cancelled.", finished=True)

    async def _run_step(self, state: FlowState, text: str) -> FlowReply:
        user_id = state.user_id
        step = state.step.value
        try:
            state.check_invariants()
            handler = self._handlers[step]
            return await handler(state, text)
        except UserInputError as e:
            logger.debug(f"User {user_id} invalid input at {state.kind.value}/{step}: {e.message}")
            problem = e.message
        except ChatPayError as e:
            self.store.clear(user_id)
            if isinstance(e, SessionError):
                self.session_manager.clear(user_id)
            logger.warning(
                f"{state.kind.value} flow aborted at {step}: {type(e).__name__}: {e.message}",
                extra={"user_id": user_id}
            )
            return FlowReply(self._error_text(e), finished=True)
        except Exception as e:
            self.store.clear(user_id)
            logger.error(f"Error in {state.kind.value} flow at {step}: {e}", exc_info=True)
            return FlowReply(GENERIC_FAILURE, finished=True)

        return await self._reprompt(user_id, problem)

    async def _reprompt(self, user_id: int, problem: str) -> FlowReply:
        """Repeat the stored step's prompt, prefixed with what was wrong."""
        stored = self.store.get(user_id)
        if stored is None:
            return FlowReply(problem, finished=True)
        try:
            prompt = await self._prompt(stored)
        except Exception as e:
            self.store.clear(user_id)
            logger.error(f"Failed to re-prompt {stored.kind.value}/{stored.step.value}: {e}", exc_info=True)
            return FlowReply(GENERIC_FAILURE, finished=True)
        return FlowReply(f"{problem}\n\n{prompt.text}", choices=prompt.choices)

    async def _advance(self, state: FlowState) -> FlowReply:
        state.advance()
        self.store.set(state.user_id, state)
        return await self._prompt(state)

    def _require_token(self, user_id: int) -> str:
        token = self.session_manager.get_token(user_id)
        if not token:
            raise SessionError("No access token")
        return token

    # Step handlers

    async def _on_currency(self, state, text: str) -> FlowReply:
        state.currency = parse_currency(text, self.converter)
        return await self._advance(state)

    async def _on_amount(self, state, text: str) -> FlowReply:
        amount = parse_amount(text, state.currency, self.converter)
        state.amount = format_decimal(amount)
        if isinstance(state, OfframpFlow):
            token = self._require_token(state.user_id)
            state.quote = await self.quote_service.request_quote(token, amount, state.currency)
        return await self._advance(state)

    async def _on_destination(self, state: SendFlow, text: str) -> FlowReply:
        state.destination, _ = parse_destination(text)
        return await self._advance(state)

    async def _on_wallet(self, state: WithdrawFlow, text: str) -> FlowReply:
        state.wallet_address = parse_wallet_address(text)
        return await self._advance(state)

    async def _on_quote(self, state: OfframpFlow, text: str) -> FlowReply:
        if text.lower() != ACCEPT:
            raise UserInputError("Reply 'accept' to continue with this quote or 'cancel' to abort.")
        return await self._advance(state)

    async def _on_wallet_id(self, state: OfframpFlow, text: str) -> FlowReply:
        state.wallet_id = parse_wallet_id(text)
        return await self._advance(state)

    async def _on_customer_name(self, state: OfframpFlow, text: str) -> FlowReply:
        state.customer_name = parse_name(text, "Name")
        return await self._advance(state)

    async def _on_business_name(self, state: OfframpFlow, text: str) -> FlowReply:
        state.business_name = parse_name(text, "Business name")
        return await self._advance(state)

    async def _on_email(self, state: OfframpFlow, text: str) -> FlowReply:
        state.email = parse_email(text)
        return await self._advance(state)

    async def _on_country(self, state: OfframpFlow, text: str) -> FlowReply:
        state.country = parse_country(text)
        return await self._advance(state)

    async def _on_batch_recipient(self, state: BatchFlow, text: str) -> FlowReply:
        if text.lower() == DONE:
            if not state.recipients:
                raise UserInputError("❌ Add at least one recipient before sending 'done'.")
            return await self._advance(state)

        parts = text.split()
        if not parts or len(parts) > 2:
            raise UserInputError("❌ Format: <email or wallet> [amount]")

        destination, _ = parse_destination(parts[0])
        if len(parts) == 2:
            amount = format_decimal(parse_amount(parts[1], state.currency, self.converter))
        else:
            amount = state.amount

        if state.has_recipient(destination):
            raise UserInputError(f"❌ {destination} is already in this batch.")
        if len(state.recipients) >= self.max_batch_recipients:
            raise UserInputError(
                f"❌ A batch holds at most {self.max_batch_recipients} recipients. Send 'done' to review."
            )

        state.recipients.append(BatchItem(destination=destination, amount_display=amount, currency=state.currency))
        self.store.set(state.user_id, state)
        return FlowReply(
            f"✅ Added {destination} ({amount} {state.currency}). "
            f"{len(state.recipients)} recipient(s) so far.\n\n"
            f"Send another recipient or 'done' to review.",
            choices=[[DONE, CANCEL]],
        )

    async def _on_confirm(self, state: FlowState, text: str) -> FlowReply:
        if text.lower() != CONFIRM:
            raise UserInputError(CONFIRM_HINT)

        token = self._require_token(state.user_id)

        if isinstance(state, OfframpFlow) and self.quote_service.needs_requote(state.quote):
            logger.info(f"Quote for user {state.user_id} expired, requesting a new one")
            state.quote = await self.quote_service.request_quote(
                token, Decimal(state.amount), state.currency
            )
            self.store.set(state.user_id, state)
            prompt = await self._prompt(state)
            return FlowReply(
                f"⏰ Your quote expired, here is a fresh one.\n\n{prompt.text}",
                choices=prompt.choices,
            )

        reply = await self._execute(state, token)
        self.store.clear(state.user_id)
        logger.info(f"User {state.user_id} completed {state.kind.value} flow")
        return reply

    async def _execute(self, state: FlowState, token: str) -> FlowReply:
        if isinstance(state, SendFlow):
            transfer = await self.transfer_service.send(
                token, state.destination, Decimal(state.amount), state.currency
            )
            text = format_transfer_receipt(transfer, self.converter, title="Transfer Sent")
        elif isinstance(state, WithdrawFlow):
            transfer = await self.transfer_service.withdraw(
                token, state.wallet_address, Decimal(state.amount), state.currency
            )
            text = format_transfer_receipt(transfer, self.converter, title="Withdrawal Initiated")
        elif isinstance(state, OfframpFlow):
            customer = CustomerData(
                name=state.customer_name,
                business_name=state.business_name,
                email=state.email,
                country=state.country,
            )
            transfer = await self.transfer_service.offramp(token, state.quote, state.wallet_id, customer)
            text = format_transfer_receipt(transfer, self.converter, title="Offramp Transfer Initiated")
        elif isinstance(state, BatchFlow):
            report = await self.transfer_service.send_batch(token, state.recipients)
            text = format_batch_report(report, self.converter)
        else:
            raise TypeError(f"Unknown flow type: {type(state).__name__}")
        return FlowReply(text, finished=True)

    # Prompts

    async def _prompt(self, state: FlowState) -> FlowReply:
        step = state.step.value
        label = FLOW_LABELS[state.kind]
        cancel_row = [CANCEL]

        if step in ("currency", "batch_currency"):
            rows = [[code] for code in self.converter.supported_currencies]
            return FlowReply(f"💱 {label}: select a currency.", choices=rows + [cancel_row])

        if step == "amount":
            return FlowReply(f"💵 Enter the amount in {state.currency}:", choices=[cancel_row])

        if step == "batch_amount":
            return FlowReply(
                f"💵 Enter the default amount in {state.currency} for each recipient:",
                choices=[cancel_row],
            )

        if step == "destination":
            return FlowReply("📧 Enter the recipient's email or wallet address:", choices=[cancel_row])

        if step == "wallet":
            return FlowReply(
                "👛 Enter the destination wallet address (0x followed by 40 hex characters):",
                choices=[cancel_row],
            )

        if step == "quote":
            return FlowReply(
                f"{format_quote(state.quote, self.converter)}\n\n"
                f"Reply 'accept' to continue or 'cancel' to abort.",
                choices=[[ACCEPT, CANCEL]],
            )

        if step == "wallet_id":
            rows = await self._wallet_choices(state.user_id)
            return FlowReply("🏦 Enter the ID of the wallet to pay out from:", choices=rows + [cancel_row])

        if step == "customer_name":
            return FlowReply("👤 Enter the customer's full name:", choices=[cancel_row])

        if step == "business_name":
            return FlowReply("🏢 Enter the business name:", choices=[cancel_row])

        if step == "email":
            return FlowReply("📧 Enter the customer's email:", choices=[cancel_row])

        if step == "country":
            return FlowReply("🌍 Enter the customer's country (3-letter code, e.g. USA):", choices=[cancel_row])

        if step == "batch_recipients":
            return FlowReply(
                f"👥 Send recipients one per message: <email or wallet> [amount].\n"
                f"Default amount: {state.amount} {state.currency}.\n"
                f"Send 'done' when finished.",
                choices=[[DONE, CANCEL]],
            )

        if step in ("confirm", "batch_confirm"):
            return FlowReply(f"{self._preview(state)}\n\n{CONFIRM_HINT}", choices=[[CONFIRM, CANCEL]])

        raise ValueError(f"No prompt for step {step}")

    async def _wallet_choices(self, user_id: int) -> List[List[str]]:
        token = self._require_token(user_id)
        try:
            wallets = await self.balance_service.get_wallet_balances(token)
        except BalanceUnavailableError as e:
            logger.warning(f"Could not list wallets for user {user_id}: {e}")
            return []
        return [[w.wallet_id] for w in wallets if w.wallet_id]

    def _preview(self, state: FlowState) -> str:
        if isinstance(state, SendFlow):
            return (
                "🔍 Transfer Preview\n\n"
                f"Amount: {state.amount} {state.currency}\n"
                f"To: {state.destination}"
            )
        if isinstance(state, WithdrawFlow):
            return (
                "🔍 Withdrawal Preview\n\n"
                f"Amount: {state.amount} {state.currency}\n"
                f"To wallet: {state.wallet_address}"
            )
        if isinstance(state, OfframpFlow):
            return (
                f"{format_quote(state.quote, self.converter)}\n\n"
                f"Wallet: {state.wallet_id}\n"
                f"Customer: {state.customer_name}\n"
                f"Business: {state.business_name}\n"
                f"Email: {state.email}\n"
                f"Country: {state.country}"
            )
        if isinstance(state, BatchFlow):
            total = sum(
                int(self.converter.to_base_unit(item.amount_display, item.currency))
                for item in state.recipients
            )
            lines = ["🔍 Batch Preview", ""]
            lines.extend(
                f"{i}. {item.amount_display} {item.currency} → {item.destination}"
                for i, item in enumerate(state.recipients, start=1)
            )
            lines.extend(["", f"Total: {self.converter.format_display(total, state.currency)}"])
            return "\n".join(lines)
        raise TypeError(f"Unknown flow type: {type(state).__name__}")

    # Errors

    def _error_text(self, error: ChatPayError) -> str:
        if isinstance(error, SessionError):
            return "🔒 Your session has expired. Please log in again with /token <access_token>, then restart the transfer."
        if isinstance(error, InsufficientBalanceError):
            return (
                "❌ Insufficient balance.\n\n"
                f"Required: {format_decimal(error.required)} {error.currency}\n"
                f"Available: {format_decimal(error.available)} {error.currency}\n\n"
                "Top up your wallet and try again."
            )
        if isinstance(error, BalanceUnavailableError):
            return "⚠️ Could not verify your balance right now, so nothing was sent. Please try again later."
        if isinstance(error, ComplianceError):
            where = f" at {self.kyc_url}" if self.kyc_url else ""
            return (
                "🏢 Your business verification (KYB) is not approved yet.\n\n"
                f"Complete verification{where}, then try the offramp again."
            )
        if isinstance(error, BackendValidationError):
            return format_field_errors(error.field_errors)
        if isinstance(error, QuoteError):
            return f"❌ Could not get a valid quote: {error.message}\n\nStart again with /offramp."
        if isinstance(error, TransportError):
            details = (error.detail or error.message or "unknown error")[:300]
            return f"❌ Transfer failed. Please try again.\n\nDetails: {details}"
        return GENERIC_FAILURE
