"""Tests for the transfer conversation engine."""

import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chatpay.core.errors import BackendValidationError, SessionError, TransportError
from chatpay.core.flow_engine import LOGIN_REQUIRED, FlowEngine
from chatpay.core.flow_store import FlowStore
from chatpay.core.flows import BatchStep, FlowKind, OfframpStep, SendStep
from chatpay.core.units import UnitConverter
from chatpay.services.balance_service import BalanceService
from chatpay.services.quote_service import QuoteService
from chatpay.services.session_service import SessionManager
from chatpay.services.transfer_service import TransferService

USER = 42
WALLET = "0x1111111111111111111111111111111111111111"
WALLET_2 = "0x2222222222222222222222222222222222222222"
NOW = datetime(2026, 1, 1, 0, 10, tzinfo=timezone.utc)

MUTATIONS = ("send_transfer", "withdraw_to_wallet", "create_offramp", "send_batch")


def wallet_balances(usdc_base: str, usdt_base: str = "100000000"):
    return [
        {
            "walletId": "wallet-main",
            "network": "solana",
            "isDefault": True,
            "balances": [
                {"symbol": "USDC", "balance": usdc_base},
                {"symbol": "USDT", "balance": usdt_base},
            ],
        }
    ]


def transfer_response(transfer_id="tr_1", amount="10000000000", currency="USDC"):
    return {
        "id": transfer_id,
        "status": "pending",
        "type": "send",
        "amount": amount,
        "currency": currency,
        "totalFee": "0",
        "sourceAccount": {"walletAddress": "0xsource"},
        "destinationAccount": {"walletAddress": WALLET},
    }


class FakeApiClient:
    def __init__(self, balances=None, quotes=None, batch_failures=None):
        self.balances = balances if balances is not None else wallet_balances("100000000000")
        self.quotes = list(quotes or [])
        self.batch_failures = batch_failures or {}
        self.fail_with = None
        self.calls = []

    def mutation_calls(self):
        return [c for c in self.calls if c[0] in MUTATIONS]

    async def get_balances(self, access_token):
        self.calls.append(("get_balances", None))
        return self.balances

    async def request_offramp_quote(self, access_token, payload):
        self.calls.append(("request_offramp_quote", payload))
        return self.quotes.pop(0)

    async def send_transfer(self, access_token, payload):
        self.calls.append(("send_transfer", payload))
        if self.fail_with:
            raise self.fail_with
        return transfer_response(amount=payload["amount"], currency=payload["currency"])

    async def withdraw_to_wallet(self, access_token, payload):
        self.calls.append(("withdraw_to_wallet", payload))
        return transfer_response(amount=payload["amount"], currency=payload["currency"])

    async def create_offramp(self, access_token, payload):
        self.calls.append(("create_offramp", payload))
        return transfer_response(transfer_id="off_1")

    async def send_batch(self, access_token, requests):
        self.calls.append(("send_batch", requests))
        responses = []
        for index, entry in enumerate(requests):
            if index in self.batch_failures:
                responses.append({
                    "requestId": entry["requestId"],
                    "error": {"message": self.batch_failures[index]},
                })
            else:
                responses.append({
                    "requestId": entry["requestId"],
                    "response": transfer_response(transfer_id=f"tr_{index}"),
                })
        return {"responses": responses}


def quote_response(expires_at="2026-01-01T01:00:00Z", payload="payload-1", signature="sig-1"):
    data = {
        "amount": "50000000000",
        "currency": "USDC",
        "toAmount": "49.5",
        "toCurrency": "USD",
        "rate": "0.99",
        "fee": {"amount": "500000000", "currency": "USDC"},
        "expiresAt": expires_at,
    }
    if payload is not None:
        data["quotePayload"] = payload
    if signature is not None:
        data["quoteSignature"] = signature
    return data


class FlowEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.api = FakeApiClient()
        self.clock_now = NOW
        self.engine = self._build_engine(self.api)
        self.session_manager.set_token(USER, "token-abc")

    def _build_engine(self, api, max_batch_recipients=20, store=None):
        converter = UnitConverter({"USDC": 9, "USDT": 6})
        self.session_manager = SessionManager()
        self.store = store if store is not None else FlowStore()
        balance_service = BalanceService(api, converter)
        quote_service = QuoteService(api, converter, clock=lambda: self.clock_now)
        transfer_service = TransferService(
            api,
            converter,
            balance_service,
            request_id_factory=lambda index: f"req-{index}",
        )
        return FlowEngine(
            store=self.store,
            converter=converter,
            session_manager=self.session_manager,
            balance_service=balance_service,
            quote_service=quote_service,
            transfer_service=transfer_service,
            max_batch_recipients=max_batch_recipients,
            kyc_url="https://kyc.example.com",
        )

    async def _feed(self, *texts):
        reply = None
        for text in texts:
            reply = await self.engine.handle_text(USER, text)
        return reply

    async def test_send_converts_display_amount_to_base_units(self):
        await self.engine.start(USER, FlowKind.SEND)
        reply = await self._feed("USDC", "10", WALLET, "confirm")

        sends = [c for c in self.api.calls if c[0] == "send_transfer"]
        self.assertEqual(1, len(sends))
        payload = sends[0][1]
        self.assertEqual("10000000000", payload["amount"])
        self.assertEqual("USDC", payload["currency"])
        self.assertEqual(WALLET, payload["walletAddress"])
        self.assertNotIn("email", payload)
        self.assertTrue(reply.finished)
        self.assertIn("Transfer Sent", reply.text)
        self.assertIsNone(self.store.get(USER))

    async def test_send_to_email_uses_email_field(self):
        await self.engine.start(USER, FlowKind.SEND)
        await self._feed("usdt", "2.5", "alice@example.com", "CONFIRM")

        payload = self.api.mutation_calls()[0][1]
        self.assertEqual("2500000", payload["amount"])
        self.assertEqual("alice@example.com", payload["email"])
        self.assertNotIn("walletAddress", payload)

    async def test_start_without_session_creates_no_state(self):
        self.session_manager.clear(USER)

        reply = await self.engine.start(USER, FlowKind.SEND)

        self.assertEqual(LOGIN_REQUIRED, reply.text)
        self.assertIsNone(self.store.get(USER))
        self.assertIsNone(await self.engine.handle_text(USER, "USDC"))

    async def test_text_without_flow_returns_none(self):
        self.assertIsNone(await self.engine.handle_text(USER, "hello"))

    async def test_invalid_input_reprompts_same_step(self):
        await self.engine.start(USER, FlowKind.SEND)
        await self._feed("USDC")

        for bad in ("abc", "-5", "0", "1.0000000001"):
            reply = await self._feed(bad)
            self.assertFalse(reply.finished)
            self.assertEqual(SendStep.AMOUNT, self.store.get(USER).step)
            self.assertIsNone(self.store.get(USER).amount)

        await self._feed("10")
        reply = await self._feed("not-a-wallet")
        self.assertIn("Invalid", reply.text)
        self.assertEqual(SendStep.DESTINATION, self.store.get(USER).step)

    async def test_amount_beyond_default_decimal_precision_converts_exactly(self):
        self.api.balances = wallet_balances("1" + "0" * 30)
        await self.engine.start(USER, FlowKind.SEND)

        reply = await self._feed("USDC", "100000000000000000000", WALLET, "confirm")

        payload = self.api.mutation_calls()[0][1]
        self.assertEqual("1" + "0" * 29, payload["amount"])
        self.assertTrue(reply.finished)
        self.assertIn("Amount: 100000000000000000000 USDC", reply.text)
        self.assertIsNone(self.store.get(USER))

    async def test_oversized_amount_reprompts(self):
        await self.engine.start(USER, FlowKind.SEND)
        await self._feed("USDC")

        for huge in ("1" + "0" * 30, "1e40"):
            reply = await self._feed(huge)
            self.assertFalse(reply.finished)
            self.assertIn("Amount is too large", reply.text)
            self.assertEqual(SendStep.AMOUNT, self.store.get(USER).step)

        self.assertEqual([], self.api.mutation_calls())

    async def test_unsupported_currency_reprompts(self):
        await self.engine.start(USER, FlowKind.SEND)

        reply = await self._feed("DOGE")

        self.assertIn("Unsupported currency", reply.text)
        self.assertEqual(SendStep.CURRENCY, self.store.get(USER).step)

    async def test_steps_only_move_forward(self):
        await self.engine.start(USER, FlowKind.SEND)
        seen = [self.store.get(USER).step_index]
        for text in ("USDC", "oops", "10", WALLET, "maybe"):
            await self._feed(text)
            seen.append(self.store.get(USER).step_index)

        self.assertEqual(seen, sorted(seen))
        self.assertEqual(SendStep.CONFIRM, self.store.get(USER).step)

    async def test_cancel_at_any_step_makes_no_mutation_calls(self):
        inputs = ["USDC", "10", WALLET]
        for depth in range(len(inputs) + 1):
            api = FakeApiClient()
            self.engine = self._build_engine(api)
            self.session_manager.set_token(USER, "token-abc")

            await self.engine.start(USER, FlowKind.SEND)
            await self._feed(*inputs[:depth])
            reply = await self._feed("cancel")

            self.assertTrue(reply.finished)
            self.assertIn("cancelled", reply.text)
            self.assertIsNone(self.store.get(USER))
            self.assertEqual([], api.mutation_calls())

    async def test_cancel_in_offramp_after_quote_makes_no_mutation_calls(self):
        self.api.quotes = [quote_response()]
        await self.engine.start(USER, FlowKind.OFFRAMP)
        await self._feed("USDC", "50", "accept", "wallet-main", "Jane Doe")

        reply = await self.engine.cancel(USER)

        self.assertTrue(reply.finished)
        self.assertEqual([], self.api.mutation_calls())
        self.assertIsNone(self.store.get(USER))

    async def test_cancel_without_flow(self):
        reply = await self.engine.cancel(USER)
        self.assertIn("No active transfer", reply.text)

    async def test_starting_new_flow_replaces_previous(self):
        await self.engine.start(USER, FlowKind.SEND)
        await self._feed("USDC", "10")

        reply = await self.engine.start(USER, FlowKind.WITHDRAW)

        self.assertIn("dropped", reply.text)
        state = self.store.get(USER)
        self.assertEqual(FlowKind.WITHDRAW, state.kind)
        self.assertIsNone(state.amount)

    async def test_withdraw_flow_executes_once(self):
        await self.engine.start(USER, FlowKind.WITHDRAW)
        reply = await self._feed("USDT", "3", WALLET, "confirm")

        calls = self.api.mutation_calls()
        self.assertEqual([("withdraw_to_wallet", {
            "amount": "3000000",
            "currency": "USDT",
            "purposeCode": "self",
            "walletAddress": WALLET,
        })], calls)
        self.assertIn("Withdrawal Initiated", reply.text)

    async def test_withdraw_rejects_email_destination(self):
        await self.engine.start(USER, FlowKind.WITHDRAW)
        reply = await self._feed("USDC", "1", "bob@example.com")

        self.assertFalse(reply.finished)
        self.assertIn("Invalid wallet address", reply.text)

    async def test_insufficient_balance_blocks_send(self):
        self.api.balances = wallet_balances("5000000000")
        await self.engine.start(USER, FlowKind.SEND)

        reply = await self._feed("USDC", "10", WALLET, "confirm")

        self.assertEqual([], self.api.mutation_calls())
        self.assertTrue(reply.finished)
        self.assertIn("Insufficient balance", reply.text)
        self.assertIn("Required: 10 USDC", reply.text)
        self.assertIn("Available: 5 USDC", reply.text)
        self.assertIsNone(self.store.get(USER))

    async def test_unavailable_balance_fails_closed(self):
        class BrokenBalances(FakeApiClient):
            async def get_balances(self, access_token):
                raise TransportError("Backend unavailable")

        api = BrokenBalances()
        self.engine = self._build_engine(api)
        self.session_manager.set_token(USER, "token-abc")

        await self.engine.start(USER, FlowKind.SEND)
        reply = await self._feed("USDC", "1", WALLET, "confirm")

        self.assertEqual([], api.mutation_calls())
        self.assertIn("Could not verify your balance", reply.text)

    async def test_backend_validation_errors_are_listed(self):
        self.api.fail_with = BackendValidationError({"email": ["email must be an email"]})
        await self.engine.start(USER, FlowKind.SEND)

        reply = await self._feed("USDC", "1", "alice@example.com", "confirm")

        self.assertTrue(reply.finished)
        self.assertIn("email: email must be an email", reply.text)
        self.assertIsNone(self.store.get(USER))

    async def test_transport_error_shows_truncated_detail(self):
        self.api.fail_with = TransportError("Backend error 500", status_code=500, detail="x" * 1000)
        await self.engine.start(USER, FlowKind.SEND)

        reply = await self._feed("USDC", "1", WALLET, "confirm")

        self.assertIn("Transfer failed", reply.text)
        self.assertIn("x" * 300, reply.text)
        self.assertNotIn("x" * 301, reply.text)

    async def test_session_lost_before_confirm(self):
        await self.engine.start(USER, FlowKind.SEND)
        await self._feed("USDC", "1", WALLET)
        self.session_manager.clear(USER)

        reply = await self._feed("confirm")

        self.assertIn("session has expired", reply.text)
        self.assertEqual([], self.api.mutation_calls())

    async def test_rejected_token_at_execution_ends_session(self):
        self.api.fail_with = SessionError("Access token rejected")
        await self.engine.start(USER, FlowKind.SEND)

        reply = await self._feed("USDC", "1", WALLET, "confirm")

        self.assertTrue(reply.finished)
        self.assertIn("session has expired", reply.text)
        self.assertIsNone(self.store.get(USER))
        self.assertIsNone(self.session_manager.get_token(USER))

        reply = await self.engine.start(USER, FlowKind.SEND)
        self.assertEqual(LOGIN_REQUIRED, reply.text)

    async def test_unexpected_error_aborts_with_generic_message(self):
        self.api.fail_with = RuntimeError("boom")
        await self.engine.start(USER, FlowKind.SEND)

        reply = await self._feed("USDC", "1", WALLET, "confirm")

        self.assertTrue(reply.finished)
        self.assertIn("An error occurred", reply.text)
        self.assertIsNone(self.store.get(USER))

    async def test_offramp_forwards_quote_payload_and_signature(self):
        self.api.quotes = [quote_response(payload="opaque+/payload==", signature="sig==")]
        await self.engine.start(USER, FlowKind.OFFRAMP)

        reply = await self._feed("USDC", "50")
        self.assertIn("Offramp Quote", reply.text)
        self.assertEqual(OfframpStep.QUOTE, self.store.get(USER).step)

        reply = await self._feed("accept")
        self.assertIn(["wallet-main"], reply.choices)

        reply = await self._feed(
            "wallet-main", "Jane Doe", "Acme Inc", "jane@acme.com", "usa", "confirm"
        )

        offramps = [c for c in self.api.calls if c[0] == "create_offramp"]
        self.assertEqual(1, len(offramps))
        payload = offramps[0][1]
        self.assertEqual("opaque+/payload==", payload["quotePayload"])
        self.assertEqual("sig==", payload["quoteSignature"])
        self.assertEqual("wallet-main", payload["preferredWalletId"])
        self.assertEqual({
            "name": "Jane Doe",
            "businessName": "Acme Inc",
            "email": "jane@acme.com",
            "country": "USA",
        }, payload["customerData"])
        self.assertIn("Offramp Transfer Initiated", reply.text)

        quote_request = [c for c in self.api.calls if c[0] == "request_offramp_quote"][0][1]
        self.assertEqual("50000000000", quote_request["amount"])

    async def test_mistyped_wallet_id_keeps_wallet_choices(self):
        self.api.quotes = [quote_response()]
        await self.engine.start(USER, FlowKind.OFFRAMP)
        await self._feed("USDC", "50", "accept")

        reply = await self._feed("wallet main!")

        self.assertFalse(reply.finished)
        self.assertIn("Invalid wallet ID", reply.text)
        self.assertIn(["wallet-main"], reply.choices)
        self.assertIn(["cancel"], reply.choices)
        self.assertEqual(OfframpStep.WALLET_ID, self.store.get(USER).step)

    async def test_offramp_quote_without_signature_aborts(self):
        self.api.quotes = [quote_response(signature=None)]
        await self.engine.start(USER, FlowKind.OFFRAMP)

        reply = await self._feed("USDC", "50")

        self.assertTrue(reply.finished)
        self.assertIn("Could not get a valid quote", reply.text)
        self.assertIsNone(self.store.get(USER))
        self.assertIsNone(await self.engine.handle_text(USER, "wallet-main"))
        self.assertEqual([], self.api.mutation_calls())

    async def test_offramp_compliance_rejection(self):
        self.api.quotes = [{"error": "Business KYB not approved"}]
        await self.engine.start(USER, FlowKind.OFFRAMP)

        reply = await self._feed("USDC", "50")

        self.assertIn("KYB", reply.text)
        self.assertIn("https://kyc.example.com", reply.text)
        self.assertIsNone(self.store.get(USER))

    async def test_offramp_quote_step_requires_accept(self):
        self.api.quotes = [quote_response()]
        await self.engine.start(USER, FlowKind.OFFRAMP)
        await self._feed("USDC", "50")

        reply = await self._feed("yes")

        self.assertIn("accept", reply.text)
        self.assertEqual(OfframpStep.QUOTE, self.store.get(USER).step)

    async def test_offramp_expired_quote_is_refreshed_before_execution(self):
        self.api.quotes = [
            quote_response(expires_at="2026-01-01T00:05:00Z", payload="old", signature="old-sig"),
            quote_response(expires_at="2026-01-01T01:00:00Z", payload="new", signature="new-sig"),
        ]
        await self.engine.start(USER, FlowKind.OFFRAMP)
        await self._feed("USDC", "50", "accept", "wallet-main", "Jane", "Acme", "jane@acme.com", "USA")

        reply = await self._feed("confirm")

        self.assertIn("quote expired", reply.text)
        self.assertFalse(reply.finished)
        self.assertEqual([], self.api.mutation_calls())
        self.assertEqual(OfframpStep.CONFIRM, self.store.get(USER).step)

        await self._feed("confirm")

        payload = self.api.mutation_calls()[0][1]
        self.assertEqual("new", payload["quotePayload"])
        self.assertEqual("new-sig", payload["quoteSignature"])

    async def test_batch_insufficient_balance_submits_nothing(self):
        self.api.balances = wallet_balances("5000000000")
        await self.engine.start(USER, FlowKind.BATCH)

        reply = await self._feed(
            "USDC", "2", "a@example.com", "b@example.com", "c@example.com", "done", "confirm"
        )

        self.assertEqual([], [c for c in self.api.calls if c[0] == "send_batch"])
        self.assertIn("Insufficient balance", reply.text)
        self.assertIn("Required: 6 USDC", reply.text)

    async def test_batch_partial_failure_reports_each_item(self):
        self.api.batch_failures = {1: "Recipient not found", 3: "Wallet is frozen"}
        await self.engine.start(USER, FlowKind.BATCH)

        reply = await self._feed(
            "USDC", "1",
            "a@example.com", "b@example.com", "c@example.com 2.5", WALLET, WALLET_2,
            "done", "confirm",
        )

        batches = [c for c in self.api.calls if c[0] == "send_batch"]
        self.assertEqual(1, len(batches))
        requests = batches[0][1]
        self.assertEqual(5, len(requests))
        self.assertEqual("2500000000", requests[2]["request"]["amount"])
        self.assertEqual("req-0", requests[0]["requestId"])

        self.assertTrue(reply.finished)
        self.assertIn("Successful: 3", reply.text)
        self.assertIn("Failed: 2", reply.text)
        self.assertIn("Reason: Recipient not found", reply.text)
        self.assertIn("Reason: Wallet is frozen", reply.text)

    async def test_batch_rejects_duplicate_and_requires_a_recipient(self):
        await self.engine.start(USER, FlowKind.BATCH)
        await self._feed("USDC", "1")

        reply = await self._feed("done")
        self.assertIn("at least one recipient", reply.text)

        await self._feed("a@example.com")
        reply = await self._feed("A@example.com")
        self.assertIn("already in this batch", reply.text)
        self.assertEqual(1, len(self.store.get(USER).recipients))
        self.assertEqual(BatchStep.BATCH_RECIPIENTS, self.store.get(USER).step)

    async def test_batch_recipient_limit(self):
        self.engine = self._build_engine(self.api, max_batch_recipients=2)
        self.session_manager.set_token(USER, "token-abc")
        await self.engine.start(USER, FlowKind.BATCH)

        reply = await self._feed("USDC", "1", "a@example.com", "b@example.com", "c@example.com")

        self.assertIn("at most 2 recipients", reply.text)
        self.assertEqual(2, len(self.store.get(USER).recipients))

    async def test_batch_preview_shows_total(self):
        await self.engine.start(USER, FlowKind.BATCH)

        reply = await self._feed("USDC", "1.5", "a@example.com", "b@example.com 3", "done")

        self.assertIn("Batch Preview", reply.text)
        self.assertIn("Total: 4.5 USDC", reply.text)
        self.assertEqual(BatchStep.BATCH_CONFIRM, self.store.get(USER).step)

    async def test_idle_flow_expires(self):
        now = [1000.0]
        self.engine = self._build_engine(self.api, store=FlowStore(timeout_seconds=300, clock=lambda: now[0]))
        self.session_manager.set_token(USER, "token-abc")

        await self.engine.start(USER, FlowKind.SEND)
        now[0] += 301

        self.assertIsNone(await self.engine.handle_text(USER, "USDC"))


if __name__ == "__main__":
    unittest.main()
