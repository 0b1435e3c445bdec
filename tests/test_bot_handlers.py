"""Tests for the Telegram handlers that front the flow engine."""

import sys
import unittest
from pathlib import Path

from telegram import InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chatpay.bot.handlers.account_handler import logout_command, token_command
from chatpay.bot.handlers.transfer_handler import NO_ACTIVE_FLOW, send_command, text_message
from chatpay.bot.handlers.wallet_handler import (
    default_wallet_command,
    set_default_command,
    token_balance_command,
    wallets_command,
)
from chatpay.bot.main import handle_callback_query
from chatpay.core.errors import SessionError
from chatpay.core.flow_engine import FlowEngine
from chatpay.core.flow_store import FlowStore
from chatpay.core.rate_limiter import RateLimiter
from chatpay.core.units import UnitConverter
from chatpay.services.session_service import SessionManager
from chatpay.services.wallet_service import WalletService


class FakeUser:
    def __init__(self, user_id):
        self.id = user_id


class FakeChat:
    def __init__(self, chat_id):
        self.id = chat_id


class FakeMessage:
    def __init__(self, text=""):
        self.text = text
        self.replies = []
        self.deleted = False

    async def reply_text(self, text, reply_markup=None, **kwargs):
        self.replies.append((text, reply_markup))

    async def delete(self):
        self.deleted = True


class FakeUpdate:
    def __init__(self, user_id, text=""):
        self.effective_user = FakeUser(user_id)
        self.effective_chat = FakeChat(user_id)
        self.message = FakeMessage(text)
        self.effective_message = self.message


class FakeBot:
    def __init__(self):
        self.sent = []

    async def send_message(self, chat_id, text, **kwargs):
        self.sent.append((chat_id, text))


class FakeContext:
    def __init__(self, bot_data, args=None):
        self.bot_data = bot_data
        self.args = args or []
        self.bot = FakeBot()


class FakeCallbackQuery:
    def __init__(self, user_id, data):
        self.from_user = FakeUser(user_id)
        self.data = data
        self.answers = []
        self.edits = []

    async def answer(self, text=None, **kwargs):
        self.answers.append(text)

    async def edit_message_text(self, text, reply_markup=None, **kwargs):
        self.edits.append((text, reply_markup))


class FakeCallbackUpdate:
    def __init__(self, user_id, data):
        self.effective_user = FakeUser(user_id)
        self.callback_query = FakeCallbackQuery(user_id, data)


class FakeWalletApi:
    def __init__(self, error=None):
        self.error = error
        self.wallets = [
            {"id": "w1", "network": "solana", "walletAddress": "0x" + "1" * 40, "isDefault": True},
            {"id": "w2", "network": "polygon", "walletAddress": "0x" + "2" * 40, "isDefault": False},
        ]
        self.default_set = []

    async def get_wallets(self, access_token):
        if self.error:
            raise self.error
        return self.wallets

    async def get_default_wallet(self, access_token):
        return next(w for w in self.wallets if w["isDefault"])

    async def set_default_wallet(self, access_token, wallet_id):
        self.default_set.append(wallet_id)
        for item in self.wallets:
            item["isDefault"] = item["id"] == wallet_id
        return next(w for w in self.wallets if w["id"] == wallet_id)

    async def get_token_balance(self, access_token, chain_id, token):
        return {"symbol": token, "balance": "2500000", "decimals": 6}


class TransferHandlerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.sessions = SessionManager()
        self.sessions.set_token(5, "tok")
        self.store = FlowStore()
        engine = FlowEngine(
            store=self.store,
            converter=UnitConverter(),
            session_manager=self.sessions,
            balance_service=None,
            quote_service=None,
            transfer_service=None,
        )
        self.bot_data = {
            "flow_engine": engine,
            "flow_store": self.store,
            "session_manager": self.sessions,
            "rate_limiter": RateLimiter(max_requests=2, window_seconds=60),
        }

    async def test_send_command_shows_currency_keyboard(self):
        update = FakeUpdate(5)
        await send_command(update, FakeContext(self.bot_data))

        text, markup = update.message.replies[0]
        self.assertIn("select a currency", text)
        self.assertIsInstance(markup, ReplyKeyboardMarkup)
        self.assertTrue(self.store.has_flow(5))

    async def test_text_without_flow_explains_commands(self):
        update = FakeUpdate(5, "hello")
        await text_message(update, FakeContext(self.bot_data))

        self.assertEqual(NO_ACTIVE_FLOW, update.message.replies[0][0])

    async def test_text_is_rate_limited(self):
        for _ in range(2):
            await text_message(FakeUpdate(5, "hi"), FakeContext(self.bot_data))

        update = FakeUpdate(5, "hi")
        await text_message(update, FakeContext(self.bot_data))

        self.assertIn("Too many messages", update.message.replies[0][0])

    async def test_cancel_text_removes_keyboard(self):
        await send_command(FakeUpdate(5), FakeContext(self.bot_data))

        update = FakeUpdate(5, "cancel")
        await text_message(update, FakeContext(self.bot_data))

        text, markup = update.message.replies[0]
        self.assertIn("cancelled", text)
        self.assertIsInstance(markup, ReplyKeyboardRemove)
        self.assertFalse(self.store.has_flow(5))


class WalletHandlerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.sessions = SessionManager()
        self.sessions.set_token(7, "tok")
        self.api = FakeWalletApi()
        self.bot_data = {
            "session_manager": self.sessions,
            "wallet_service": WalletService(self.api, UnitConverter()),
        }

    async def test_wallets_lists_every_wallet(self):
        update = FakeUpdate(7, "/wallets")
        await wallets_command(update, FakeContext(self.bot_data))

        text = update.message.replies[0][0]
        self.assertIn("Your Wallets", text)
        self.assertIn("ID: w1", text)
        self.assertIn("ID: w2", text)

    async def test_wallets_requires_session(self):
        self.sessions.clear(7)
        update = FakeUpdate(7, "/wallets")
        await wallets_command(update, FakeContext(self.bot_data))

        self.assertIn("log in first", update.message.replies[0][0])

    async def test_rejected_token_clears_session(self):
        self.api.error = SessionError("Access token rejected")
        update = FakeUpdate(7, "/wallets")
        await wallets_command(update, FakeContext(self.bot_data))

        self.assertIn("session has expired", update.message.replies[0][0])
        self.assertIsNone(self.sessions.get_token(7))

    async def test_default_wallet(self):
        update = FakeUpdate(7, "/default_wallet")
        await default_wallet_command(update, FakeContext(self.bot_data))

        text = update.message.replies[0][0]
        self.assertIn("Default Wallet", text)
        self.assertIn("ID: w1", text)

    async def test_set_default_offers_wallet_buttons(self):
        update = FakeUpdate(7, "/set_default")
        await set_default_command(update, FakeContext(self.bot_data))

        text, markup = update.message.replies[0]
        self.assertIn("Select a wallet", text)
        self.assertIsInstance(markup, InlineKeyboardMarkup)
        self.assertEqual(
            ["set_default:w1", "set_default:w2"],
            [row[0].callback_data for row in markup.inline_keyboard],
        )
        self.assertEqual([], self.api.default_set)

    async def test_set_default_button_updates_default_wallet(self):
        update = FakeCallbackUpdate(7, "set_default:w2")
        await handle_callback_query(update, FakeContext(self.bot_data))

        self.assertEqual(["w2"], self.api.default_set)
        text, _ = update.callback_query.edits[0]
        self.assertIn("Default wallet updated", text)
        self.assertIn("ID: w2", text)
        self.assertIn("Default: ✅", text)

    async def test_set_default_with_argument(self):
        update = FakeUpdate(7, "/set_default w2")
        await set_default_command(update, FakeContext(self.bot_data, args=["w2"]))

        self.assertEqual(["w2"], self.api.default_set)
        self.assertIn("Default wallet updated", update.message.replies[0][0])

    async def test_malformed_wallet_button_changes_nothing(self):
        update = FakeCallbackUpdate(7, "set_default:")
        await handle_callback_query(update, FakeContext(self.bot_data))

        self.assertEqual([], self.api.default_set)
        self.assertIn("Invalid wallet ID", update.callback_query.edits[0][0])

    async def test_token_balance(self):
        update = FakeUpdate(7, "/token_balance 137 USDT")
        await token_balance_command(update, FakeContext(self.bot_data, args=["137", "USDT"]))

        self.assertIn("Amount: 2.5 USDT", update.message.replies[0][0])

        usage = FakeUpdate(7, "/token_balance 137")
        await token_balance_command(usage, FakeContext(self.bot_data, args=["137"]))
        self.assertIn("Usage", usage.message.replies[0][0])


class AccountHandlerTests(unittest.IsolatedAsyncioTestCase):
    async def test_token_command_stores_session_and_deletes_message(self):
        sessions = SessionManager()
        update = FakeUpdate(9, "/token secret")
        context = FakeContext({"session_manager": sessions}, args=["secret"])

        await token_command(update, context)

        self.assertEqual("secret", sessions.get_token(9))
        self.assertTrue(update.message.deleted)
        self.assertIn("Session saved", context.bot.sent[0][1])

    async def test_token_command_usage(self):
        sessions = SessionManager()
        update = FakeUpdate(9, "/token")
        await token_command(update, FakeContext({"session_manager": sessions}))

        self.assertIn("Usage", update.message.replies[0][0])
        self.assertIsNone(sessions.get_token(9))

    async def test_logout_clears_session(self):
        sessions = SessionManager()
        sessions.set_token(9, "tok")
        update = FakeUpdate(9, "/logout")

        await logout_command(update, FakeContext({"session_manager": sessions}))

        self.assertIsNone(sessions.get_token(9))
        self.assertIn("Logged out", update.message.replies[0][0])


if __name__ == "__main__":
    unittest.main()
