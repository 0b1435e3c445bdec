"""
Wallet handlers for Telegram bot.

Handles wallet management commands:
- /wallets: List wallets
- /default_wallet: Show the wallet transfers are funded from
- /set_default [wallet_id]: Change the default wallet
- /networks: Supported networks
- /token_balance <chain_id> <token>: Balance of a single token
"""

import logging
from typing import Awaitable, Callable, Optional, Tuple

from telegram import InlineKeyboardMarkup, Update
from telegram.ext import ContextTypes

from chatpay.bot.keyboards import SET_DEFAULT_CALLBACK_PREFIX, get_wallet_selection_keyboard
from chatpay.core.errors import ChatPayError, SessionError, UserInputError
from chatpay.core.formatters import (
    format_networks,
    format_token_balance,
    format_wallet,
    format_wallets,
)
from chatpay.core.validators import parse_wallet_id
from chatpay.services.session_service import SessionManager
from chatpay.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

LOGIN_REQUIRED = "🔒 Please log in first: /token <access_token>"
SESSION_EXPIRED = "🔒 Your session has expired. Please log in again with /token <access_token>"
SERVICE_UNAVAILABLE = "⚠️ Service temporarily unavailable. Try again later."

Reply = Tuple[str, Optional[InlineKeyboardMarkup]]


async def _with_wallets(
    user_id: int,
    context: ContextTypes.DEFAULT_TYPE,
    action: Callable[[WalletService, str], Awaitable[Reply]],
    failure: str
) -> Reply:
    """Run ``action`` with the user's token, mapping session and backend errors to replies."""
    session_manager: SessionManager = context.bot_data.get('session_manager')
    wallet_service: WalletService = context.bot_data.get('wallet_service')

    if not session_manager or not wallet_service:
        return SERVICE_UNAVAILABLE, None

    token = session_manager.get_token(user_id)
    if not token:
        return LOGIN_REQUIRED, None

    try:
        return await action(wallet_service, token)
    except SessionError:
        session_manager.clear(user_id)
        return SESSION_EXPIRED, None
    except ChatPayError as e:
        logger.warning(f"Wallet request failed for user {user_id}: {e}")
        return failure, None


async def wallets_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /wallets command - list all wallets."""
    async def action(service: WalletService, token: str) -> Reply:
        return format_wallets(await service.list_wallets(token)), None

    text, _ = await _with_wallets(
        update.effective_user.id, context, action, "❌ Failed to fetch wallets. Please try again."
    )
    await update.message.reply_text(text)


async def default_wallet_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /default_wallet command - show the default wallet."""
    async def action(service: WalletService, token: str) -> Reply:
        wallet = await service.get_default_wallet(token)
        return f"🔒 Default Wallet\n\n{format_wallet(wallet)}", None

    text, _ = await _with_wallets(
        update.effective_user.id, context, action, "❌ Failed to fetch default wallet. Please try again."
    )
    await update.message.reply_text(text)


async def set_default_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle /set_default [wallet_id] command.

    With a wallet id the default is changed right away; without one the
    user picks from an inline keyboard of their wallets.
    """
    if context.args:
        try:
            wallet_id = parse_wallet_id(context.args[0])
        except UserInputError as e:
            await update.message.reply_text(e.message)
            return
        text, _ = await _set_default(update.effective_user.id, context, wallet_id)
        await update.message.reply_text(text)
        return

    async def action(service: WalletService, token: str) -> Reply:
        wallets = [w for w in await service.list_wallets(token) if w.id]
        if not wallets:
            return "💼 No wallets found.", None
        return "Select a wallet to set as default:", get_wallet_selection_keyboard(wallets)

    text, keyboard = await _with_wallets(
        update.effective_user.id, context, action, "❌ Failed to load wallets. Please try again."
    )
    await update.message.reply_text(text, reply_markup=keyboard)


async def set_default_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle a wallet selection from the /set_default keyboard.

    Callback data format: "set_default:{wallet_id}"
    """
    query = update.callback_query
    await query.answer()

    _, _, raw_id = (query.data or "").partition(":")
    try:
        wallet_id = parse_wallet_id(raw_id)
    except UserInputError as e:
        logger.warning(f"Malformed wallet selection: {query.data}")
        await query.edit_message_text(e.message)
        return

    text, _ = await _set_default(query.from_user.id, context, wallet_id)
    await query.edit_message_text(text)


async def _set_default(user_id: int, context: ContextTypes.DEFAULT_TYPE, wallet_id: str) -> Reply:
    async def action(service: WalletService, token: str) -> Reply:
        wallet = await service.set_default_wallet(token, wallet_id)
        return f"✅ Default wallet updated\n\n{format_wallet(wallet)}", None

    return await _with_wallets(user_id, context, action, "❌ Failed to set default wallet. Please try again.")


async def networks_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /networks command - list supported networks."""
    async def action(service: WalletService, token: str) -> Reply:
        return format_networks(await service.list_networks(token)), None

    text, _ = await _with_wallets(
        update.effective_user.id, context, action, "❌ Failed to fetch networks. Please try again."
    )
    await update.message.reply_text(text)


async def token_balance_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /token_balance <chain_id> <token> command."""
    if len(context.args or []) != 2:
        await update.message.reply_text("Usage: /token_balance <chain_id> <token>")
        return

    chain_id, token_name = context.args

    async def action(service: WalletService, token: str) -> Reply:
        balance = await service.get_token_balance(token, chain_id, token_name)
        return format_token_balance(balance, chain_id), None

    text, _ = await _with_wallets(
        update.effective_user.id, context, action, "❌ Failed to fetch token balance. Please try again."
    )
    await update.message.reply_text(text)
