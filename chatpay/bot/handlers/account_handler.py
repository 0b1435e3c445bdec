"""
Account handlers for Telegram bot.

Handles account-related commands:
- /balance: Wallet balances per currency
- /transfers: Paginated transfer history
- /token, /logout: Access-token session hand-over
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from chatpay.bot.utils.pagination import PaginatedData, PaginationHelper
from chatpay.core.errors import ChatPayError, SessionError
from chatpay.core.formatters import format_balances, format_transfer_summary
from chatpay.core.models import TransferPage
from chatpay.core.units import UnitConverter
from chatpay.services.balance_service import BalanceService
from chatpay.services.session_service import SessionManager
from chatpay.services.transfer_service import TransferService

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 5
HISTORY_CALLBACK_PREFIX = "tx_page"


async def balance_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle /balance command - show balances of every wallet.

    Args:
        update: Telegram update containing command.
        context: Bot context.
    """
    user_id = update.effective_user.id
    session_manager: SessionManager = context.bot_data.get('session_manager')
    balance_service: BalanceService = context.bot_data.get('balance_service')
    converter: UnitConverter = context.bot_data.get('converter')

    if not session_manager or not balance_service:
        await update.message.reply_text(
            "⚠️ Service temporarily unavailable. Try again later."
        )
        return

    token = session_manager.get_token(user_id)
    if not token:
        await update.message.reply_text("🔒 Please log in first: /token <access_token>")
        return

    try:
        wallets = await balance_service.get_wallet_balances(token)
        await update.message.reply_text(format_balances(wallets, converter))
    except SessionError:
        session_manager.clear(user_id)
        await update.message.reply_text("🔒 Your session has expired. Please log in again with /token <access_token>")
    except ChatPayError as e:
        logger.warning(f"Balance lookup failed for user {user_id}: {e}")
        await update.message.reply_text(
            "❌ Could not fetch balances. Please try again later."
        )


async def transfers_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle /transfers [page] command - show transfer history.

    Args:
        update: Telegram update containing command.
        context: Bot context.
    """
    page = 1
    if context.args:
        try:
            page = max(int(context.args[0]), 1)
        except ValueError:
            await update.message.reply_text("Usage: /transfers [page]")
            return

    text, keyboard = await _render_history(update.effective_user.id, context, page)
    await update.message.reply_text(text, reply_markup=keyboard)


async def transfers_page_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle pagination callback for transfer history.

    Callback data format: "tx_page_{page_number}"
    """
    query = update.callback_query
    await query.answer()

    page = PaginationHelper.parse_page(query.data)
    text, keyboard = await _render_history(query.from_user.id, context, page)
    await query.edit_message_text(text, reply_markup=keyboard)


async def _render_history(user_id: int, context: ContextTypes.DEFAULT_TYPE, page: int):
    session_manager: SessionManager = context.bot_data.get('session_manager')
    transfer_service: TransferService = context.bot_data.get('transfer_service')
    converter: UnitConverter = context.bot_data.get('converter')

    if not session_manager or not transfer_service:
        return "⚠️ Service temporarily unavailable. Try again later.", None

    token = session_manager.get_token(user_id)
    if not token:
        return "🔒 Please log in first: /token <access_token>", None

    try:
        result: TransferPage = await transfer_service.list_transfers(token, page=page, limit=HISTORY_PAGE_SIZE)
    except SessionError:
        session_manager.clear(user_id)
        return "🔒 Your session has expired. Please log in again with /token <access_token>", None
    except ChatPayError as e:
        logger.error(f"Error listing transfers for user {user_id}: {e}")
        return "❌ Network error. Please try again.", None

    paginated = PaginatedData(
        items=result.transfers,
        page=result.page,
        page_size=result.limit or HISTORY_PAGE_SIZE,
        total_items=result.count,
        has_next=result.has_more,
    )

    if paginated.is_empty():
        return "📋 Transfer History\n\nNo transfers found.", None

    lines = [f"📋 Transfer History (Page {paginated.page})", ""]
    for transfer in paginated.items:
        lines.append(format_transfer_summary(transfer, converter))
        lines.append("")
    lines.append(f"Showing {len(paginated.items)} of {paginated.total_items} transfers")

    keyboard = PaginationHelper.create_pagination_keyboard(paginated, HISTORY_CALLBACK_PREFIX)
    return "\n".join(lines), keyboard


async def token_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle /token <access_token> - store an access token issued by the login service.

    The message carrying the token is deleted after processing.
    """
    user_id = update.effective_user.id
    session_manager: SessionManager = context.bot_data.get('session_manager')

    if not session_manager:
        await update.message.reply_text(
            "⚠️ Service temporarily unavailable. Try again later."
        )
        return

    if len(context.args or []) != 1:
        await update.message.reply_text("Usage: /token <access_token>")
        return

    session_manager.set_token(user_id, context.args[0])

    try:
        await update.message.delete()
    except Exception as e:
        logger.warning(f"Failed to delete token message: {e}")

    await context.bot.send_message(
        chat_id=update.effective_chat.id,
        text="✅ Session saved. You can now use /send, /withdraw, /offramp and /send_batch."
    )


async def logout_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /logout - forget the access token and drop any active flow."""
    user_id = update.effective_user.id
    session_manager: SessionManager = context.bot_data.get('session_manager')
    flow_engine = context.bot_data.get('flow_engine')

    if session_manager:
        session_manager.clear(user_id)
    if flow_engine:
        await flow_engine.cancel(user_id)

    await update.message.reply_text("👋 Logged out.")
