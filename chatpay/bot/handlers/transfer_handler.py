"""
Transfer conversation handlers for Telegram bot.

Adapts Telegram updates to the flow engine:
- /send, /withdraw, /offramp, /send_batch: start a flow
- /cancel: drop the active flow
- free text: next step of the active flow
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from chatpay.bot.keyboards import get_reply_markup
from chatpay.core.flow_engine import FlowEngine, FlowReply
from chatpay.core.flows import FlowKind
from chatpay.core.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

NO_ACTIVE_FLOW = (
    "No transfer in progress.\n\n"
    "Use /send, /withdraw, /offramp or /send_batch to start one, or /help for all commands."
)


async def send_reply(update: Update, reply: FlowReply):
    await update.effective_message.reply_text(reply.text, reply_markup=get_reply_markup(reply))


async def _start_flow(update: Update, context: ContextTypes.DEFAULT_TYPE, kind: FlowKind):
    user_id = update.effective_user.id
    flow_engine: FlowEngine = context.bot_data.get('flow_engine')

    if not flow_engine:
        await update.message.reply_text(
            "⚠️ Service temporarily unavailable. Try again later."
        )
        return

    try:
        reply = await flow_engine.start(user_id, kind)
        await send_reply(update, reply)
    except Exception as e:
        logger.error(f"Error starting {kind.value} flow: {e}", exc_info=True)
        await update.message.reply_text(
            "❌ An error occurred. Please try again later."
        )


async def send_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /send command - start a send flow."""
    await _start_flow(update, context, FlowKind.SEND)


async def withdraw_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /withdraw command - start a wallet withdrawal flow."""
    await _start_flow(update, context, FlowKind.WITHDRAW)


async def offramp_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /offramp command - start a bank offramp flow."""
    await _start_flow(update, context, FlowKind.OFFRAMP)


async def batch_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /send_batch command - start a batch transfer flow."""
    await _start_flow(update, context, FlowKind.BATCH)


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /cancel command - drop the active flow, if any."""
    flow_engine: FlowEngine = context.bot_data.get('flow_engine')
    if not flow_engine:
        await update.message.reply_text(
            "⚠️ Service temporarily unavailable. Try again later."
        )
        return

    reply = await flow_engine.cancel(update.effective_user.id)
    await send_reply(update, reply)


async def text_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle free text - feed it to the user's active flow.

    Args:
        update: Telegram update containing the message.
        context: Bot context with bot_data (services).
    """
    if not update.message or not update.message.text:
        return

    user_id = update.effective_user.id
    flow_engine: FlowEngine = context.bot_data.get('flow_engine')
    rate_limiter: RateLimiter = context.bot_data.get('rate_limiter')

    if not flow_engine:
        await update.message.reply_text(
            "⚠️ Service temporarily unavailable. Try again later."
        )
        return

    if rate_limiter and not rate_limiter.check(user_id):
        wait = int(rate_limiter.reset_in(user_id)) + 1
        logger.warning("Rate limit hit", extra={"telegram_user_id": user_id})
        await update.message.reply_text(
            f"⏳ Too many messages. Please wait {wait}s and try again."
        )
        return

    try:
        reply = await flow_engine.handle_text(user_id, update.message.text)
    except Exception as e:
        logger.error(f"Error handling text for user {user_id}: {e}", exc_info=True)
        await update.message.reply_text(
            "❌ An error occurred. Please try again later."
        )
        return

    if reply is None:
        await update.message.reply_text(NO_ACTIVE_FLOW)
        return

    await send_reply(update, reply)
