"""
Telegram Bot application entry point.

Run with: python -m chatpay.bot.main
"""

import logging
from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from chatpay.core.api_client import PaymentsApiClient
from chatpay.core.config_loader import get_bot_token, load_config
from chatpay.core.flow_engine import FlowEngine
from chatpay.core.flow_store import FlowStore
from chatpay.core.logger import level_from_name, setup_logger
from chatpay.core.rate_limiter import RateLimiter
from chatpay.core.units import UnitConverter
from chatpay.services import BalanceService, QuoteService, SessionManager, TransferService, WalletService
from chatpay.bot.keyboards import SET_DEFAULT_CALLBACK_PREFIX
from chatpay.bot.handlers.account_handler import (
    HISTORY_CALLBACK_PREFIX,
    balance_command,
    logout_command,
    token_command,
    transfers_command,
    transfers_page_callback,
)
from chatpay.bot.handlers.transfer_handler import (
    batch_command,
    cancel_command,
    offramp_command,
    send_command,
    text_message,
    withdraw_command,
)
from chatpay.bot.handlers.wallet_handler import (
    default_wallet_command,
    networks_command,
    set_default_callback,
    set_default_command,
    token_balance_command,
    wallets_command,
)

logger = logging.getLogger(__name__)


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle /help and /start commands.

    Args:
        update: Telegram update
        context: Bot context
    """
    help_text = (
        "ℹ️ Help\n\n"
        "Transfer Commands:\n"
        "/send - Send to an email or wallet address\n"
        "/withdraw - Withdraw to an external wallet\n"
        "/offramp - Cash out to your bank account\n"
        "/send_batch - Send to several recipients at once\n"
        "/cancel - Abort the current transfer\n\n"
        "Account Commands:\n"
        "/balance - View wallet balances\n"
        "/transfers [page] - View transfer history\n"
        "/token <access_token> - Start a session\n"
        "/logout - End your session\n\n"
        "Wallet Commands:\n"
        "/wallets - View all wallets\n"
        "/default_wallet - Show your default wallet\n"
        "/set_default [wallet_id] - Change your default wallet\n"
        "/networks - List supported networks\n"
        "/token_balance <chain_id> <token> - Check a token balance\n\n"
        "During a transfer reply 'confirm' to execute or 'cancel' to abort at any step.\n"
        "/help - Show this help message\n"
    )
    await update.message.reply_text(help_text)


async def handle_callback_query(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Handle callback queries from inline keyboards.

    Routes callbacks to appropriate handlers based on callback_data prefix.
    """
    query = update.callback_query
    data = query.data

    try:
        if data.startswith(f"{HISTORY_CALLBACK_PREFIX}_"):
            await transfers_page_callback(update, context)

        elif data.startswith(f"{SET_DEFAULT_CALLBACK_PREFIX}:"):
            await set_default_callback(update, context)

        # Ignore noop callbacks (pagination page indicator)
        elif data == "noop":
            await query.answer()

        else:
            await query.answer("Unknown action")
            logger.warning(f"Unknown callback data: {data}")

    except Exception as e:
        logger.error(f"Error handling callback query: {e}", exc_info=True)
        await query.answer("An error occurred. Please try again.")


async def purge_expired_flows(context: ContextTypes.DEFAULT_TYPE):
    """Repeating job: evict conversation states idle past the flow timeout."""
    store: FlowStore = context.bot_data['flow_store']
    purged = store.purge_expired()
    if purged:
        logger.info(f"Purged {purged} idle transfer flow(s)")


async def close_api_client(application: Application):
    api_client: PaymentsApiClient = application.bot_data.get('api_client')
    if api_client:
        await api_client.aclose()


def build_application(config: dict, bot_token: str) -> Application:
    """
    Create the bot application with all services and handlers registered.

    Args:
        config: Validated configuration dictionary
        bot_token: Telegram bot token

    Returns:
        Ready-to-run Application
    """
    converter = UnitConverter(config['currencies'])
    api_client = PaymentsApiClient.from_config(config['api'])

    session_manager = SessionManager()
    balance_service = BalanceService(api_client, converter)
    wallet_service = WalletService(api_client, converter)
    quote_service = QuoteService(
        api_client,
        converter,
        destination_currency=config['offramp']['destination_currency'],
        destination_country=config['offramp']['destination_country'],
        expiry_margin_seconds=config['offramp']['expiry_margin_seconds'],
    )
    transfer_service = TransferService(
        api_client,
        converter,
        balance_service,
        purpose_code=config['app']['purpose_code'],
    )
    flow_store = FlowStore(timeout_seconds=config['flows']['timeout_seconds'])
    flow_engine = FlowEngine(
        store=flow_store,
        converter=converter,
        session_manager=session_manager,
        balance_service=balance_service,
        quote_service=quote_service,
        transfer_service=transfer_service,
        max_batch_recipients=config['batch']['max_recipients'],
        kyc_url=config['app']['kyc_url'],
    )
    rate_limiter = RateLimiter(
        max_requests=config['rate_limit']['max_requests'],
        window_seconds=config['rate_limit']['window_seconds'],
    )

    application = (
        Application.builder()
        .token(bot_token)
        .post_shutdown(close_api_client)
        .build()
    )

    # Store services in bot_data
    application.bot_data['config'] = config
    application.bot_data['converter'] = converter
    application.bot_data['api_client'] = api_client
    application.bot_data['session_manager'] = session_manager
    application.bot_data['balance_service'] = balance_service
    application.bot_data['wallet_service'] = wallet_service
    application.bot_data['quote_service'] = quote_service
    application.bot_data['transfer_service'] = transfer_service
    application.bot_data['flow_store'] = flow_store
    application.bot_data['flow_engine'] = flow_engine
    application.bot_data['rate_limiter'] = rate_limiter

    # Transfer commands
    application.add_handler(CommandHandler("send", send_command))
    application.add_handler(CommandHandler("withdraw", withdraw_command))
    application.add_handler(CommandHandler("offramp", offramp_command))
    application.add_handler(CommandHandler("send_batch", batch_command))
    application.add_handler(CommandHandler("cancel", cancel_command))

    # Account commands
    application.add_handler(CommandHandler("balance", balance_command))
    application.add_handler(CommandHandler("transfers", transfers_command))
    application.add_handler(CommandHandler("token", token_command))
    application.add_handler(CommandHandler("logout", logout_command))
    application.add_handler(CommandHandler(["help", "start"], help_command))

    # Wallet commands
    application.add_handler(CommandHandler("wallets", wallets_command))
    application.add_handler(CommandHandler("default_wallet", default_wallet_command))
    application.add_handler(CommandHandler("set_default", set_default_command))
    application.add_handler(CommandHandler("networks", networks_command))
    application.add_handler(CommandHandler("token_balance", token_balance_command))

    # Free text drives the active flow
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, text_message))

    # Callback query handler (for all inline keyboard buttons)
    application.add_handler(CallbackQueryHandler(handle_callback_query))

    interval = config['flows']['purge_interval_seconds']
    application.job_queue.run_repeating(purge_expired_flows, interval=interval, first=interval)

    return application


def main():
    """Run the Telegram bot."""
    try:
        config = load_config()

        logging_cfg = config['logging']
        setup_logger(
            level=level_from_name(logging_cfg['level']),
            log_dir=logging_cfg['log_dir'],
            log_filename=logging_cfg['log_filename'],
        )

        bot_token = get_bot_token()
        application = build_application(config, bot_token)

        logger.info("Starting Telegram bot...")
        application.run_polling(allowed_updates=Update.ALL_TYPES)

    except Exception as e:
        logger.error(f"Failed to start Telegram bot: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    main()
