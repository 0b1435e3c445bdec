"""Text rendering for receipts, quotes, reports and balances."""

from typing import Dict, List

from chatpay.core.models import BatchReport, Quote, TokenBalance, Transfer, Wallet, WalletBalance
from chatpay.core.units import UnitConverter

STATUS_EMOJI = {
    "success": "✅",
    "completed": "✅",
    "pending": "⏳",
    "initiated": "⏳",
    "processing": "⏳",
    "failed": "❌",
    "canceled": "🚫",
    "refunded": "↩️",
}


def status_emoji(status: str) -> str:
    return STATUS_EMOJI.get((status or "").lower(), "❓")


def display_amount(base_amount: str, currency: str, converter: UnitConverter) -> str:
    """Base units -> ``10.5 USDC``; unknown currencies are shown raw."""
    if converter.is_supported(currency):
        return converter.format_display(base_amount, currency)
    return f"{base_amount} {currency}".strip()


def format_transfer_receipt(transfer: Transfer, converter: UnitConverter, title: str = "Transfer Details") -> str:
    lines = [
        f"🔄 {title}",
        "",
        f"ID: {transfer.id}",
        f"Status: {status_emoji(transfer.status)} {transfer.status}",
        f"Amount: {display_amount(transfer.amount, transfer.currency, converter)}",
        f"Fee: {display_amount(transfer.total_fee, transfer.fee_currency, converter)}",
        f"Type: {transfer.type}",
    ]
    if transfer.purpose_code:
        lines.append(f"Purpose: {transfer.purpose_code}")
    lines.extend([
        "",
        f"From: {transfer.source}",
        f"To: {transfer.destination}",
    ])
    return "\n".join(lines)


def format_transfer_summary(transfer: Transfer, converter: UnitConverter) -> str:
    date = transfer.created_at.strftime("%Y-%m-%d") if transfer.created_at else "n/a"
    return (
        f"🔄 {transfer.type.upper()} - {transfer.id}\n"
        f"Status: {status_emoji(transfer.status)} {transfer.status}\n"
        f"Amount: {display_amount(transfer.amount, transfer.currency, converter)}\n"
        f"Date: {date}"
    )


def format_batch_report(report: BatchReport, converter: UnitConverter) -> str:
    lines = [
        "🔄 Batch Transfer Results",
        "",
        f"✅ Successful: {report.success_count}",
        f"❌ Failed: {report.failed_count}",
        "",
    ]
    for index, result in enumerate(report.results, start=1):
        item = result.item
        amount = f"{item.amount_display} {item.currency}"
        if result.succeeded:
            lines.append(f"#{index} ✅ {amount} → {item.destination}")
        else:
            lines.append(f"#{index} ❌ {amount} → {item.destination}")
            lines.append(f"    Reason: {result.error}")
    return "\n".join(lines)


def format_quote(quote: Quote, converter: UnitConverter) -> str:
    expires = quote.expires_at.strftime("%H:%M:%S UTC") if quote.expires_at else "n/a"
    lines = [
        "💱 Offramp Quote",
        "",
        f"You send: {display_amount(quote.amount_base, quote.currency, converter)}",
        f"You receive: {quote.destination_amount} {quote.destination_currency}",
    ]
    if quote.rate:
        lines.append(f"Rate: {quote.rate}")
    lines.extend([
        f"Fee: {display_amount(quote.fee.amount_base, quote.fee.currency, converter)}",
        f"Expires: {expires}",
    ])
    return "\n".join(lines)


def format_field_errors(field_errors: Dict[str, List[str]]) -> str:
    lines = ["❌ The transfer was rejected:", ""]
    for field_name, messages in field_errors.items():
        lines.append(f"• {field_name}: {'; '.join(messages)}")
    return "\n".join(lines)


def format_balances(wallets: List[WalletBalance], converter: UnitConverter) -> str:
    if not wallets:
        return "💰 Balances\n\nNo wallets found."

    lines = ["💰 Balances", ""]
    for wallet in wallets:
        marker = " (default)" if wallet.is_default else ""
        lines.append(f"👛 {wallet.network or 'wallet'} {wallet.wallet_id}{marker}")
        if not wallet.balances:
            lines.append("    empty")
        for currency, amount in sorted(wallet.balances.items()):
            lines.append(f"    {display_amount(str(amount), currency, converter)}")
        lines.append("")
    return "\n".join(lines).rstrip()


def format_wallet(wallet: Wallet) -> str:
    lines = [
        f"🔑 Wallet: {wallet.wallet_address or 'n/a'}",
        f"ID: {wallet.id}",
        f"Network: {wallet.network or 'n/a'}",
    ]
    if wallet.wallet_type:
        lines.append(f"Type: {wallet.wallet_type}")
    lines.append(f"Default: {'✅' if wallet.is_default else '❌'}")
    return "\n".join(lines)


def format_wallets(wallets: List[Wallet]) -> str:
    if not wallets:
        return "💼 Your Wallets\n\nNo wallets found."
    blocks = [format_wallet(wallet) for wallet in wallets]
    return "💼 Your Wallets\n\n" + "\n\n".join(blocks)


def format_networks(networks: List[str]) -> str:
    if not networks:
        return "🌐 Supported Networks\n\nNo supported networks found."
    return "🌐 Supported Networks\n\n" + "\n".join(f"• {network}" for network in networks)


def format_token_balance(balance: TokenBalance, chain_id: str) -> str:
    # The token's own exponent applies even for symbols outside the configured currencies.
    amount = UnitConverter({balance.symbol: balance.decimals}).format_display(
        balance.amount_base, balance.symbol
    )
    lines = [f"💰 Token Balance ({balance.symbol} on {chain_id})", "", f"Amount: {amount}"]
    if balance.address:
        lines.append(f"Token Address: {balance.address}")
    lines.append(f"Decimals: {balance.decimals}")
    return "\n".join(lines)
