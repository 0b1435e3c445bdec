"""
Telegram keyboard layouts.
"""

from typing import List, Optional, Union

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove

from chatpay.core.flow_engine import FlowReply
from chatpay.core.models import Wallet

SET_DEFAULT_CALLBACK_PREFIX = "set_default"


def get_choice_keyboard(choices: List[List[str]]) -> ReplyKeyboardMarkup:
    """
    Build a one-time reply keyboard from rows of choice labels.

    Args:
        choices: Keyboard rows, e.g. [["USDC"], ["USDT"], ["cancel"]]

    Returns:
        Reply keyboard markup
    """
    return ReplyKeyboardMarkup(choices, resize_keyboard=True, one_time_keyboard=True)


def get_reply_markup(reply: FlowReply) -> Optional[Union[ReplyKeyboardMarkup, ReplyKeyboardRemove]]:
    """
    Keyboard for a flow reply: its choices while the flow runs, removal of
    any previous keyboard once the flow has finished.
    """
    if reply.finished:
        return ReplyKeyboardRemove()
    if reply.choices:
        return get_choice_keyboard(reply.choices)
    return None


def get_wallet_selection_keyboard(wallets: List[Wallet]) -> InlineKeyboardMarkup:
    """
    One button per wallet; callback data is ``set_default:{wallet_id}``.
    """
    rows = []
    for wallet in wallets:
        marker = " ✅" if wallet.is_default else ""
        label = f"{wallet.short_address or wallet.id} ({wallet.network or 'wallet'}){marker}"
        rows.append([InlineKeyboardButton(label, callback_data=f"{SET_DEFAULT_CALLBACK_PREFIX}:{wallet.id}")])
    return InlineKeyboardMarkup(rows)
