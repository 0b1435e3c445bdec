"""
Pagination utility for Telegram bot list displays.

The backend pages transfer history itself, so this helper only wraps the
page metadata it returns and builds the matching navigation keyboard.
"""

from typing import TypeVar, Generic, List, Optional
from dataclasses import dataclass
from telegram import InlineKeyboardButton, InlineKeyboardMarkup

T = TypeVar('T')


@dataclass
class PaginatedData(Generic[T]):
    """
    Container for one page of a server-paginated list.
    """

    items: List[T]
    """Items on current page."""

    page: int
    """Current page number (1-indexed)."""

    page_size: int
    """Items per page."""

    total_items: int
    """Total items across all pages, as reported by the backend."""

    has_next: bool
    """True if there are more pages after current."""

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def total_pages(self) -> int:
        if self.total_items <= 0 or self.page_size <= 0:
            return max(self.page, 1)
        return max((self.total_items + self.page_size - 1) // self.page_size, self.page)

    def is_empty(self) -> bool:
        """True if no items in entire dataset."""
        return self.total_items == 0 and not self.items


class PaginationHelper:
    """
    Utility class for paginated lists in the Telegram bot.

    No instance state required - all methods are static.
    """

    @staticmethod
    def parse_page(callback_data: str, default: int = 1) -> int:
        """
        Extract the page number from callback data such as ``"tx_page_3"``.

        Returns ``default`` for malformed data; never less than 1.
        """
        try:
            page = int(callback_data.rsplit("_", 1)[-1])
        except (ValueError, AttributeError):
            return default
        return max(page, 1)

    @staticmethod
    def create_pagination_keyboard(
        paginated_data: PaginatedData,
        callback_prefix: str,
        additional_buttons: Optional[List[List[InlineKeyboardButton]]] = None
    ) -> Optional[InlineKeyboardMarkup]:
        """
        Create inline keyboard with pagination navigation.

        Generates Previous / Page X/Y / Next buttons. Returns None when there
        is nothing to navigate and no additional buttons.

        Args:
            paginated_data: PaginatedData with pagination metadata.
            callback_prefix: Prefix for callback_data (e.g., "tx_page" -> "tx_page_2").
            additional_buttons: Optional additional button rows to append below pagination.
        """
        buttons = []

        if paginated_data.has_prev or paginated_data.has_next:
            nav_buttons = []

            if paginated_data.has_prev:
                nav_buttons.append(
                    InlineKeyboardButton(
                        "⬅️ Previous",
                        callback_data=f"{callback_prefix}_{paginated_data.page - 1}"
                    )
                )

            # Page indicator (not clickable)
            nav_buttons.append(
                InlineKeyboardButton(
                    f"Page {paginated_data.page}/{paginated_data.total_pages}",
                    callback_data="noop"
                )
            )

            if paginated_data.has_next:
                nav_buttons.append(
                    InlineKeyboardButton(
                        "Next ➡️",
                        callback_data=f"{callback_prefix}_{paginated_data.page + 1}"
                    )
                )

            buttons.append(nav_buttons)

        if additional_buttons:
            buttons.extend(additional_buttons)

        return InlineKeyboardMarkup(buttons) if buttons else None
