"""
Telegram bot utility functions and helpers.

This package contains reusable utilities for the Telegram bot,
such as pagination helpers.
"""

from .pagination import PaginationHelper, PaginatedData

__all__ = ["PaginationHelper", "PaginatedData"]
