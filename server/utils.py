"""
Utility Functions for ReWear Exchange API

This module contains common utility functions used throughout the application.
"""

import re
import logging
from typing import Iterable

from models import ClothingItem, ItemStatus

logger = logging.getLogger(__name__)

# Forward transitions of the item status machine. Swapped and redeemed are
# terminal; pending is never entered by the exchange workflow.
ITEM_STATUS_TRANSITIONS = {
    ItemStatus.AVAILABLE: {ItemStatus.SWAPPED, ItemStatus.REDEEMED},
    ItemStatus.PENDING: set(),
    ItemStatus.SWAPPED: set(),
    ItemStatus.REDEEMED: set(),
}

IDEMPOTENCY_KEY_PATTERN = re.compile(r'^[A-Za-z0-9_\-]{8,128}$')

PLACEHOLDER_IMAGES = [
    'https://images.pexels.com/photos/996329/pexels-photo-996329.jpeg?auto=compress&cs=tinysrgb&w=400',
    'https://images.pexels.com/photos/1040945/pexels-photo-1040945.jpeg?auto=compress&cs=tinysrgb&w=400',
    'https://images.pexels.com/photos/1598505/pexels-photo-1598505.jpeg?auto=compress&cs=tinysrgb&w=400',
    'https://images.pexels.com/photos/1656684/pexels-photo-1656684.jpeg?auto=compress&cs=tinysrgb&w=400',
    'https://images.pexels.com/photos/1926769/pexels-photo-1926769.jpeg?auto=compress&cs=tinysrgb&w=400',
]


def validate_status_transition(current_status: ItemStatus, new_status: ItemStatus) -> bool:
    """
    Validate if an item status transition is allowed

    Args:
        current_status: Status the item has now
        new_status: Status the caller wants to move to

    Returns:
        bool: True if the transition is a forward move of the status machine
    """
    return ItemStatus(new_status) in ITEM_STATUS_TRANSITIONS.get(ItemStatus(current_status), set())


def redemption_record_id(idempotency_key: str) -> str:
    """
    Build the swap-request document ID for an idempotent redemption

    Args:
        idempotency_key: Client supplied key (8-128 chars of [A-Za-z0-9_-])

    Returns:
        str: Deterministic document ID

    Raises:
        ValueError: If the key has an invalid format
    """
    if not IDEMPOTENCY_KEY_PATTERN.fullmatch(idempotency_key or ''):
        raise ValueError("Idempotency key must be 8-128 characters of letters, digits, '-' or '_'")
    return f"redeem-{idempotency_key}"


def matches_search(item: ClothingItem, term: str) -> bool:
    """
    Case-insensitive match of a search term against title, description and tags

    Args:
        item: Item to test
        term: Free text search term

    Returns:
        bool: True if the term appears in any searchable field
    """
    needle = term.strip().lower()
    if not needle:
        return True
    if needle in item.title.lower() or needle in item.description.lower():
        return True
    return any(needle in tag.lower() for tag in item.tags)


def normalize_tags(tags: Iterable[str]) -> list:
    """Strip whitespace and drop empty tags, preserving order"""
    return [tag.strip() for tag in tags if tag and tag.strip()]


def sanitize_string(text: str, max_length: int = 255) -> str:
    """Sanitize string input"""
    if not text:
        return ""
    return text.strip()[:max_length]

