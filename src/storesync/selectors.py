"""Derived reads over cached entity values.

Pure functions: no side effects, no network.
"""

from __future__ import annotations

from collections.abc import Sequence

from storesync.models.documents import CartItem


def cart_total(items: Sequence[CartItem] | None) -> float:
    """Sum of price x quantity. Lines without a price count as zero."""
    return sum((item.price or 0.0) * item.quantity for item in items or ())


def cart_item_count(items: Sequence[CartItem] | None) -> int:
    """Total units across all lines."""
    return sum(item.quantity for item in items or ())


def distinct_count(items: Sequence[object] | None) -> int:
    return len(items or ())


def cart_contains(items: Sequence[CartItem] | None, product_id: str) -> bool:
    return any(item.product_id == product_id for item in items or ())


def wishlist_contains(items: Sequence[str] | None, product_id: str) -> bool:
    return product_id in (items or ())
