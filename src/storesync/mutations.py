"""Pure update functions for :meth:`storesync.engine.SyncEngine.mutate`.

Each factory returns ``fn(current) -> new`` where ``current`` is the cached
items tuple (or ``None`` before the entity exists). None of them mutate
their input.
"""

from __future__ import annotations

from collections.abc import Callable

from storesync.models.documents import CartItem, CartValue, WishlistValue

CartUpdate = Callable[[CartValue | None], CartValue]
WishlistUpdate = Callable[[WishlistValue | None], WishlistValue]


def add_item(
    product_id: str,
    *,
    quantity: int = 1,
    price: float | None = None,
    name: str | None = None,
) -> CartUpdate:
    """Add *quantity* of a product, merging with an existing line."""
    if quantity <= 0:
        raise ValueError(f"quantity must be positive, got {quantity}")

    def _apply(current: CartValue | None) -> CartValue:
        items = current or ()
        for index, item in enumerate(items):
            if item.product_id == product_id:
                updated = item.model_copy(update={"quantity": item.quantity + quantity})
                return (*items[:index], updated, *items[index + 1 :])
        return (*items, CartItem(product_id=product_id, quantity=quantity, price=price, name=name))

    return _apply


def remove_item(product_id: str) -> CartUpdate:
    def _apply(current: CartValue | None) -> CartValue:
        return tuple(item for item in current or () if item.product_id != product_id)

    return _apply


def set_quantity(product_id: str, quantity: int) -> CartUpdate:
    """Set a line's quantity; zero or below removes the line.

    Unknown products are left untouched.
    """
    if quantity <= 0:
        return remove_item(product_id)

    def _apply(current: CartValue | None) -> CartValue:
        return tuple(
            item.model_copy(update={"quantity": quantity}) if item.product_id == product_id else item
            for item in current or ()
        )

    return _apply


def clear_items() -> Callable[[tuple[object, ...] | None], tuple[()]]:
    """Empty any entity. Clearing writes an empty value; documents are never deleted."""

    def _apply(_current: tuple[object, ...] | None) -> tuple[()]:
        return ()

    return _apply


def add_product(product_id: str) -> WishlistUpdate:
    def _apply(current: WishlistValue | None) -> WishlistValue:
        items = current or ()
        if product_id in items:
            return items
        return (*items, product_id)

    return _apply


def remove_product(product_id: str) -> WishlistUpdate:
    def _apply(current: WishlistValue | None) -> WishlistValue:
        return tuple(item for item in current or () if item != product_id)

    return _apply


def toggle_product(product_id: str) -> WishlistUpdate:
    def _apply(current: WishlistValue | None) -> WishlistValue:
        items = current or ()
        if product_id in items:
            return remove_product(product_id)(items)
        return add_product(product_id)(items)

    return _apply
