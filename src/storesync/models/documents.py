"""Persisted entity documents and their codec.

The remote shape of every entity is ``{ownerId, items, updatedAt}``.
Cart items are ``{productId, quantity}`` (plus optional display fields);
wishlist items are bare product identifiers.

Locally, an entity value is just its items as an immutable tuple, so
deep equality between a cached value and a decoded snapshot is ``==``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, Field, ValidationError, field_validator

from storesync.exceptions import MalformedSnapshotError
from storesync.models._base import SyncBaseModel, Timestamp
from storesync.state.keys import EntityScope


class CartItem(SyncBaseModel):
    """One product line in a cart."""

    product_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("productId", "product_id", "id"),
        serialization_alias="productId",
    )
    quantity: int = Field(default=1, ge=1)
    price: float | None = None
    """Unit price captured when the product was added."""
    name: str | None = None


CartValue = tuple[CartItem, ...]
WishlistValue = tuple[str, ...]


def _is_non_positive_quantity(entry: Any) -> bool:
    if isinstance(entry, CartItem):
        return entry.quantity <= 0
    if isinstance(entry, Mapping):
        quantity = entry.get("quantity", 1)
        return isinstance(quantity, (int, float)) and not isinstance(quantity, bool) and quantity <= 0
    return False


def _merge_cart_items(items: Iterable[CartItem]) -> CartValue:
    """Collapse duplicate product ids by summing quantities.

    The first occurrence keeps its position and display fields.
    """
    merged: dict[str, CartItem] = {}
    for item in items:
        existing = merged.get(item.product_id)
        if existing is None:
            merged[item.product_id] = item
        else:
            merged[item.product_id] = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
    return tuple(merged.values())


def _require_sequence(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Iterable):
        raise ValueError(f"items must be a list, got {type(value).__name__}")
    return list(value)


class CartDocument(SyncBaseModel):
    """Remote cart document."""

    owner_id: str = Field(
        default="",
        validation_alias=AliasChoices("ownerId", "owner_id", "userId"),
        serialization_alias="ownerId",
    )
    items: CartValue = ()
    updated_at: Timestamp = None

    @field_validator("items", mode="before")
    @classmethod
    def _drop_empty_lines(cls, value: Any) -> list[Any]:
        # A quantity driven to zero or below removes the line entirely.
        return [entry for entry in _require_sequence(value) if not _is_non_positive_quantity(entry)]

    @field_validator("items")
    @classmethod
    def _unique_products(cls, value: CartValue) -> CartValue:
        return _merge_cart_items(value)


class WishlistDocument(SyncBaseModel):
    """Remote wishlist document."""

    owner_id: str = Field(
        default="",
        validation_alias=AliasChoices("ownerId", "owner_id", "userId"),
        serialization_alias="ownerId",
    )
    items: WishlistValue = ()
    updated_at: Timestamp = None

    @field_validator("items", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> list[Any]:
        return _require_sequence(value)

    @field_validator("items")
    @classmethod
    def _unique_products(cls, value: WishlistValue) -> WishlistValue:
        return tuple(dict.fromkeys(product_id for product_id in value if product_id))


DOCUMENT_TYPES: dict[EntityScope, type[CartDocument] | type[WishlistDocument]] = {
    EntityScope.CART: CartDocument,
    EntityScope.WISHLIST: WishlistDocument,
}


def empty_value(scope: EntityScope) -> tuple[Any, ...]:
    """Value of an entity whose document does not exist yet."""
    return ()


def decode_items(scope: EntityScope, raw: Any, *, path: str = "") -> tuple[Any, ...]:
    """Validate a raw remote document and return its items.

    ``None`` (no document) and a document without ``items`` decode to the
    empty value. Anything else that does not fit the scope's schema raises
    :class:`MalformedSnapshotError`.
    """
    if raw is None:
        return empty_value(scope)
    if not isinstance(raw, Mapping):
        raise MalformedSnapshotError(
            f"{scope} document must be an object, got {type(raw).__name__}",
            path=path,
        )
    if raw.get("items") is None:
        return empty_value(scope)
    try:
        document = DOCUMENT_TYPES[scope].model_validate(dict(raw))
    except ValidationError as exc:
        raise MalformedSnapshotError(
            f"{scope} document failed validation: {exc.error_count()} error(s), first: {exc.errors()[0]['msg']}",
            path=path,
        ) from exc
    return document.items


def normalize_items(scope: EntityScope, value: Any) -> tuple[Any, ...]:
    """Coerce a locally produced value to the scope's canonical items tuple.

    Applies the same invariants as decoding: no non-positive quantities,
    unique product ids. Raises :class:`pydantic.ValidationError` for values
    that cannot be items at all.
    """
    return DOCUMENT_TYPES[scope].model_validate({"items": value}).items


def encode_document(
    scope: EntityScope,
    owner_id: str,
    items: Iterable[Any],
    updated_at: datetime,
) -> dict[str, Any]:
    """Build the JSON document persisted for an entity."""
    document = DOCUMENT_TYPES[scope](owner_id=owner_id, items=tuple(items), updated_at=updated_at)
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)
