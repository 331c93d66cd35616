"""Data models for remote documents and accounts."""

from storesync.models._base import SyncBaseModel, Timestamp, parse_timestamp
from storesync.models.documents import (
    DOCUMENT_TYPES,
    CartDocument,
    CartItem,
    CartValue,
    WishlistDocument,
    WishlistValue,
    decode_items,
    empty_value,
    encode_document,
    normalize_items,
)
from storesync.models.identity import Identity, Role
from storesync.models.product import Product

__all__ = [
    "CartDocument",
    "CartItem",
    "CartValue",
    "DOCUMENT_TYPES",
    "Identity",
    "Product",
    "Role",
    "SyncBaseModel",
    "Timestamp",
    "WishlistDocument",
    "WishlistValue",
    "decode_items",
    "empty_value",
    "encode_document",
    "normalize_items",
    "parse_timestamp",
]
