"""Catalogue product model."""

from __future__ import annotations

from pydantic import AliasChoices, Field

from storesync.models._base import SyncBaseModel
from storesync.models.documents import CartItem


class Product(SyncBaseModel):
    """A product as listed in the catalogue.

    Only the fields a cart line needs are modelled; anything else in the
    product document is ignored.
    """

    product_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("id", "productId", "product_id"),
        serialization_alias="id",
    )
    name: str | None = None
    price: float = Field(default=0.0, ge=0)
    in_stock: bool = True

    def to_cart_item(self, quantity: int = 1) -> CartItem:
        return CartItem(product_id=self.product_id, quantity=quantity, price=self.price, name=self.name)
