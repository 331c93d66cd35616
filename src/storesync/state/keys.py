"""Entity scopes and keys.

One key identifies one remote document and one cached value.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class EntityScope(StrEnum):
    CART = "cart"
    WISHLIST = "wishlist"

    @property
    def collection(self) -> str:
        """Remote collection holding one document per owner."""
        return _COLLECTIONS[self]


_COLLECTIONS: dict[EntityScope, str] = {
    EntityScope.CART: "userCarts",
    EntityScope.WISHLIST: "userWishlists",
}


@dataclass(frozen=True, slots=True)
class EntityKey:
    """A ``(scope, owner_id)`` pair."""

    scope: EntityScope
    owner_id: str

    def __post_init__(self) -> None:
        owner_id = self.owner_id.strip()
        if not owner_id:
            raise ValueError("owner_id must be non-empty")
        object.__setattr__(self, "owner_id", owner_id)

    @property
    def path(self) -> str:
        return f"{self.scope.collection}/{self.owner_id}"

    def __str__(self) -> str:
        return self.path
