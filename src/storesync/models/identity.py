"""Authenticated account model."""

from __future__ import annotations

from enum import StrEnum

from pydantic import AliasChoices, Field, field_validator

from storesync.models._base import SyncBaseModel, Timestamp


class Role(StrEnum):
    USER = "user"
    ADMIN = "admin"


class Identity(SyncBaseModel):
    """The account whose entities the engine synchronizes.

    Passwords never reach this model; account documents are stripped of
    them before an identity is built.
    """

    owner_id: str = Field(
        ...,
        validation_alias=AliasChoices("id", "ownerId", "owner_id", "userId"),
        serialization_alias="id",
    )
    email: str | None = None
    name: str | None = None
    role: Role = Role.USER
    approved: bool = False
    """Pending registrations are unapproved until an admin approves them."""
    created_at: Timestamp = None

    @field_validator("owner_id")
    @classmethod
    def _normalize_owner_id(cls, value: str) -> str:
        owner_id = value.strip()
        if not owner_id:
            raise ValueError("owner_id must be non-empty")
        return owner_id

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
