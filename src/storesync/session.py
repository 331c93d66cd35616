"""Owner session state for the sync engine."""

from __future__ import annotations

import secrets
import time

from pydantic import BaseModel, ConfigDict, Field

from storesync.models.identity import Identity


def _new_token() -> str:
    return secrets.token_hex(8)


class OwnerSession(BaseModel):
    """One sign-in period of one owner.

    A fresh session (and token) is created on every owner switch. Every
    asynchronous result the engine receives is tagged with the session it
    was started under; results carrying a stale session are discarded.

    Parameters
    ----------
    identity : Identity
        The signed-in account.
    token : str
        Random token unique to this session.
    created_at : float
        Monotonic timestamp (``time.monotonic()``) when the session
        started.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
    )

    identity: Identity
    token: str = Field(default_factory=_new_token)
    created_at: float = Field(default_factory=time.monotonic)

    @property
    def owner_id(self) -> str:
        return self.identity.owner_id

    @property
    def age(self) -> float:
        """Seconds since the session started."""
        return time.monotonic() - self.created_at

    def matches(self, other: OwnerSession | None) -> bool:
        return other is not None and other.token == self.token
