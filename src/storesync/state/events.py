"""Engine status and error events.

Every remote failure the engine observes is converted into a
:class:`SyncError` and fanned out through a single error channel.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityStatus(StrEnum):
    UNINITIALIZED = "uninitialized"
    SEEDING = "seeding"
    LIVE = "live"


class SyncErrorKind(StrEnum):
    REMOTE_UNAVAILABLE = "remote_unavailable"
    MALFORMED_SNAPSHOT = "malformed_snapshot"
    # Reserved: stale-session results are discarded without being reported.
    OWNER_MISMATCH = "owner_mismatch"


class SyncError(BaseModel):
    """An error reported by the engine for one entity."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Entity scope the error belongs to")
    kind: SyncErrorKind
    message: str = ""
    path: str = Field(default="", description="Remote document path, when known")
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
