"""Base model and timestamp parsing for remote documents.

Every wire model inherits from :class:`SyncBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase document keys map
  automatically to snake_case fields.
* ``extra="ignore"`` so documents written by other clients with
  additional fields still validate.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_timestamp(value: Any) -> datetime | None:
    """Convert a document timestamp to a UTC datetime.

    Accepts datetimes, ISO-8601 strings, epoch seconds **or**
    milliseconds, and ``{"seconds": ..., "nanoseconds": ...}`` objects
    as written by hosted document databases.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError(f"timestamp object without seconds: {dict(value)!r}")
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        return datetime.fromtimestamp(int(seconds) + int(nanos) / 1e9, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text.lstrip("-").isdigit():
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
        value = text
    ts = int(value)
    if ts >= _MS_THRESHOLD:
        ts = ts // 1000
    return datetime.fromtimestamp(ts, tz=UTC)


Timestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces the supported timestamp encodings to UTC datetimes."""


class SyncBaseModel(BaseModel):
    """Base for remote document models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )
