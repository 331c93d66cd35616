"""Redaction of account data in debug logs.

Request bodies and snapshots pass through :func:`redact_for_log` before
they reach a DEBUG trace. Credentials are replaced outright; email
addresses keep only their domain so traces can still tell accounts apart.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "token",
        "apitoken",
        "accesstoken",
        "refreshtoken",
        "idtoken",
        "authorization",
        "cookie",
    }
)

_EMAIL_KEYS: frozenset[str] = frozenset({"email", "useremail"})

_MAX_DEPTH = 20


def _normalize_key(key: object) -> str:
    return str(key).replace("_", "").replace("-", "").lower()


def _mask_email(value: Any) -> str:
    if not isinstance(value, str) or "@" not in value:
        return "<redacted>"
    return f"***@{value.rsplit('@', 1)[1]}"


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a copy of *value* that is safe to emit in DEBUG logs.

    Models are dumped with their remote field names first, so a cached
    items tuple and the document it was decoded from redact the same way.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for raw_key, item in value.items():
            key = str(raw_key)
            normalized = _normalize_key(key)
            if normalized in _SECRET_KEYS:
                redacted[key] = "<redacted>"
            elif normalized in _EMAIL_KEYS:
                redacted[key] = _mask_email(item)
            else:
                redacted[key] = redact_for_log(item, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Iterable):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]
    return repr(value)
