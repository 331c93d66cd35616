"""Reconciliation and write-failure policy.

This module contains no I/O. The engine asks it what to do; it never
touches the cache itself.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class WritePolicy(StrEnum):
    """What happens to the cached value when a remote write fails.

    ``OPTIMISTIC`` keeps the local value (the cache is never rolled back).
    ``ROLLBACK`` restores the last value confirmed by the remote store.
    Snapshots from other clients that arrived while the write was pending
    were ignored and are not sent again, so that value may be out of date;
    the engine re-reads the document after every rollback.
    """

    OPTIMISTIC = "optimistic"
    ROLLBACK = "rollback"


def should_apply_snapshot(*, write_pending: bool) -> bool:
    """Decide whether a remote snapshot may replace the cached value.

    Local intent wins while a write for the key is armed or in flight; the
    snapshot is most likely a stale echo of an older document.
    """
    return not write_pending


def rollback_target(
    *,
    policy: WritePolicy,
    write_pending: bool,
    confirmed: Any,
) -> tuple[bool, Any]:
    """Return ``(restore, value)`` for a failed write.

    Never restores while a newer write is pending: that write carries
    fresher local intent and will report its own outcome.
    """
    if policy is not WritePolicy.ROLLBACK or write_pending:
        return False, None
    return True, confirmed
