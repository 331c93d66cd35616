"""Remote document-store contract.

The engine only needs three operations from a backend: read a document,
replace a document, and subscribe to a document's snapshots. Having a
protocol here makes it easy to plug in test doubles while keeping the
production implementations concrete.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from storesync.state.keys import EntityKey

_logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Any], None]
"""Receives the raw document, or ``None`` when the document does not exist."""

ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Cancellable handle for a live snapshot subscription.

    ``unsubscribe`` is idempotent. The handle is also a context manager so
    a subscription can be scoped to a block::

        with store.subscribe(key, on_snapshot):
            ...
    """

    def __init__(self, key: EntityKey, cancel: Callable[[], None]) -> None:
        self._key = key
        self._cancel: Callable[[], None] | None = cancel

    @property
    def key(self) -> EntityKey:
        return self._key

    @property
    def active(self) -> bool:
        return self._cancel is not None

    def unsubscribe(self) -> None:
        cancel = self._cancel
        self._cancel = None
        if cancel is None:
            return
        try:
            cancel()
        except Exception:
            _logger.debug("Unsubscribe failed key=%s", self._key, exc_info=True)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"<Subscription {self._key.path} {state}>"


class RemoteStore(Protocol):
    """Structural interface implemented by every document-store backend.

    ``set`` raises :class:`storesync.exceptions.RemoteUnavailableError`
    (or another :class:`storesync.exceptions.RemoteStoreError`) on failure.
    Snapshot callbacks are invoked on the event loop thread.
    """

    async def get(self, key: EntityKey) -> Mapping[str, Any] | None: ...

    async def set(self, key: EntityKey, document: Mapping[str, Any]) -> None: ...

    def subscribe(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription: ...
