"""Shared in-process document store.

Development backend and test double. Several engines can share one
instance to model several clients writing the same documents.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from storesync.exceptions import RemoteUnavailableError
from storesync.remote.base import ErrorCallback, SnapshotCallback, Subscription
from storesync.state.keys import EntityKey

_logger = logging.getLogger(__name__)


@dataclass(eq=False, slots=True)
class _Subscriber:
    key: EntityKey
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback | None
    loop: asyncio.AbstractEventLoop
    active: bool = True


@dataclass
class InMemoryDocumentStore:
    """Dictionary-backed :class:`storesync.remote.base.RemoteStore`.

    Subscribing delivers the current snapshot and then every later change,
    each via ``loop.call_soon``. Set ``available = False`` to make every
    call fail with :class:`RemoteUnavailableError`; ``latency`` adds an
    ``asyncio.sleep`` before each ``get``/``set`` completes.
    """

    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    available: bool = True
    latency: float = 0.0
    get_calls: list[EntityKey] = field(default_factory=list)
    set_calls: list[tuple[EntityKey, dict[str, Any]]] = field(default_factory=list)
    _subscribers: dict[str, list[_Subscriber]] = field(default_factory=dict, init=False, repr=False)

    def _check_available(self, key: EntityKey) -> None:
        if not self.available:
            raise RemoteUnavailableError(f"Document store unavailable for {key.path}", path=key.path)

    async def get(self, key: EntityKey) -> dict[str, Any] | None:
        self.get_calls.append(key)
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        self._check_available(key)
        document = self.documents.get(key.path)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, key: EntityKey, document: Mapping[str, Any]) -> None:
        snapshot = copy.deepcopy(dict(document))
        self.set_calls.append((key, snapshot))
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        self._check_available(key)
        self.put(key, snapshot)

    def put(self, key: EntityKey, document: Mapping[str, Any] | None) -> None:
        """Write a document as another client would (no availability check).

        ``None`` deletes the document.
        """
        if document is None:
            self.documents.pop(key.path, None)
        else:
            self.documents[key.path] = copy.deepcopy(dict(document))
        self.emit(key, self.documents.get(key.path))

    def emit(self, key: EntityKey, raw: Any) -> None:
        """Push *raw* to subscribers of *key* without storing it."""
        for subscriber in list(self._subscribers.get(key.path, ())):
            subscriber.loop.call_soon(self._deliver, subscriber, copy.deepcopy(raw))

    def fail_subscribers(self, key: EntityKey, error: Exception) -> None:
        """Report *error* to the error callbacks subscribed to *key*."""
        for subscriber in list(self._subscribers.get(key.path, ())):
            if subscriber.on_error is not None:
                subscriber.loop.call_soon(self._deliver_error, subscriber, error)

    def subscribe(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        self._check_available(key)
        subscriber = _Subscriber(
            key=key,
            on_snapshot=on_snapshot,
            on_error=on_error,
            loop=asyncio.get_running_loop(),
        )
        self._subscribers.setdefault(key.path, []).append(subscriber)
        subscriber.loop.call_soon(self._deliver, subscriber, copy.deepcopy(self.documents.get(key.path)))

        def _cancel() -> None:
            subscriber.active = False
            subscribers = self._subscribers.get(key.path, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)
            if not subscribers:
                self._subscribers.pop(key.path, None)

        return Subscription(key, _cancel)

    def subscriber_count(self, key: EntityKey) -> int:
        return len(self._subscribers.get(key.path, ()))

    @staticmethod
    def _deliver(subscriber: _Subscriber, raw: Any) -> None:
        if not subscriber.active:
            return
        try:
            subscriber.on_snapshot(raw)
        except Exception:
            _logger.debug("Snapshot callback failed key=%s", subscriber.key, exc_info=True)

    @staticmethod
    def _deliver_error(subscriber: _Subscriber, error: Exception) -> None:
        if not subscriber.active or subscriber.on_error is None:
            return
        try:
            subscriber.on_error(error)
        except Exception:
            _logger.debug("Error callback failed key=%s", subscriber.key, exc_info=True)
