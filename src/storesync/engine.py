"""Client-side synchronization engine.

Composes the optimistic cache, the debounced writer and the remote
subscriptions for the entities of one owner at a time.

Data flow::

    mutate() -> cache (synchronous) -> debounced write -> RemoteStore.set
    RemoteStore.subscribe -> reconcile -> cache -> change listeners

Consistency model
-----------------
* Local mutations are applied to the cache immediately and never wait
  for the network.
* Remote snapshots replace the cached value, except while a write for the
  same key is armed or in flight: local intent wins until that write
  completes.
* Failed writes are reported and not retried. With the default
  ``optimistic`` write policy the cache keeps the local value even
  though the remote store never received it; the ``rollback`` policy
  restores the last remote-confirmed value instead and then re-reads
  the document, since snapshots ignored during the write are not resent.
* Mutations made while an entity is still loading are replayed on top
  of the loaded document before anything is written.
* Other clients may write the same documents; the last writer wins and
  there is no locking.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from storesync._debounce import DebouncedWriter, WriteResult
from storesync._redact import redact_for_log
from storesync.config import SyncConfig
from storesync.exceptions import MalformedSnapshotError
from storesync.models.documents import decode_items, empty_value, encode_document, normalize_items
from storesync.models.identity import Identity
from storesync.remote.base import RemoteStore, Subscription
from storesync.selectors import (
    cart_contains,
    cart_item_count,
    cart_total,
    distinct_count,
    wishlist_contains,
)
from storesync.session import OwnerSession
from storesync.state.cache import ChangeListener, OptimisticStateCache
from storesync.state.events import EntityStatus, SyncError, SyncErrorKind
from storesync.state.keys import EntityKey, EntityScope
from storesync.state.policy import rollback_target, should_apply_snapshot

_logger = logging.getLogger(__name__)

ErrorListener = Callable[[SyncError], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class _EntityState:
    """Per-scope bookkeeping for the current owner."""

    status: EntityStatus = EntityStatus.UNINITIALIZED
    key: EntityKey | None = None
    confirmed: tuple[Any, ...] = ()
    """Last value known to be stored remotely."""
    subscription: Subscription | None = None
    deferred: list[Callable[[Any], Any]] = field(default_factory=list)
    """Updates made while seeding, replayed on top of the loaded value."""


class SyncEngine:
    """Optimistic, debounced synchronization of per-owner entities.

    Usage::

        engine = SyncEngine(store, on_change=render, on_error=toast)
        await engine.set_owner(identity)
        engine.mutate(EntityScope.CART, add_item("p1", price=9.5))
        engine.cart_total()

    All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        store: RemoteStore,
        *,
        config: SyncConfig | None = None,
        scopes: Iterable[EntityScope | str] = tuple(EntityScope),
        on_change: ChangeListener | None = None,
        on_error: ErrorListener | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config or SyncConfig()
        self._clock = clock
        self._cache = OptimisticStateCache()
        self._writer: DebouncedWriter[EntityKey] = DebouncedWriter(
            self._send,
            on_result=self._on_write_result,
            delay=self._config.debounce_delay,
            logger=_logger,
        )
        self._entities: dict[EntityScope, _EntityState] = {EntityScope(scope): _EntityState() for scope in scopes}
        self._session: OwnerSession | None = None
        self._refreshes: set[asyncio.Task[None]] = set()
        self._error_listeners: list[ErrorListener] = []
        self._last_error: SyncError | None = None
        if on_change is not None:
            self._cache.add_listener(None, on_change)
        if on_error is not None:
            self._error_listeners.append(on_error)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SyncEngine:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self, *, flush: bool = False) -> None:
        """Tear down the current owner and stop all writes.

        With ``flush=True`` pending writes are sent (and awaited) first;
        otherwise they are dropped.
        """
        if flush:
            await self.flush()
        self._teardown()
        await self._writer.close()
        for task in list(self._refreshes):
            task.cancel()
        await asyncio.gather(*self._refreshes, return_exceptions=True)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def scopes(self) -> tuple[EntityScope, ...]:
        return tuple(self._entities)

    @property
    def session(self) -> OwnerSession | None:
        return self._session

    @property
    def owner(self) -> Identity | None:
        session = self._session
        return session.identity if session is not None else None

    @property
    def loading(self) -> bool:
        """Whether any entity is still waiting for its initial load."""
        return any(entity.status is EntityStatus.SEEDING for entity in self._entities.values())

    @property
    def last_error(self) -> SyncError | None:
        return self._last_error

    def status(self, scope: EntityScope | str) -> EntityStatus:
        return self._entity(scope).status

    def has_pending_write(self, scope: EntityScope | str) -> bool:
        entity = self._entity(scope)
        if entity.deferred:
            return True
        return entity.key is not None and self._writer.is_pending(entity.key)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, scope: EntityScope | str | None, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener(scope, value)`` on every cache change of *scope* (``None``: all scopes)."""
        cache_key = self._scope(scope).value if scope is not None else None
        return self._cache.add_listener(cache_key, listener)

    def add_error_listener(self, listener: ErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)

        def _remove() -> None:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Owner lifecycle
    # ------------------------------------------------------------------

    async def set_owner(self, identity: Identity | str | None) -> None:
        """Switch the owner whose entities are synchronized.

        Everything belonging to the previous owner (armed writes,
        subscriptions, cached values) is torn down before the first await,
        so nothing of theirs can reach the new owner's state. Writes already
        in flight finish against the previous owner's documents and their
        results are discarded.
        """
        if isinstance(identity, str):
            identity = Identity(owner_id=identity)

        current = self._session
        if identity is not None and current is not None and current.owner_id == identity.owner_id:
            if identity != current.identity:
                self._session = current.model_copy(update={"identity": identity})
            return

        self._teardown()
        if identity is None:
            return

        session = OwnerSession(identity=identity)
        self._session = session
        _logger.debug("Owner set owner=%s session=%s", identity.owner_id, session.token)
        for scope, entity in self._entities.items():
            entity.key = EntityKey(scope, identity.owner_id)
            entity.status = EntityStatus.SEEDING
            entity.confirmed = empty_value(scope)
            self._cache.write(scope.value, empty_value(scope))

        await asyncio.gather(*(self._seed(session, scope) for scope in self._entities))

    def _teardown(self) -> None:
        session = self._session
        self._session = None
        dropped = 0
        for scope, entity in self._entities.items():
            if entity.key is not None and self._writer.cancel(entity.key):
                dropped += 1
            if entity.subscription is not None:
                entity.subscription.unsubscribe()
                entity.subscription = None
            entity.deferred.clear()
            entity.key = None
            entity.status = EntityStatus.UNINITIALIZED
            entity.confirmed = empty_value(scope)
            self._cache.delete(scope.value)
        if session is not None:
            _logger.debug("Owner cleared owner=%s dropped_writes=%d", session.owner_id, dropped)

    async def _seed(self, session: OwnerSession, scope: EntityScope) -> None:
        # The entity may already belong to a newer owner by the time this runs.
        entity = self._entities[scope]
        key = EntityKey(scope, session.owner_id)
        loaded = False
        raw: Any = None
        try:
            raw = await self._store.get(key)
            loaded = True
        except Exception as exc:
            if self._is_current(session):
                self._report(scope, SyncErrorKind.REMOTE_UNAVAILABLE, f"Initial load of {key} failed: {exc}", key)

        if not self._is_current(session):
            _logger.debug("Discarding initial load for stale owner key=%s", key)
            return

        if loaded:
            self._ingest(scope, raw)
        else:
            self._cache.write(scope.value, empty_value(scope))
        self._open_subscription(session, scope, key)
        entity.status = EntityStatus.LIVE
        if entity.deferred:
            self._replay_deferred(session, scope)

    def _replay_deferred(self, session: OwnerSession, scope: EntityScope) -> None:
        entity = self._entities[scope]
        updates, entity.deferred = entity.deferred, []
        value = self._cache.read(scope.value)
        for update_fn in updates:
            try:
                value = normalize_items(scope, update_fn(value))
            except Exception:
                _logger.warning("Dropping update made while %s was loading", entity.key, exc_info=True)
        _logger.debug("Replayed %d update(s) made while loading key=%s", len(updates), entity.key)
        self._cache.write(scope.value, value)
        self._writer.schedule(entity.key, value, tag=session.token)

    def _open_subscription(self, session: OwnerSession, scope: EntityScope, key: EntityKey) -> None:
        entity = self._entities[scope]
        try:
            entity.subscription = self._store.subscribe(
                key,
                functools.partial(self._on_snapshot, session, scope),
                functools.partial(self._on_subscription_error, session, scope),
            )
        except Exception as exc:
            self._report(scope, SyncErrorKind.REMOTE_UNAVAILABLE, f"Subscribe to {key} failed: {exc}", key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, scope: EntityScope | str) -> Any | None:
        """Current cached value; ``None`` when no owner is set."""
        return self._cache.read(self._scope(scope).value)

    @property
    def cart(self) -> tuple[Any, ...]:
        return self.read(EntityScope.CART) or ()

    @property
    def wishlist(self) -> tuple[Any, ...]:
        return self.read(EntityScope.WISHLIST) or ()

    def cart_total(self) -> float:
        return cart_total(self.cart)

    def cart_item_count(self) -> int:
        return cart_item_count(self.cart)

    def cart_count(self) -> int:
        return distinct_count(self.cart)

    def wishlist_count(self) -> int:
        return distinct_count(self.wishlist)

    def is_in_cart(self, product_id: str) -> bool:
        return cart_contains(self.cart, product_id)

    def is_in_wishlist(self, product_id: str) -> bool:
        return wishlist_contains(self.wishlist, product_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def mutate(self, scope: EntityScope | str, update_fn: Callable[[Any], Any]) -> Any | None:
        """Apply *update_fn* to the cached value and schedule the remote write.

        Returns the new value immediately; never waits for the network.
        Without an owner the call is ignored and returns ``None``.
        Exceptions raised by *update_fn* propagate to the caller.

        While the scope is still loading, the update is shown in the cache
        right away and replayed on top of the loaded document once it
        arrives; only the replayed value is written.
        """
        scope = self._scope(scope)
        entity = self._entities[scope]
        session = self._session
        if session is None or entity.key is None:
            _logger.debug("mutate(%s) ignored: no owner", scope)
            return None

        new_value = normalize_items(scope, update_fn(self._cache.read(scope.value)))
        self._cache.write(scope.value, new_value)
        if entity.status is EntityStatus.SEEDING:
            entity.deferred.append(update_fn)
            return new_value
        self._writer.schedule(entity.key, new_value, tag=session.token)
        return new_value

    async def flush(self) -> None:
        """Send pending writes now and wait for every in-flight write."""
        await self._writer.flush()

    async def _send(self, key: EntityKey, value: Any) -> None:
        document = encode_document(key.scope, key.owner_id, value, self._clock())
        await self._store.set(key, document)

    def _on_write_result(self, result: WriteResult[EntityKey]) -> None:
        key = result.key
        session = self._session
        if session is None or session.token != result.tag:
            _logger.debug("Discarding write result for stale owner key=%s", key)
            return

        entity = self._entities[key.scope]
        if result.ok:
            entity.confirmed = result.value
            _logger.debug("Write confirmed key=%s", key)
            return

        restore, value = rollback_target(
            policy=self._config.write_policy,
            write_pending=self._writer.is_pending(key),
            confirmed=entity.confirmed,
        )
        if restore:
            _logger.warning("Write of %s failed; rolling back to last confirmed value", key)
            self._cache.write(key.scope.value, value)
            self._schedule_refresh(session, key)
        else:
            _logger.warning("Write of %s failed; keeping local value", key)
        self._report(key.scope, SyncErrorKind.REMOTE_UNAVAILABLE, f"Write of {key} failed: {result.error}", key)

    def _schedule_refresh(self, session: OwnerSession, key: EntityKey) -> None:
        # Snapshots ignored while the write was pending are not sent again.
        task = asyncio.get_running_loop().create_task(self._refresh(session, key))
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    async def _refresh(self, session: OwnerSession, key: EntityKey) -> None:
        try:
            raw = await self._store.get(key)
        except Exception as exc:
            _logger.debug("Refresh of %s after rollback failed: %s", key, exc)
            return
        if not self._is_current(session):
            return
        self._ingest(key.scope, raw)

    # ------------------------------------------------------------------
    # Remote snapshots
    # ------------------------------------------------------------------

    def on_remote_snapshot(self, scope: EntityScope | str, value: Any) -> bool:
        """Reconcile a decoded remote value with the cache.

        Returns ``True`` when the value was accepted (whether or not it
        changed the cache), ``False`` when it was ignored because a local
        write is pending or no owner is set.
        """
        scope = self._scope(scope)
        entity = self._entities[scope]
        if entity.key is None:
            return False
        if not should_apply_snapshot(write_pending=self._writer.is_pending(entity.key)):
            _logger.debug("Ignoring snapshot key=%s: local write pending", entity.key)
            return False
        entity.confirmed = value
        self._cache.write(scope.value, value)
        return True

    def _on_snapshot(self, session: OwnerSession, scope: EntityScope, raw: Any) -> None:
        if not self._is_current(session):
            _logger.debug("Discarding snapshot for stale owner scope=%s", scope)
            return
        self._ingest(scope, raw)

    def _on_subscription_error(self, session: OwnerSession, scope: EntityScope, error: Exception) -> None:
        if not self._is_current(session):
            return
        key = self._entities[scope].key
        self._report(scope, SyncErrorKind.REMOTE_UNAVAILABLE, f"Subscription to {key} failed: {error}", key)

    def _ingest(self, scope: EntityScope, raw: Any) -> None:
        key = self._entities[scope].key
        try:
            value = decode_items(scope, raw, path=key.path if key is not None else "")
        except MalformedSnapshotError as exc:
            _logger.debug("Malformed snapshot key=%s raw=%s", key, redact_for_log(raw))
            self._report(scope, SyncErrorKind.MALFORMED_SNAPSHOT, str(exc), key)
            value = empty_value(scope)
        self.on_remote_snapshot(scope, value)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _scope(self, scope: EntityScope | str) -> EntityScope:
        resolved = EntityScope(scope)
        if resolved not in self._entities:
            raise ValueError(f"Scope {resolved!r} is not tracked by this engine")
        return resolved

    def _entity(self, scope: EntityScope | str) -> _EntityState:
        return self._entities[self._scope(scope)]

    def _is_current(self, session: OwnerSession) -> bool:
        return session.matches(self._session)

    def _report(
        self,
        scope: EntityScope,
        kind: SyncErrorKind,
        message: str,
        key: EntityKey | None = None,
    ) -> None:
        error = SyncError(key=scope.value, kind=kind, message=message, path=key.path if key is not None else "")
        self._last_error = error
        _logger.debug("Sync error scope=%s kind=%s: %s", scope, kind, message)
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                _logger.debug("Error listener failed", exc_info=True)
