"""REST document store with MQTT push and HTTP polling fallback."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from storesync._constants import DOCUMENTS_PATH
from storesync._mqtt import DocumentPush, DocumentPushRuntime, document_topic
from storesync._transport import Transport
from storesync.config import SyncConfig
from storesync.remote.base import ErrorCallback, SnapshotCallback, Subscription
from storesync.state.keys import EntityKey

_logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(eq=False, slots=True)
class _PushHandler:
    key: EntityKey
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback | None
    poll_task: asyncio.Task[None] | None = None


class HttpDocumentStore:
    """:class:`storesync.remote.base.RemoteStore` backed by the REST API.

    Snapshots arrive over MQTT while *push_runtime* is running. Otherwise
    each subscription polls the document every ``config.poll_interval``
    seconds, starting one interval after it was opened, and delivers only
    changed snapshots. When the runtime fails after subscriptions were
    opened, :meth:`fail_push` moves them to polling.
    """

    def __init__(
        self,
        config: SyncConfig,
        transport: Transport,
        *,
        push_runtime: DocumentPushRuntime | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._push_runtime = push_runtime
        self._push_handlers: dict[str, list[_PushHandler]] = {}
        self._poll_tasks: set[asyncio.Task[None]] = set()
        self._push_failed = False

    @staticmethod
    def document_path(key: EntityKey) -> str:
        return f"{DOCUMENTS_PATH}/{key.path}"

    @property
    def push_enabled(self) -> bool:
        runtime = self._push_runtime
        return not self._push_failed and runtime is not None and runtime.is_running

    async def get(self, key: EntityKey) -> Mapping[str, Any] | None:
        # Shape validation happens in the engine; non-object bodies pass through.
        return await self._transport.get_json(self.document_path(key))

    async def set(self, key: EntityKey, document: Mapping[str, Any]) -> None:
        await self._transport.put_json(self.document_path(key), document)

    def subscribe(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        if self.push_enabled:
            return self._subscribe_push(key, on_snapshot, on_error)
        return self._subscribe_poll(key, on_snapshot, on_error)

    # ------------------------------------------------------------------
    # Push (MQTT)
    # ------------------------------------------------------------------

    def _subscribe_push(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
    ) -> Subscription:
        runtime = self._push_runtime
        assert runtime is not None  # noqa: S101
        topic = document_topic(self._config.mqtt_topic_prefix, key)
        handler = _PushHandler(key=key, on_snapshot=on_snapshot, on_error=on_error)
        self._push_handlers.setdefault(topic, []).append(handler)
        runtime.add_topic(topic)

        def _cancel() -> None:
            if handler.poll_task is not None:
                handler.poll_task.cancel()
            handlers = self._push_handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._push_handlers.pop(topic, None)
                runtime.remove_topic(topic)

        return Subscription(key, _cancel)

    def dispatch_push(self, push: DocumentPush) -> None:
        """Route a push received by the runtime to the matching subscriptions."""
        handlers = list(self._push_handlers.get(push.topic, ()))
        if not handlers:
            _logger.debug("Push for unsubscribed topic=%s ignored", push.topic)
            return
        for handler in handlers:
            try:
                handler.on_snapshot(push.payload)
            except Exception:
                _logger.debug("Snapshot callback failed key=%s", handler.key, exc_info=True)

    def fail_push(self, error: Exception) -> None:
        """Move every push subscription to polling after the runtime failed.

        Each subscription's error callback receives *error* once; polling
        then starts without waiting, since pushes may already have been
        missed. Later subscriptions poll from the start.
        """
        if self._push_failed:
            return
        self._push_failed = True
        handlers = [handler for topic_handlers in self._push_handlers.values() for handler in topic_handlers]
        _logger.warning("Document push failed (%s); polling %d subscription(s)", error, len(handlers))
        for handler in handlers:
            if handler.on_error is not None:
                try:
                    handler.on_error(error)
                except Exception:
                    _logger.debug("Error callback failed key=%s", handler.key, exc_info=True)
            if handler.poll_task is None:
                handler.poll_task = self._start_poll(handler.key, handler.on_snapshot, handler.on_error, delay=0.0)

    # ------------------------------------------------------------------
    # Polling fallback
    # ------------------------------------------------------------------

    def _subscribe_poll(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
    ) -> Subscription:
        _logger.debug("Push unavailable; polling key=%s every %.1fs", key, self._config.poll_interval)
        # The caller has just loaded the document; the first poll waits a full interval.
        task = self._start_poll(key, on_snapshot, on_error, delay=self._config.poll_interval)
        return Subscription(key, task.cancel)

    def _start_poll(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
        *,
        delay: float,
    ) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self._poll(key, on_snapshot, on_error, delay))
        self._poll_tasks.add(task)
        task.add_done_callback(self._poll_tasks.discard)
        return task

    async def _poll(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
        delay: float,
    ) -> None:
        last: Any = _UNSET
        await asyncio.sleep(delay)
        while True:
            try:
                raw = await self.get(key)
            except Exception as exc:
                _logger.debug("Snapshot poll failed key=%s", key, exc_info=True)
                if on_error is not None:
                    try:
                        on_error(exc)
                    except Exception:
                        _logger.debug("Error callback failed key=%s", key, exc_info=True)
            else:
                if raw != last:
                    last = raw
                    try:
                        on_snapshot(raw)
                    except Exception:
                        _logger.debug("Snapshot callback failed key=%s", key, exc_info=True)
            await asyncio.sleep(self._config.poll_interval)

    async def close(self) -> None:
        """Stop polling tasks and drop push subscriptions."""
        tasks = list(self._poll_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        runtime = self._push_runtime
        if runtime is not None:
            for topic in list(self._push_handlers):
                runtime.remove_topic(topic)
        self._push_handlers.clear()
