"""Debounced remote writes.

Coalesces bursts of local mutations into one delayed write per key.
Every ``schedule`` call re-arms the key's timer (debounce, not throttle),
so N calls within ``delay`` of each other produce exactly one write of
the last value. Writes for the same key never overlap: a timer that
fires while an earlier write is still in flight waits for it.

Failed writes are reported once through ``on_result`` and are **not**
retried. The next ``schedule`` for the key retries implicitly; a failure
with no later mutation is a lost write unless the caller acts on the
reported result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from storesync.config import DEFAULT_DEBOUNCE_DELAY

_logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


@dataclass(frozen=True, slots=True)
class WriteResult(Generic[K]):
    """Outcome of one remote write."""

    key: K
    value: Any
    error: Exception | None = None
    tag: Any = None
    """Opaque value passed to ``schedule``; the engine uses the owner session."""

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class _ArmedWrite:
    value: Any
    tag: Any
    handle: asyncio.TimerHandle


class DebouncedWriter(Generic[K]):
    """Map of key to cancellable timer handle, plus the in-flight write per key."""

    def __init__(
        self,
        send: Callable[[K, Any], Awaitable[None]],
        *,
        on_result: Callable[[WriteResult[K]], None] | None = None,
        delay: float = DEFAULT_DEBOUNCE_DELAY,
        logger: logging.Logger | None = None,
    ) -> None:
        self._send = send
        self._on_result = on_result
        self._delay = delay
        self._logger = logger or _logger
        self._armed: dict[K, _ArmedWrite] = {}
        self._inflight: dict[K, asyncio.Task[None]] = {}

    @property
    def delay(self) -> float:
        return self._delay

    def schedule(self, key: K, value: Any, delay: float | None = None, *, tag: Any = None) -> None:
        """Arm (or re-arm) the write of *value* for *key*.

        Must be called from the event loop thread. A previously armed
        value for *key* is dropped without being written.
        """
        loop = asyncio.get_running_loop()
        effective_delay = self._delay if delay is None else delay
        previous = self._armed.pop(key, None)
        if previous is not None:
            previous.handle.cancel()
            self._logger.debug("Debounce re-armed key=%s", key)
        handle = loop.call_later(max(effective_delay, 0.0), self._fire, key)
        self._armed[key] = _ArmedWrite(value=value, tag=tag, handle=handle)

    def cancel(self, key: K) -> bool:
        """Drop the armed write for *key*. In-flight writes are left to finish."""
        armed = self._armed.pop(key, None)
        if armed is None:
            return False
        armed.handle.cancel()
        self._logger.debug("Debounced write cancelled key=%s", key)
        return True

    def cancel_all(self) -> list[K]:
        keys = list(self._armed)
        for key in keys:
            self.cancel(key)
        return keys

    def is_armed(self, key: K) -> bool:
        return key in self._armed

    def is_pending(self, key: K) -> bool:
        """Whether a write for *key* is armed or in flight."""
        return key in self._armed or key in self._inflight

    def pending_keys(self) -> set[K]:
        return set(self._armed) | set(self._inflight)

    async def flush(self, key: K | None = None) -> None:
        """Fire armed writes now and wait for in-flight writes to finish.

        Restricted to *key* when given. Write errors are reported through
        ``on_result``, not raised.
        """
        keys = [key] if key is not None else list(self._armed)
        for armed_key in keys:
            armed = self._armed.get(armed_key)
            if armed is not None:
                armed.handle.cancel()
                self._fire(armed_key)
        tasks = [task for k, task in self._inflight.items() if key is None or k == key]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Drop armed writes and cancel in-flight writes."""
        self.cancel_all()
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    def _fire(self, key: K) -> None:
        armed = self._armed.pop(key, None)
        if armed is None:
            return
        previous = self._inflight.get(key)
        task = asyncio.get_running_loop().create_task(self._run(key, armed.value, armed.tag, previous))
        self._inflight[key] = task

    async def _run(
        self,
        key: K,
        value: Any,
        tag: Any,
        previous: asyncio.Task[None] | None,
    ) -> None:
        current = asyncio.current_task()
        error: Exception | None = None
        try:
            if previous is not None:
                await asyncio.wait([previous])
            self._logger.debug("Writing key=%s", key)
            await self._send(key, value)
        except Exception as exc:
            error = exc
        finally:
            # A newer chained write may own the slot already.
            if self._inflight.get(key) is current:
                del self._inflight[key]
        self._report(WriteResult(key=key, value=value, error=error, tag=tag))

    def _report(self, result: WriteResult[K]) -> None:
        if result.error is not None:
            self._logger.debug("Write failed key=%s: %s", result.key, result.error)
        if self._on_result is None:
            return
        try:
            self._on_result(result)
        except Exception:
            self._logger.debug("on_result callback failed key=%s", result.key, exc_info=True)
