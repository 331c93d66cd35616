"""In-memory optimistic state cache.

Holds one current value per string key and fans changes out to listeners
synchronously. Values are expected to be immutable (the engine stores
tuples of frozen models), so reads hand out the stored object directly.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

_logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, Any], None]
"""Called as ``listener(key, value)``; ``value`` is ``None`` when the key was removed."""

_MISSING = object()


class OptimisticStateCache:
    """Last-known-good value per key.

    ``write`` of a value deeply equal to the current one is a no-op and
    does not notify; views re-render only on real changes.
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._listeners: dict[str | None, list[ChangeListener]] = {}

    def read(self, key: str) -> Any | None:
        return self._values.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def keys(self) -> list[str]:
        return list(self._values)

    def write(self, key: str, value: Any) -> bool:
        """Replace the value for *key*.

        Returns ``True`` when listeners were notified, ``False`` for a no-op.
        """
        current = self._values.get(key, _MISSING)
        if current is not _MISSING and current == value:
            return False
        self._values[key] = value
        self._notify(key, value)
        return True

    def delete(self, key: str) -> bool:
        if key not in self._values:
            return False
        del self._values[key]
        self._notify(key, None)
        return True

    def clear(self) -> None:
        for key in list(self._values):
            self.delete(key)

    def add_listener(self, key: str | None, listener: ChangeListener) -> Callable[[], None]:
        """Register *listener* for *key* (``None`` means every key).

        Returns a callable that removes the listener; calling it twice is harmless.
        """
        self._listeners.setdefault(key, []).append(listener)

        def _remove() -> None:
            listeners = self._listeners.get(key)
            if listeners is None:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                del self._listeners[key]

        return _remove

    def _notify(self, key: str, value: Any) -> None:
        targets = [*self._listeners.get(key, ()), *self._listeners.get(None, ())]
        for listener in targets:
            try:
                listener(key, value)
            except Exception:
                _logger.debug("Cache listener failed for key=%s", key, exc_info=True)
