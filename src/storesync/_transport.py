"""JSON-over-HTTP transport for the document store REST API."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from storesync._constants import USER_AGENT
from storesync._redact import redact_for_log
from storesync.config import SyncConfig
from storesync.exceptions import RemoteUnavailableError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by the HTTP document store.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`JsonTransport`) concrete.
    """

    async def get_json(self, path: str) -> Any | None: ...

    async def put_json(self, path: str, payload: Mapping[str, Any]) -> None: ...


class JsonTransport:
    """aiohttp transport that maps every failure to :class:`RemoteUnavailableError`."""

    def __init__(
        self,
        config: SyncConfig,
        http_session: aiohttp.ClientSession,
    ) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._config.api_token:
            headers["authorization"] = f"Bearer {self._config.api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> tuple[int, str]:
        url = f"{self._config.base_url}{path}"
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else None

        _logger.debug("%s %s", method, url)
        if self._config.api_trace_enabled and payload is not None:
            _logger.debug("Request body %s: %s", path, redact_for_log(payload))

        try:
            async with self._http.request(
                method,
                url,
                data=body,
                headers=self._headers(),
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                return resp.status, text
        except aiohttp.ClientError as exc:
            raise RemoteUnavailableError(f"{method} {path} failed: {exc}", path=path) from exc
        except TimeoutError as exc:
            raise RemoteUnavailableError(
                f"{method} {path} timed out after {self._config.request_timeout}s",
                path=path,
            ) from exc

    async def get_json(self, path: str) -> Any | None:
        """Fetch and decode a JSON body. Returns ``None`` on 404."""
        status, text = await self._request("GET", path)
        if status == 404:
            return None
        if status != 200:
            raise RemoteUnavailableError(
                f"HTTP {status} from {path}: {text[:200]}",
                status_code=status,
                path=path,
            )
        try:
            result = json.loads(text)
        except json.JSONDecodeError as exc:
            raise RemoteUnavailableError(
                f"Invalid JSON from {path}: {text[:200]}",
                status_code=status,
                path=path,
            ) from exc
        if self._config.api_trace_enabled:
            _logger.debug("Response body %s: %s", path, redact_for_log(result))
        return result

    async def put_json(self, path: str, payload: Mapping[str, Any]) -> None:
        status, text = await self._request("PUT", path, payload)
        if not 200 <= status < 300:
            raise RemoteUnavailableError(
                f"HTTP {status} from {path}: {text[:200]}",
                status_code=status,
                path=path,
            )
