"""Client configuration for storesync."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit

from storesync.exceptions import SyncConfigError
from storesync.state.policy import WritePolicy

#: Quiet period (seconds) before a burst of local mutations is written out.
DEFAULT_DEBOUNCE_DELAY: float = 0.3

_TRUE_VALUES = frozenset({"1", "true", "yes", "y", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "n", "off"})


def _parse_bool(raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(raw)


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Client configuration.

    Parameters
    ----------
    base_url : str
        Document-store REST endpoint.
    api_token : str or None
        Bearer token sent with every REST request and used as the MQTT
        password.
    debounce_delay : float
        Seconds of quiet before coalesced local mutations are written.
    write_policy : WritePolicy
        ``optimistic`` keeps the local value when a write fails;
        ``rollback`` restores the last value confirmed by the store.
    request_timeout : float
        Total timeout in seconds for a single REST request.
    poll_interval : float
        Seconds between snapshot polls when the push channel is unavailable.
    mqtt_enabled : bool
        Receive live snapshots over MQTT instead of polling.
    mqtt_host : str or None
        Broker host. Defaults to the host of ``base_url``.
    mqtt_port : int
        Broker port.
    mqtt_tls : bool
        Connect to the broker over TLS.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_username : str or None
        Broker username.
    mqtt_topic_prefix : str
        Topic prefix; documents are published under
        ``<prefix>/<collection>/<owner>``.
    api_trace_enabled : bool
        Log redacted request and response bodies at DEBUG level.
    """

    base_url: str = "http://localhost:8080"
    api_token: str | None = None
    debounce_delay: float = DEFAULT_DEBOUNCE_DELAY
    write_policy: WritePolicy = WritePolicy.OPTIMISTIC
    request_timeout: float = 10.0
    poll_interval: float = 5.0
    mqtt_enabled: bool = True
    mqtt_host: str | None = None
    mqtt_port: int = 1883
    mqtt_tls: bool = False
    mqtt_keepalive: int = 120
    mqtt_username: str | None = None
    mqtt_topic_prefix: str = "storesync/documents"
    api_trace_enabled: bool = False

    def __post_init__(self) -> None:
        if self.debounce_delay < 0:
            raise SyncConfigError(f"debounce_delay must be >= 0, got {self.debounce_delay}")
        if self.request_timeout <= 0:
            raise SyncConfigError(f"request_timeout must be > 0, got {self.request_timeout}")
        if self.poll_interval <= 0:
            raise SyncConfigError(f"poll_interval must be > 0, got {self.poll_interval}")
        try:
            object.__setattr__(self, "write_policy", WritePolicy(self.write_policy))
        except ValueError as exc:
            raise SyncConfigError(f"Unknown write_policy: {self.write_policy!r}") from exc
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))
        object.__setattr__(self, "mqtt_topic_prefix", self.mqtt_topic_prefix.strip("/"))

    @property
    def broker_host(self) -> str:
        """Broker host, falling back to the REST host."""
        if self.mqtt_host:
            return self.mqtt_host
        host = urlsplit(self.base_url).hostname
        if not host:
            raise SyncConfigError(f"Cannot derive MQTT host from base_url={self.base_url!r}")
        return host

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from ``STORESYNC_*`` environment variables.

        Parameters
        ----------
        **overrides
            Field values that take precedence over the environment.

        Returns
        -------
        SyncConfig
            Populated configuration.

        Raises
        ------
        SyncConfigError
            A variable does not parse, or a value fails validation.
        """
        config_kwargs: dict[str, Any] = {}
        for field_name, parse in _ENV_FIELDS.items():
            if field_name in overrides:
                continue
            env_key = f"STORESYNC_{field_name.upper()}"
            raw = os.environ.get(env_key)
            if raw is None:
                continue
            try:
                config_kwargs[field_name] = parse(raw)
            except ValueError as exc:
                raise SyncConfigError(f"{env_key} has an invalid value: {raw!r}") from exc
        config_kwargs.update(overrides)
        return cls(**config_kwargs)


# Field name -> parser for its STORESYNC_<FIELD> variable.
_ENV_FIELDS: dict[str, Callable[[str], Any]] = {
    "base_url": str,
    "api_token": str,
    "debounce_delay": float,
    "write_policy": str,
    "request_timeout": float,
    "poll_interval": float,
    "mqtt_enabled": _parse_bool,
    "mqtt_host": str,
    "mqtt_port": int,
    "mqtt_tls": _parse_bool,
    "mqtt_keepalive": int,
    "mqtt_username": str,
    "mqtt_topic_prefix": str,
    "api_trace_enabled": _parse_bool,
}
