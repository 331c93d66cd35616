"""Internal MQTT runtime delivering live document snapshots.

The backend publishes the full JSON document to
``<prefix>/<collection>/<owner>`` after every write. An empty payload
means the document was deleted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from storesync.config import SyncConfig
from storesync.exceptions import RemoteUnavailableError
from storesync.state.keys import EntityKey


@dataclass(frozen=True)
class BrokerSettings:
    """Connection details for the snapshot broker."""

    host: str
    port: int
    client_id: str
    username: str | None
    password: str | None
    tls: bool
    keepalive: int


@dataclass(frozen=True)
class DocumentPush:
    """A decoded snapshot received on a document topic."""

    topic: str
    payload: Any


def build_broker_settings(config: SyncConfig) -> BrokerSettings:
    return BrokerSettings(
        host=config.broker_host,
        port=config.mqtt_port,
        client_id=f"storesync_{secrets.token_hex(6)}",
        username=config.mqtt_username,
        password=config.api_token,
        tls=config.mqtt_tls,
        keepalive=config.mqtt_keepalive,
    )


def document_topic(prefix: str, key: EntityKey) -> str:
    return f"{prefix}/{key.path}" if prefix else key.path


def decode_push_payload(payload: bytes) -> Any:
    """Decode a snapshot payload.

    Empty payloads decode to ``None`` (document deleted). Payloads that are
    not JSON are returned as text so the engine reports them as malformed
    snapshots instead of them vanishing here.
    """
    text = payload.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class DocumentPushRuntime:
    """paho-mqtt network thread that forwards document snapshots to the event loop.

    Topics may be registered before or after :meth:`start`; the runtime
    (re)subscribes to the registered set on every successful connect.
    paho callbacks run on its network thread and only hand their
    arguments to the event loop through ``loop.call_soon_threadsafe``;
    the topic set is read and changed on the loop thread alone.

    A broker that refuses the connection stops the runtime from counting
    as running and calls *on_failure* with a
    :class:`~storesync.exceptions.RemoteUnavailableError`.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_push: Callable[[DocumentPush], None],
        on_failure: Callable[[Exception], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_push = on_push
        self._on_failure = on_failure
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._topics: set[str] = set()
        self._refused = False

    @property
    def is_running(self) -> bool:
        return self._client is not None and not self._refused

    @property
    def topics(self) -> frozenset[str]:
        return frozenset(self._topics)

    def add_topic(self, topic: str) -> None:
        if topic in self._topics:
            return
        self._topics.add(topic)
        if self._client is not None:
            self._logger.debug("MQTT subscribe topic=%s", topic)
            self._client.subscribe(topic, qos=1)

    def remove_topic(self, topic: str) -> None:
        if topic not in self._topics:
            return
        self._topics.discard(topic)
        if self._client is not None:
            self._logger.debug("MQTT unsubscribe topic=%s", topic)
            self._client.unsubscribe(topic)

    def start(self, settings: BrokerSettings) -> None:
        """Connect to the broker and start the network thread.

        Raises whatever ``connect`` raises (``OSError`` for an unreachable
        broker); the runtime is left stopped in that case.
        """
        self.stop()
        self._refused = False
        self._logger.debug(
            "MQTT connecting host=%s port=%s tls=%s client_id=%s",
            settings.host,
            settings.port,
            settings.tls,
            settings.client_id,
        )
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if settings.username or settings.password:
            client.username_pw_set(settings.username or "", settings.password)
        if settings.tls:
            client.tls_set()
        client.on_connect = self._handle_connect
        client.on_message = self._handle_message
        client.on_disconnect = self._handle_disconnect

        client.connect(settings.host, settings.port, keepalive=settings.keepalive)
        client.loop_start()
        self._client = client

    def stop(self) -> None:
        """Disconnect and join the network thread. Safe to call when stopped."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
        self._logger.debug("MQTT stopped")

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _handle_connect(
        self,
        client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        self._loop.call_soon_threadsafe(self._on_connected, client, reason_code)

    def _handle_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            push = DocumentPush(topic=msg.topic, payload=decode_push_payload(msg.payload))
            self._loop.call_soon_threadsafe(self._deliver_push, push)
        except Exception:
            self._logger.debug("Dropping push topic=%s", msg.topic, exc_info=True)

    def _handle_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._client is not None:
            self._logger.debug("MQTT connection lost (%s); paho will reconnect", reason_code)

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------

    def _on_connected(self, client: mqtt.Client, reason_code: Any) -> None:
        if client is not self._client:
            return
        if reason_code.value != 0:
            self._logger.warning("MQTT connect refused: %s", reason_code)
            self._refused = True
            if self._on_failure is not None:
                try:
                    self._on_failure(RemoteUnavailableError(f"MQTT broker refused the connection: {reason_code}"))
                except Exception:
                    self._logger.debug("MQTT failure callback failed", exc_info=True)
            return
        topics = sorted(self._topics)
        self._logger.debug("MQTT connected; subscribing %d topic(s)", len(topics))
        # The broker keeps no session for us; every connect starts empty.
        for topic in topics:
            client.subscribe(topic, qos=1)

    def _deliver_push(self, push: DocumentPush) -> None:
        if push.topic not in self._topics:
            return
        self._on_push(push)
