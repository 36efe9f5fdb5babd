"""MQTT subscriber built on paho-mqtt.

The subscriber owns one client connection, subscribes to a fixed set of
topics every time the connection is (re)established and forwards each
message to a handler. The import of ``paho.mqtt.client`` is optional at
module import time; constructing a subscriber without it raises ImportError.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Iterable, Optional

try:
    import paho.mqtt.client as mqtt  # type: ignore[import]
except Exception:  # pragma: no cover - optional dependency
    mqtt = None  # type: ignore[assignment]


LOG = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Any]


class MqttSubscriber:
    def __init__(
        self,
        host: str,
        port: int = 1883,
        topics: Iterable[str] = (),
        on_message: MessageHandler | None = None,
        *,
        username: str | None = None,
        password: str | None = None,
        qos: int = 0,
        client_id: str = "",
        client: Any | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._topics = list(topics)
        self._handler = on_message
        self._qos = qos
        if client is None:
            if mqtt is None:
                raise ImportError("paho-mqtt is required for MqttSubscriber")
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=client_id,
            )
        self._client = client
        if username:
            self._client.username_pw_set(username, password or None)
        self._connected = threading.Event()
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        # connection retry policy
        self._max_retries = 5
        self._initial_backoff = 0.5  # seconds
        self._max_backoff = 30.0  # seconds

        self.messages_received = 0
        self.handler_errors = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def topics(self) -> list[str]:
        return list(self._topics)

    def connect(self) -> None:
        LOG.info(
            "Connecting to MQTT broker %s:%s (%d topics)",
            self._host,
            self._port,
            len(self._topics),
        )
        # Start network loop first so on_connect can fire during connect
        try:
            self._client.loop_start()
        except Exception:
            LOG.exception("Failed to start MQTT network loop")
        self._attempt_connect()

    def close(self) -> None:
        try:
            try:
                self._client.loop_stop()
            except Exception:
                LOG.debug("MQTT loop_stop failed", exc_info=True)
            self._client.disconnect()
        except Exception:  # pragma: no cover - best-effort cleanup
            LOG.exception("Failed to disconnect MQTT client")
        self._connected.clear()

    def _subscribe_all(self) -> None:
        for topic in self._topics:
            result = self._client.subscribe(topic, qos=self._qos)
            LOG.info("Subscribed to %s (qos=%d): %s", topic, self._qos, result)

    def _on_connect(
        self,
        client: Any,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code == 0:
            LOG.info("MQTT connected to %s:%s", self._host, self._port)
            self._connected.set()
            # subscriptions are per session; re-issue them after every reconnect
            self._subscribe_all()
        else:
            LOG.warning("MQTT connect returned reason_code=%s", reason_code)

    def _on_disconnect(
        self,
        client: Any,
        userdata: Any,
        flags: Any = None,
        reason_code: Any = None,
        properties: Any = None,
    ) -> None:
        LOG.warning("MQTT disconnected (reason_code=%s)", reason_code)
        self._connected.clear()

    def _on_message(self, client: Any, userdata: Any, message: Any) -> None:
        self.messages_received += 1
        if self._handler is None:
            return
        try:
            self._handler(message.topic, message.payload)
        except Exception:
            self.handler_errors += 1
            LOG.exception("MQTT message handler failed for topic %s", message.topic)

    def _attempt_connect(self) -> None:
        """Connect with exponential backoff, then leave retries to the network loop."""
        backoff = self._initial_backoff
        for attempt in range(1, self._max_retries + 1):
            try:
                self._client.connect(self._host, self._port)
                if self._connected.wait(min(backoff, self._max_backoff) + 0.1):
                    return
                raise RuntimeError("Connect did not complete yet")
            except Exception as exc:
                LOG.warning("MQTT connect attempt %d failed: %s", attempt, exc)
                if attempt == self._max_retries:
                    break
                jitter = random.uniform(0, backoff * 0.1)
                sleep_for = min(self._max_backoff, backoff + jitter)
                time.sleep(sleep_for)
                backoff = min(self._max_backoff, backoff * 2)

        LOG.warning(
            "MQTT broker %s:%s unreachable after %d attempts; retrying in background",
            self._host,
            self._port,
            self._max_retries,
        )
        self._client.reconnect_delay_set(
            min_delay=int(self._initial_backoff) or 1, max_delay=int(self._max_backoff)
        )
        self._client.connect_async(self._host, self._port)


def make_subscriber_from_config(
    mqtt_cfg: Any,
    topics: Iterable[str],
    on_message: MessageHandler,
    client: Optional[Any] = None,
) -> MqttSubscriber:
    """Build a subscriber from an ``MqttConfig``."""
    return MqttSubscriber(
        host=mqtt_cfg.broker,
        port=mqtt_cfg.port,
        topics=topics,
        on_message=on_message,
        username=mqtt_cfg.username,
        password=mqtt_cfg.password,
        qos=mqtt_cfg.qos,
        client_id=mqtt_cfg.client_id or "",
        client=client,
    )


__all__ = ["MqttSubscriber", "make_subscriber_from_config"]
