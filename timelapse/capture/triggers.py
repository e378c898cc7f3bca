"""
External event triggers for event-driven sessions.

A session subscribes to one broker topic and captures once each time the
payload moves from the armed value to the fired value.
"""

from queue import Empty, Queue
from typing import Optional, Protocol

import paho.mqtt.client as mqtt

from ..utils.logger import get_logger
from .sources import EventTriggeredSource


logger = get_logger(__name__)


class EdgeTrigger:
    """
    Edge detector over a stream of payloads.

    Fires on the armed -> fired transition only; repeating the fired value
    does not fire again until the armed value is seen in between.
    """

    def __init__(self, armed_value: str = '0', fired_value: str = '1'):
        self.armed_value = str(armed_value)
        self.fired_value = str(fired_value)
        self.previous: Optional[str] = None

    def update(self, payload) -> bool:
        """Feed one payload; returns True when a capture should fire."""
        value = _normalize(payload)
        fired = self.previous == self.armed_value and value == self.fired_value
        self.previous = value
        return fired


class Subscription(Protocol):
    def get(self, timeout: float) -> Optional[tuple[str, str]]:
        """Next (topic, payload), or None if nothing arrived within timeout."""
        ...

    def close(self) -> None:
        ...


class EventSource(Protocol):
    def subscribe(self, trigger: EventTriggeredSource) -> Subscription:
        ...


class MqttSubscription:
    """One MQTT client subscribed to one topic, buffering messages in a queue."""

    def __init__(self, trigger: EventTriggeredSource, keepalive: int = 60):
        self.trigger = trigger
        self._queue: Queue = Queue()

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if trigger.username:
            self._client.username_pw_set(trigger.username, trigger.password or None)
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._client.connect_async(trigger.broker, trigger.port, keepalive)
        self._client.loop_start()
        logger.info(f"Subscribing to {trigger.topic} on {trigger.broker}:{trigger.port}")

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.warning(f"MQTT connect to {self.trigger.broker} failed: {reason_code}")
            return
        # Subscribing here also restores the subscription after reconnects
        client.subscribe(self.trigger.topic)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.warning(f"MQTT disconnected from {self.trigger.broker}: {reason_code}")

    def _on_message(self, client, userdata, message) -> None:
        self._queue.put((message.topic, message.payload.decode('utf-8', errors='replace')))

    def get(self, timeout: float) -> Optional[tuple[str, str]]:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def close(self) -> None:
        self._client.loop_stop()
        self._client.disconnect()


class MqttEventSource:
    """EventSource backed by an MQTT broker."""

    def subscribe(self, trigger: EventTriggeredSource) -> MqttSubscription:
        return MqttSubscription(trigger)


def _normalize(payload) -> str:
    if isinstance(payload, bytes):
        payload = payload.decode('utf-8', errors='replace')
    return str(payload).strip()
