"""Sync broadcasters: fan mutation events out to every connected client.

The channel has no per-subscriber filtering. Every subscriber, the
originator included, receives every event; receivers drop their own echoes.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .errors import TransportError, ValidationError
from .events import MutationEvent, decode_event, encode_event

logger = logging.getLogger(__name__)

Receive = Callable[[float | None], Awaitable[str | None]]


class Subscription:
    """Stream of decoded events from one broadcaster.

    Malformed payloads are logged and skipped. Iterating ends when the
    underlying source stops producing (returns None without a timeout) or
    when the subscription is closed, even while a reader is waiting.
    """

    def __init__(self, receive: Receive, on_close: Callable[[], None] | None = None):
        self._receive = receive
        self._on_close = on_close
        self._closed = False

    async def get(self, timeout: float | None = None) -> MutationEvent | None:
        """Wait for the next well-formed event.

        Args:
            timeout: Seconds to wait per payload, or None to wait forever.

        Returns:
            The decoded event, or None on timeout or end of stream.
        """
        while not self._closed:
            payload = await self._receive(timeout)
            if payload is None:
                return None
            try:
                return decode_event(payload)
            except ValidationError as e:
                logger.warning(f"Dropping malformed event: {e}")
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close:
            self._on_close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> MutationEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class _FanOut:
    """Per-subscriber payload queues, filled on the event loop thread."""

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[str | None]] = set()

    def _deliver(self, payload: str) -> None:
        for queue in self._subscribers:
            queue.put_nowait(payload)

    def subscribe(self) -> Subscription:
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._subscribers.add(queue)

        async def receive(timeout: float | None) -> str | None:
            try:
                return await asyncio.wait_for(queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None

        def close() -> None:
            self._subscribers.discard(queue)
            # Wakes a reader blocked in get()
            queue.put_nowait(None)

        return Subscription(receive, on_close=close)


class MQTTBroadcaster(_FanOut):
    """Broadcaster backed by a single MQTT topic.

    Paho runs its network loop on a background thread. Inbound payloads are
    handed to the asyncio loop with call_soon_threadsafe and fanned out to
    every open subscription.
    """

    def __init__(self, config: MQTTConfig, subscribe: bool = False):
        """Initialize the broadcaster.

        Args:
            config: MQTT broker and topic settings.
            subscribe: Receive events too. Publishers (the server) leave
                this off so the broker does not send their own traffic back.
        """
        super().__init__()
        self.config = config
        self.topic = config.topic
        self._listen = subscribe

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message
        self._client.on_disconnect = self._on_disconnect

        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Event | None = None

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code != 0:
            logger.error(f"MQTT broker refused connection: {reason_code}")
            return

        self._connected = True
        logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")

        # Runs again on every reconnect, so the subscription survives drops
        if self._listen:
            client.subscribe(self.topic, qos=1)
            logger.info(f"Subscribed to topic: {self.topic}")

        if self._loop and self._ready:
            self._loop.call_soon_threadsafe(self._ready.set)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            payload = msg.payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning(f"Dropping non-UTF-8 message on {msg.topic}")
            return

        logger.debug(f"Received on {msg.topic}: {payload[:100]}")
        if self._loop:
            self._loop.call_soon_threadsafe(self._deliver, payload)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    async def connect(self) -> None:
        """Connect and wait for the broker to accept.

        Raises:
            TransportError: If the broker is unreachable, refuses the
                connection, or does not answer within the timeout.
        """
        self._loop = asyncio.get_running_loop()
        self._ready = asyncio.Event()
        address = f"{self.config.broker}:{self.config.port}"

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
        except (OSError, ValueError) as e:
            raise TransportError(f"Could not connect to MQTT broker {address}: {e}") from e

        self._client.loop_start()
        try:
            await asyncio.wait_for(
                self._ready.wait(), timeout=self.config.connect_timeout_seconds
            )
        except asyncio.TimeoutError:
            self._client.loop_stop()
            raise TransportError(f"Timeout waiting for MQTT broker {address}") from None

    async def disconnect(self) -> None:
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def publish(self, event: MutationEvent) -> None:
        """Publish an event.

        Raises:
            TransportError: If not connected or paho rejected the message.
        """
        if not self._connected:
            raise TransportError("Cannot publish: not connected to MQTT broker")

        info = self._client.publish(self.topic, encode_event(event), qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(
                f"Failed to publish {type(event).__name__} to {self.topic}: "
                f"{mqtt.error_string(info.rc)}"
            )


class InMemoryBroadcaster(_FanOut):
    """In-process broadcaster with the same interface as MQTTBroadcaster.

    Used when MQTT is disabled (single-process setups) and in tests.
    """

    def __init__(self) -> None:
        super().__init__()
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def publish(self, event: MutationEvent) -> None:
        if not self._connected:
            raise TransportError("Broadcaster is not connected")

        payload = encode_event(event)
        self._deliver(payload)
        logger.debug(f"Published {payload} to {len(self._subscribers)} subscribers")


Broadcaster = MQTTBroadcaster | InMemoryBroadcaster


def create_broadcaster(config: MQTTConfig, subscribe: bool = False) -> Broadcaster:
    """Build the broadcaster selected by configuration."""
    if config.enabled:
        return MQTTBroadcaster(config, subscribe=subscribe)
    return InMemoryBroadcaster()


async def check_broker(config: MQTTConfig) -> bool:
    """Check if the MQTT broker accepts TCP connections."""
    try:
        probe = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        probe.connect(config.broker, config.port, keepalive=5)
        probe.disconnect()
        return True
    except (OSError, ValueError):
        return False
