"""Cross-context sync signals with redundant transports.

A single Notifier fans each signal out over every configured transport
(same-process delivery, an MQTT broadcast topic, and a shared SQLite signals
table). Delivery is at-most-once and unordered per transport; receivers drop
duplicates that arrive over more than one transport by nonce.

Nothing may depend on a signal arriving: the coordinator's poll loop is the
convergence backstop.
"""

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import paho.mqtt.client as mqtt

if TYPE_CHECKING:
    from ..config import MQTTConfig
    from ..store.local_store import LocalStore

logger = logging.getLogger(__name__)


class SignalType(Enum):
    """Logical sync requests shared between contexts."""

    PULL = "PULL"
    PUSH = "PUSH"
    RESET = "RESET"


@dataclass
class SignalMessage:
    """A signal as sent over any transport."""

    type: SignalType
    account: str
    device_id: str
    purpose_key: str | None = None
    at: int = field(default_factory=lambda: int(time.time() * 1000))
    nonce: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignalMessage | None":
        """Parse a received payload; None if it is not a sync signal."""
        if not isinstance(data, dict):
            return None
        raw_type = str(data.get("type", "")).upper()
        signal_type = next((t for t in SignalType if t.value in raw_type), None)
        if signal_type is None or not data.get("nonce"):
            return None
        return cls(
            type=signal_type,
            account=str(data.get("account", "")),
            device_id=str(data.get("device_id", "")),
            purpose_key=data.get("purpose_key"),
            at=int(data.get("at") or 0),
            nonce=str(data["nonce"]),
        )


SignalHandler = Callable[[SignalMessage], None]


class Transport(ABC):
    """One delivery path for signals."""

    name: str = "transport"

    @abstractmethod
    def publish(self, message: SignalMessage) -> None:
        """Send a message. May raise; the notifier isolates failures."""
        pass

    @abstractmethod
    def subscribe(self, handler: SignalHandler) -> Callable[[], None]:
        """Register a handler; returns an unsubscribe function."""
        pass

    def close(self) -> None:
        pass


class LocalTransport(Transport):
    """Delivers signals to handlers in the same process.

    When an event loop is running, handlers are invoked with call_soon so a
    publisher never runs subscriber code inline.
    """

    name = "local"

    def __init__(self):
        self._handlers: list[SignalHandler] = []

    def publish(self, message: SignalMessage) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in list(self._handlers):
            if loop is not None:
                loop.call_soon(handler, message)
            else:
                handler(message)

    def subscribe(self, handler: SignalHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe


class StoreTransport(Transport):
    """Shares signals through the local store's signals table.

    Sibling processes using the same database see new signals on their next
    :meth:`poll`.
    """

    name = "storage"

    def __init__(self, store: "LocalStore"):
        self._store = store
        self._handlers: list[SignalHandler] = []
        self._seen: set[str] = {
            s.get("nonce") for s in store.get_signals() if isinstance(s, dict)
        }

    def publish(self, message: SignalMessage) -> None:
        self._store.put_signal(message.type.value, message.to_dict())
        self._forget_replaced(self._current())
        self._seen.add(message.nonce)

    def subscribe(self, handler: SignalHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def poll(self) -> int:
        """Dispatch signals written by other processes since the last poll.

        Returns:
            Number of new signals dispatched.
        """
        messages = self._current()
        self._forget_replaced(messages)

        dispatched = 0
        for message in messages:
            if message.nonce in self._seen:
                continue
            self._seen.add(message.nonce)
            for handler in list(self._handlers):
                handler(message)
            dispatched += 1
        return dispatched

    def _current(self) -> list[SignalMessage]:
        return [
            message
            for message in map(SignalMessage.from_dict, self._store.get_signals())
            if message is not None
        ]

    def _forget_replaced(self, messages: list[SignalMessage]) -> None:
        # The table keeps one row per signal type; a nonce that left it can't return
        self._seen &= {message.nonce for message in messages}


class MqttTransport(Transport):
    """Broadcasts signals on an MQTT topic shared by every device."""

    name = "mqtt"

    def __init__(self, config: "MQTTConfig"):
        self.config = config
        self._handlers: list[SignalHandler] = []
        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            client.subscribe(self.config.topic)
            logger.info(
                f"Signal transport connected to {self.config.broker}:{self.config.port}"
            )
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Handle incoming message."""
        try:
            payload = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug(f"Ignoring non-JSON message on {msg.topic}")
            return

        message = SignalMessage.from_dict(payload)
        if message is None:
            return
        # Paho runs callbacks on its own thread
        for handler in list(self._handlers):
            if self._loop is not None:
                self._loop.call_soon_threadsafe(handler, message)
            else:
                handler(message)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    async def connect(self) -> bool:
        """Connect to the broker and start the network loop.

        Returns:
            True if connection successful.
        """
        self._loop = asyncio.get_running_loop()

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
            self._client.loop_start()

            # Wait for connection
            for _ in range(50):  # 5 second timeout
                if self._connected:
                    return True
                await asyncio.sleep(0.1)

            logger.error("Timeout waiting for MQTT connection")
            return False
        except OSError as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def close(self) -> None:
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    def publish(self, message: SignalMessage) -> None:
        if not self._connected:
            raise ConnectionError("not connected to MQTT broker")
        self._client.publish(self.config.topic, json.dumps(message.to_dict()))

    def subscribe(self, handler: SignalHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def is_connected(self) -> bool:
        return self._connected


class Notifier:
    """Fans signals out over every transport and deduplicates on receipt."""

    def __init__(
        self,
        account: str,
        device_id: str,
        transports: list[Transport],
        dedupe_window: int = 256,
    ):
        self.account = account
        self.device_id = device_id
        self.transports = transports
        self.dedupe_window = dedupe_window

    def emit(self, signal_type: SignalType, purpose_key: str | None = None) -> SignalMessage:
        """Broadcast a signal on all transports.

        A failing transport is logged and skipped.
        """
        message = SignalMessage(
            type=signal_type,
            account=self.account,
            device_id=self.device_id,
            purpose_key=purpose_key,
        )
        for transport in self.transports:
            try:
                transport.publish(message)
            except Exception as e:
                logger.warning(f"Signal {signal_type.value} not sent via {transport.name}: {e}")
        return message

    def subscribe(self, handler: SignalHandler) -> Callable[[], None]:
        """Register a handler on every transport, delivering each nonce once."""
        recent_nonces: deque[str] = deque(maxlen=self.dedupe_window)

        def deliver(message: SignalMessage) -> None:
            if message.account and message.account != self.account:
                return
            if message.nonce in recent_nonces:
                return
            recent_nonces.append(message.nonce)
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Signal handler failed for {message.type.value}: {e}", exc_info=True)

        unsubscribers = [t.subscribe(deliver) for t in self.transports]

        def unsubscribe() -> None:
            for unsub in unsubscribers:
                unsub()

        return unsubscribe

    def poll(self) -> int:
        """Check polling transports for signals from sibling processes.

        Returns:
            Number of signals dispatched.
        """
        return sum(
            t.poll() for t in self.transports if isinstance(t, StoreTransport)
        )

    def close(self) -> None:
        for transport in self.transports:
            try:
                transport.close()
            except Exception as e:
                logger.debug(f"Error closing {transport.name} transport: {e}")
