"""MQTT messaging gateway.

:class:`MessagingGateway` owns at most one broker connection and keeps
it in line with the current :class:`~panelsync._settings.BrokerSettings`.
On top of it, it offers:

- retained, per-topic rate-limited :meth:`~MessagingGateway.publish`
- :meth:`~MessagingGateway.remove` and
  :meth:`~MessagingGateway.remove_all_matching` (discover retained
  topics under a wildcard filter, then clear each one)
- typed :meth:`~MessagingGateway.subscribe`

The broker itself is reached through the :class:`BrokerConnection`
port.  :class:`AiomqttConnection` is the production adapter; it imports
``aiomqtt`` lazily so :class:`panelsync.testing.MockBrokerConnection`
works without it.

Connection state changes are announced on the event bus as
:class:`~panelsync._events.BrokerStatus`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import ssl
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel

from panelsync._debounce import Debouncer
from panelsync._errors import BrokerConnectFailure, SerializationFailure
from panelsync._events import BrokerStatus, EventBus
from panelsync._settings import DISABLED_BROKER, BrokerSettings

logger = logging.getLogger(__name__)

DEBOUNCE_WINDOW = 0.25
REMOVE_READ_TIMEOUT = 0.1

# ---------------------------------------------------------------------------
# Value objects and helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A message delivered by the broker."""

    topic: str
    payload: bytes
    retain: bool = False


def topic_filter_regex(topic_filter: str) -> re.Pattern[str]:
    """Translate an MQTT topic filter into an equivalent regular expression.

    ``#`` matches any remainder, ``+`` exactly one level; everything
    else, including the ``/`` separator, matches literally.  Use with
    :meth:`re.Pattern.fullmatch`.
    """
    parts: list[str] = []
    for char in topic_filter:
        if char == "#":
            parts.append(".*")
        elif char == "+":
            parts.append("[^/]+")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts))


def encode_payload(payload: object) -> bytes:
    """Convert a publish payload to bytes.

    ``bytes`` pass through, ``str`` is UTF-8 encoded, pydantic models
    are dumped as JSON and anything else goes through :func:`json.dumps`.

    Raises:
        SerializationFailure: If the value cannot be serialised.
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if payload is None:
        msg = "payload cannot be None"
        raise SerializationFailure(msg)
    try:
        if isinstance(payload, BaseModel):
            return payload.model_dump_json().encode("utf-8")
        return json.dumps(payload).encode("utf-8")
    except (TypeError, ValueError) as exc:
        msg = f"Unable to serialise {type(payload).__name__}: {exc}"
        raise SerializationFailure(msg) from exc


def decode_text(payload: bytes) -> str:
    """Raw pass-through decoder."""
    return payload.decode("utf-8")


M = TypeVar("M", bound=BaseModel)


def decode_model(model: type[M]) -> Callable[[bytes], M]:
    """Typed decoder validating JSON payloads into *model*."""
    return model.model_validate_json


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class BrokerConnection(Protocol):
    """One connection to a publish/subscribe broker."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def publish(
        self,
        topic: str,
        payload: bytes | None,
        *,
        retain: bool,
        qos: int,
    ) -> None: ...

    async def subscribe(self, topic_filter: str, qos: int) -> None: ...

    async def unsubscribe(self, topic_filter: str) -> None: ...

    def messages(self) -> AsyncIterator[InboundMessage]: ...


ConnectionFactory = Callable[[BrokerSettings], BrokerConnection]

# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


class AiomqttConnection:
    """:class:`BrokerConnection` backed by *aiomqtt*.

    The connection registers a last will that clears the retained
    availability topic if the process dies without disconnecting.
    """

    def __init__(self, settings: BrokerSettings) -> None:
        self._settings = settings
        self._client: Any = None
        self._stack: contextlib.AsyncExitStack | None = None

    async def connect(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use AiomqttConnection"
            raise RuntimeError(msg) from exc

        settings = self._settings
        password: str | None = None
        if settings.password is not None:
            password = settings.password.get_secret_value()

        client = aiomqtt.Client(
            hostname=settings.host,
            port=settings.port,
            username=settings.username,
            password=password,
            identifier=settings.client_id or f"panelsync-{uuid.uuid4().hex[:8]}",
            will=aiomqtt.Will(
                topic=settings.availability_topic,
                payload=None,
                qos=settings.qos,
                retain=True,
            ),
            tls_context=ssl.create_default_context() if settings.secure else None,
        )
        stack = contextlib.AsyncExitStack()
        await stack.enter_async_context(client)
        self._client = client
        self._stack = stack

    async def disconnect(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        if stack is not None:
            await stack.aclose()

    async def publish(
        self,
        topic: str,
        payload: bytes | None,
        *,
        retain: bool,
        qos: int,
    ) -> None:
        await self._require().publish(topic, payload, qos=qos, retain=retain)

    async def subscribe(self, topic_filter: str, qos: int) -> None:
        await self._require().subscribe(topic_filter, qos=qos)

    async def unsubscribe(self, topic_filter: str) -> None:
        await self._require().unsubscribe(topic_filter)

    async def messages(self) -> AsyncIterator[InboundMessage]:
        async for message in self._require().messages:
            raw = message.payload
            if raw is None:
                payload = b""
            elif isinstance(raw, (bytes, bytearray)):
                payload = bytes(raw)
            else:
                payload = str(raw).encode("utf-8")
            yield InboundMessage(str(message.topic), payload, bool(message.retain))

    def _require(self) -> Any:
        if self._client is None:
            msg = "AiomqttConnection is not connected"
            raise RuntimeError(msg)
        return self._client


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

SubscriptionHandler = Callable[[str, Any], Awaitable[None]]
"""Async callback receiving ``(topic, decoded_value)``."""


@dataclass(frozen=True, slots=True)
class _Subscription:
    topic_filter: str
    pattern: re.Pattern[str]
    decode: Callable[[bytes], Any]
    handler: SubscriptionHandler


@dataclass
class MessagingGateway:
    """Owns the broker connection and the publish/subscribe surface.

    Args:
        bus: Receives :class:`BrokerStatus` on every connection change.
        connection_factory: Builds a :class:`BrokerConnection` for a
            settings value.
        debounce_window: Window collapsing non-immediate publishes
            to the same topic.
        read_timeout: Per-message wait while discovering retained topics.
    """

    bus: EventBus
    connection_factory: ConnectionFactory = AiomqttConnection
    debounce_window: float = DEBOUNCE_WINDOW
    read_timeout: float = REMOVE_READ_TIMEOUT

    _connected_settings: BrokerSettings = field(
        default=DISABLED_BROKER,
        init=False,
        repr=False,
    )
    _connection: BrokerConnection | None = field(default=None, init=False, repr=False)
    _qos: int = field(default=1, init=False, repr=False)
    _availability_topic: str | None = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _reconnect_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _subscriptions: list[_Subscription] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _collectors: list[tuple[re.Pattern[str], asyncio.Queue[str]]] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _debouncer: Debouncer = field(default_factory=Debouncer, init=False, repr=False)

    @property
    def connected_settings(self) -> BrokerSettings:
        """Settings of the active connection, or :data:`DISABLED_BROKER`."""
        return self._connected_settings

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    # -- Settings -----------------------------------------------------------

    async def apply_settings(self, settings: BrokerSettings) -> None:
        """Bring the connection in line with *settings*.

        Identical settings (by value) are a no-op.  Disabled settings
        tear the connection down.  Anything else replaces the
        connection, publishes the retained ``online`` marker and
        announces ``BrokerStatus(True)``.

        Raises:
            BrokerConnectFailure: If the broker cannot be reached.  The
                gateway is left disconnected and ``BrokerStatus(False)``
                has been published.
        """
        if not settings.enabled:
            settings = DISABLED_BROKER
        if settings == self._connected_settings:
            logger.debug("Broker settings unchanged")
            return

        await self._disconnect()
        self._connected_settings = DISABLED_BROKER

        if not settings.enabled:
            logger.info("MQTT disabled")
            await self.bus.publish(BrokerStatus(connected=False))
            return

        try:
            await self._connect(settings)
        except Exception as exc:
            await self.bus.publish(BrokerStatus(connected=False))
            msg = f"Unable to connect to MQTT server {settings.host}:{settings.port}: {exc}"
            raise BrokerConnectFailure(msg) from exc

        self._connected_settings = settings
        await self.bus.publish(BrokerStatus(connected=True))

    async def close(self) -> None:
        """Tear down the connection and pending publishes.  Idempotent."""
        self._connected_settings = DISABLED_BROKER
        await self._disconnect()

    # -- Publishing ---------------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: object,
        *,
        immediate: bool = False,
        retain: bool = True,
    ) -> None:
        """Publish *payload* to *topic*.

        Non-immediate publishes to the same topic are sent at most once
        per ``debounce_window``, with the latest payload of the window.
        An immediate publish is sent now and supersedes any
        pending debounced send for the topic.  Serialisation and send
        failures are logged and the publish dropped.
        """
        try:
            data = encode_payload(payload)
        except SerializationFailure:
            logger.exception("Failed to serialize payload for %s", topic)
            return

        if immediate:
            self._debouncer.cancel(topic)
            await self._send(topic, data, retain=retain)
            return

        async def _send_latest() -> None:
            await self._send(topic, data, retain=retain)

        self._debouncer.debounce(topic, _send_latest, self.debounce_window)

    async def remove(self, topic: str) -> None:
        """Clear the retained message on exactly *topic*."""
        logger.debug("Clear topic: %s", topic)
        self._debouncer.cancel(topic)
        await self._send(topic, None, retain=True)

    async def remove_all_matching(self, topic_filter: str) -> list[str]:
        """Clear every retained topic matching *topic_filter*.

        The broker has no delete-by-pattern, so this subscribes to the
        filter, collects the topics the broker delivers until none
        arrives within ``read_timeout``, unsubscribes, then clears each
        collected topic matching the filter.

        Returns:
            The topics that were cleared.
        """
        connection = self._connection
        if connection is None:
            logger.debug("Not connected, cannot clear %s", topic_filter)
            return []

        logger.debug("Clear all topics: %s", topic_filter)
        pattern = topic_filter_regex(topic_filter)
        seen: asyncio.Queue[str] = asyncio.Queue()
        collector = (pattern, seen)
        self._collectors.append(collector)
        observed: list[str] = []
        try:
            await connection.subscribe(topic_filter, self._qos)
            while True:
                try:
                    topic = await asyncio.wait_for(seen.get(), timeout=self.read_timeout)
                except TimeoutError:
                    break
                observed.append(topic)
            if not any(s.topic_filter == topic_filter for s in self._subscriptions):
                await connection.unsubscribe(topic_filter)
        finally:
            self._collectors.remove(collector)

        removed = [topic for topic in dict.fromkeys(observed) if pattern.fullmatch(topic)]
        for topic in removed:
            await self.remove(topic)
        return removed

    # -- Subscribing --------------------------------------------------------

    async def subscribe(
        self,
        topic_filter: str,
        decode: Callable[[bytes], Any],
        handler: SubscriptionHandler,
    ) -> None:
        """Invoke *handler* for every message matching *topic_filter*.

        Each payload is converted with *decode* first (e.g.
        :func:`decode_text` or :func:`decode_model`).  The subscription
        survives reconnects and settings changes.
        """
        subscription = _Subscription(
            topic_filter=topic_filter,
            pattern=topic_filter_regex(topic_filter),
            decode=decode,
            handler=handler,
        )
        self._subscriptions.append(subscription)
        if self._connection is not None:
            try:
                await self._connection.subscribe(topic_filter, self._qos)
            except Exception:
                logger.warning("Failed to subscribe to %s", topic_filter, exc_info=True)

    # -- Internal -----------------------------------------------------------

    async def _connect(self, settings: BrokerSettings) -> None:
        connection = self.connection_factory(settings)
        await connection.connect()
        try:
            for topic_filter in dict.fromkeys(s.topic_filter for s in self._subscriptions):
                await connection.subscribe(topic_filter, settings.qos)
            await connection.publish(
                settings.availability_topic,
                b"online",
                retain=True,
                qos=settings.qos,
            )
        except BaseException:
            with contextlib.suppress(Exception):
                await connection.disconnect()
            raise

        self._connection = connection
        self._qos = settings.qos
        self._availability_topic = settings.availability_topic
        self._listen_task = asyncio.create_task(self._listen(connection, settings))
        logger.info("Connected to MQTT server %s:%d", settings.host, settings.port)

    async def _disconnect(self) -> None:
        await self._debouncer.cancel_all()
        for task in (self._reconnect_task, self._listen_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reconnect_task = None
        self._listen_task = None

        connection, self._connection = self._connection, None
        availability_topic, self._availability_topic = self._availability_topic, None
        if connection is None:
            return
        try:
            if availability_topic is not None:
                await connection.publish(availability_topic, None, retain=True, qos=self._qos)
            await connection.disconnect()
        except Exception:
            logger.warning("Error while disconnecting from MQTT server", exc_info=True)
        logger.info("Disconnected from MQTT server")

    async def _send(self, topic: str, payload: bytes | None, *, retain: bool) -> None:
        connection = self._connection
        if connection is None:
            logger.debug("Not connected, dropping publish to %s", topic)
            return
        logger.debug("Sending to %s: %r", topic, payload)
        try:
            await connection.publish(topic, payload, retain=retain, qos=self._qos)
        except Exception:
            logger.exception("Failed to publish to %s", topic)

    async def _listen(self, connection: BrokerConnection, settings: BrokerSettings) -> None:
        try:
            async for message in connection.messages():
                await self._dispatch(message)
        except Exception as exc:
            logger.warning("MQTT connection lost: %s", exc)
        else:
            logger.warning("MQTT message stream ended")

        if self._connection is connection:
            self._connection = None
            self._availability_topic = None
            self._listen_task = None
            with contextlib.suppress(Exception):
                await connection.disconnect()
            await self.bus.publish(BrokerStatus(connected=False))
            self._reconnect_task = asyncio.create_task(self._reconnect(settings))

    async def _reconnect(self, settings: BrokerSettings) -> None:
        while self._connected_settings == settings:
            logger.info("Reconnecting to MQTT server in %.1fs", settings.reconnect_interval)
            await asyncio.sleep(settings.reconnect_interval)
            if self._connected_settings != settings:
                return
            try:
                await self._connect(settings)
            except Exception as exc:
                logger.warning("MQTT reconnect failed: %s", exc)
                continue
            self._reconnect_task = None
            await self.bus.publish(BrokerStatus(connected=True))
            return

    async def _dispatch(self, message: InboundMessage) -> None:
        for pattern, seen in list(self._collectors):
            if pattern.fullmatch(message.topic):
                seen.put_nowait(message.topic)

        if not message.payload:
            return

        for subscription in list(self._subscriptions):
            if not subscription.pattern.fullmatch(message.topic):
                continue
            try:
                value = subscription.decode(message.payload)
            except Exception:
                logger.exception("Failed to decode message on %s", message.topic)
                continue
            try:
                await subscription.handler(message.topic, value)
            except Exception:
                logger.exception("Error in subscription handler for %s", message.topic)
