"""Tibber ingress module - live measurements via GraphQL WebSocket subscription (graphql-ws)"""
import asyncio
import logging
import threading
from collections import deque
from enum import Enum
from typing import Callable

from sinks.base import MetricWriter
from sources.base import (
    ChannelConnector,
    ChannelError,
    DecodeError,
    MeasurementRecord,
    MessageChannel,
    MetricPoint,
)
from sources.channel import connect_websocket
from sources.codec import decode_envelope, encode_envelope, subscription_query

logger = logging.getLogger(__name__)

TIBBER_WSS_URL = "wss://api.tibber.com/v1-beta/gql/subscriptions"
SUBPROTOCOL = "graphql-ws"
USER_AGENT = "Tibber-Influx-Bridge/0.1.0"

# Seconds
CONNECT_TIMEOUT = 30.0
IDLE_TIMEOUT = 15.0
CLOSE_TIMEOUT = 5.0


class SubscriptionError(ChannelError):
    """The server reported an error for the active subscription."""


class SessionState(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    HANDSHAKE_SENT = "HandshakeSent"
    AWAITING_HANDSHAKE_ACK = "AwaitingHandshakeAck"
    SUBSCRIBED = "Subscribed"
    STOPPING_FOR_RESUBSCRIBE = "StoppingForResubscribe"
    CLOSING = "Closing"
    CLOSED = "Closed"


class SessionHandle:
    """
    Session state shared between the main loop and the interrupt handler.

    The current channel, subscription id and "stop already sent" marker are
    only read or changed under the lock, so the handler always sees a
    consistent (channel, id) pair.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._channel: MessageChannel | None = None
        self._subscription_id = 0
        self._active = False
        self._state = SessionState.DISCONNECTED
        self._soft_exit = asyncio.Event()
        self.has_received_any_data = False
        # Recent transitions, newest last
        self.history: deque[SessionState] = deque(maxlen=64)

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @state.setter
    def state(self, state: SessionState) -> None:
        with self._lock:
            self._state = state
        self.history.append(state)
        logger.debug(f"Tibber API: Session {state.value}")

    @property
    def subscription_id(self) -> int:
        with self._lock:
            return self._subscription_id

    @property
    def subscription_active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def stopping(self) -> bool:
        return self._soft_exit.is_set()

    def request_stop(self) -> None:
        """Set the soft-exit flag. Must run on the event loop thread."""
        self._soft_exit.set()

    async def wait_for_stop(self) -> None:
        await self._soft_exit.wait()

    def attach(self, channel: MessageChannel) -> None:
        with self._lock:
            self._channel = channel
            self._active = False
        self.has_received_any_data = False

    def detach(self) -> MessageChannel | None:
        with self._lock:
            channel, self._channel = self._channel, None
            self._active = False
        return channel

    def next_subscription(self) -> int:
        """Allocate the id for a new subscription and mark it active."""
        with self._lock:
            self._subscription_id += 1
            self._active = True
            subscription_id = self._subscription_id
        self.has_received_any_data = False
        return subscription_id

    def subscription_ended(self) -> None:
        """The server completed the subscription, no stop is due."""
        with self._lock:
            self._active = False

    def claim_stop(self) -> tuple[MessageChannel, int] | None:
        """
        Take the right to send "stop" for the active subscription.

        Returns (channel, id) exactly once per subscription, or None when
        there is nothing to stop.
        """
        with self._lock:
            if not self._active or self._channel is None:
                return None
            self._active = False
            return self._channel, self._subscription_id


class TibberSession:
    """
    Tibber Pulse live measurement session.

    Outer loop: one connection attempt per iteration, restarted immediately
    after any fault. Inner loop: one subscription, resubscribed on the same
    channel when the feed goes quiet after producing data.
    """

    def __init__(
        self,
        token: str,
        home_id: str,
        writer: MetricWriter,
        url: str = TIBBER_WSS_URL,
        connector: ChannelConnector = connect_websocket,
        connect_timeout: float = CONNECT_TIMEOUT,
        idle_timeout: float = IDLE_TIMEOUT,
        user_agent: str = USER_AGENT,
        handle: SessionHandle | None = None,
        on_envelope: Callable[[str, str], None] | None = None
    ):
        """
        Initialize Tibber session.

        Args:
            token: Tibber API token, sent as Authorization header
            home_id: Home to subscribe to
            writer: Sink for every decoded sample
            url: Subscription WebSocket endpoint
            connector: Opens the message channel
            connect_timeout: Seconds allowed for connect, handshake and (re)subscribe
            idle_timeout: Seconds allowed between two inbound messages
            user_agent: User-Agent header for the WebSocket request
            handle: Shared session state (created if not given)
            on_envelope: Called with ("->" | "<-", text) for every envelope
        """
        self.token = token
        self.home_id = home_id
        self.writer = writer
        self.url = url
        self.connector = connector
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.user_agent = user_agent
        self.handle = handle or SessionHandle()
        self.on_envelope = on_envelope

    async def run(self) -> None:
        """
        Keep a subscription running until a cooperative stop is requested.

        Faults are logged and followed by an immediate reconnect.
        Cancellation of the calling task always propagates.
        """
        while not self.handle.stopping:
            try:
                await self._connection()
            except SubscriptionError as e:
                logger.error(f"Tibber API: {e}. Reconnecting...")
            except ChannelError as e:
                logger.warning(f"Tibber API: {e}. Reconnecting...")
            except TimeoutError:
                logger.warning(
                    f"Tibber API: Timeout in state {self.handle.state.value}. Reconnecting..."
                )
            except DecodeError as e:
                logger.error(f"Tibber API: Malformed message: {e}. Reconnecting...")
            await self._abandon()

        logger.info("Tibber API: Session stopped.")

    async def _connection(self) -> None:
        """One connection attempt: connect, handshake, subscribe, receive, close."""
        self.handle.state = SessionState.CONNECTING
        headers = {"Authorization": self.token, "User-Agent": self.user_agent}

        logger.info(f"Tibber API: Connect WebSocket {self.url}")
        async with asyncio.timeout(self.connect_timeout):
            channel = await self.connector(self.url, SUBPROTOCOL, headers)
            self.handle.attach(channel)

            await self._send(channel, encode_envelope("connection_init"))
            self.handle.state = SessionState.HANDSHAKE_SENT

            self.handle.state = SessionState.AWAITING_HANDSHAKE_ACK
            # Any reply counts as acknowledgment
            await self._recv(channel)
            logger.info("Tibber API: Connection acknowledged.")

            if not self.handle.stopping:
                await self._subscribe(channel)

        if not self.handle.stopping:
            await self._receive_loop(channel)

        await self._close(channel)

    async def _subscribe(self, channel: MessageChannel) -> None:
        subscription_id = self.handle.next_subscription()
        payload = {"query": subscription_query(self.home_id)}
        await self._send(channel, encode_envelope("start", subscription_id, payload))
        self.handle.state = SessionState.SUBSCRIBED
        logger.info(f"Tibber API: Subscription {subscription_id} started. Waiting for data...")

    async def _resubscribe(self, channel: MessageChannel) -> None:
        """Feed went quiet after producing data: stop and start again on the same channel."""
        self.handle.state = SessionState.STOPPING_FOR_RESUBSCRIBE
        logger.warning(
            f"Tibber API: No data for {self.idle_timeout:g}s, "
            f"resubscribing (subscription {self.handle.subscription_id})"
        )
        async with asyncio.timeout(self.connect_timeout):
            await self._send_stop()
            if not self.handle.stopping:
                await self._subscribe(channel)

    async def _receive_loop(self, channel: MessageChannel) -> None:
        """
        Process inbound messages until the server completes the subscription
        or a cooperative stop is requested.

        Raises:
            TimeoutError: idle timeout before any data arrived.
            ChannelError: remote closure or subscription error.
            DecodeError: malformed message.
        """
        while True:
            try:
                raw = await self._next_message(channel)
            except TimeoutError:
                if not self.handle.has_received_any_data:
                    raise
                await self._resubscribe(channel)
                continue

            if raw is None:
                logger.info("Tibber API: Stop requested, leaving subscription.")
                return

            envelope = decode_envelope(raw)
            current = str(self.handle.subscription_id)

            if envelope.type == "data":
                if envelope.id != current:
                    logger.debug(f"Tibber API: Ignoring data for subscription {envelope.id}")
                    continue
                self._handle_record(envelope.payload)
                self.handle.has_received_any_data = True

            elif envelope.type == "complete":
                if envelope.id != current:
                    logger.debug(f"Tibber API: Ignoring complete for subscription {envelope.id}")
                    continue
                self.handle.subscription_ended()
                logger.info("Tibber API: Server stopped the stream.")
                return

            elif envelope.type == "error" and envelope.id == current:
                raise SubscriptionError(f"Subscription {current} failed: {envelope.payload}")

            else:
                logger.debug(f"Tibber API: Ignoring {envelope.type} message")

    async def _next_message(self, channel: MessageChannel) -> str | None:
        """
        Wait for the next inbound message, bounded by the idle timeout.

        Returns None when a cooperative stop is requested first.
        """
        receive = asyncio.ensure_future(self._recv(channel))
        stop = asyncio.ensure_future(self.handle.wait_for_stop())
        try:
            async with asyncio.timeout(self.idle_timeout):
                await asyncio.wait((receive, stop), return_when=asyncio.FIRST_COMPLETED)
        finally:
            receive.cancel()
            stop.cancel()

        if receive.done():
            return receive.result()
        return None

    def _handle_record(self, record: MeasurementRecord) -> None:
        point = MetricPoint.from_record(record)
        self.writer.write(point.timestamp, point.fields)

        logger.info(
            f"[{record.timestamp.isoformat()}] Power: {record.consumption_power} W, "
            f"production: {record.production_power} W"
        )
        estimated = record.estimated_power()
        if estimated is not None:
            logger.debug(f"Tibber API: Estimated power from phases: {estimated:.1f} W")

    async def _close(self, channel: MessageChannel) -> None:
        """Terminate the connection cleanly."""
        self.handle.state = SessionState.CLOSING
        async with asyncio.timeout(self.connect_timeout):
            await self._send_stop()
            await self._send(channel, encode_envelope("connection_terminate"))
            await channel.close()
        self.handle.detach()
        self.handle.state = SessionState.CLOSED

    async def _abandon(self) -> None:
        """Drop whatever channel is still attached after a failed attempt."""
        channel = self.handle.detach()
        if channel is None:
            return
        self.handle.state = SessionState.DISCONNECTED
        try:
            async with asyncio.timeout(CLOSE_TIMEOUT):
                await channel.close()
        except (ChannelError, OSError, TimeoutError) as e:
            logger.debug(f"Tibber API: Error while dropping connection: {e}")

    async def _send_stop(self) -> None:
        claimed = self.handle.claim_stop()
        if claimed is None:
            return
        channel, subscription_id = claimed
        await self._send(channel, encode_envelope("stop", subscription_id))

    async def _send(self, channel: MessageChannel, message: str) -> None:
        self._observe("->", message)
        await channel.send(message)

    async def _recv(self, channel: MessageChannel) -> str:
        message = await channel.recv()
        if not message:
            raise ChannelError("Socket closed while expecting data")
        self._observe("<-", message)
        return message

    def _observe(self, direction: str, message: str) -> None:
        logger.debug(f"Tibber API: {direction} {message}")
        if self.on_envelope is not None:
            self.on_envelope(direction, message)


async def send_stop(handle: SessionHandle) -> None:
    """
    Best-effort "stop" for the active subscription, from outside the main loop.

    Failures are logged, never raised.
    """
    claimed = handle.claim_stop()
    if claimed is None:
        return
    channel, subscription_id = claimed
    try:
        await channel.send(encode_envelope("stop", subscription_id))
    except (ChannelError, OSError) as e:
        logger.warning(f"Tibber API: Could not send stop: {e}")
