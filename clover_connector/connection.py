# Connection Manager - persistent connection to the terminal
# Keepalive heartbeat, dead-connection detection, bounded reconnection and the resend queue

import logging
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from . import events
from .config import ConnectionSettings
from .errors import CloverError, ErrorCode, MessageDecodeError
from .events import EventRegistry, Listener
from .ids import new_id
from .messages import Envelope, LanMethod, MessageBuilder, MessageType, decode
from .transport import SocketState

logger = logging.getLogger(__name__)


class ConnectionState:
    IDLE = 'IDLE'
    CONNECTING = 'CONNECTING'
    OPEN = 'OPEN'
    CLOSING = 'CLOSING'
    CLOSED = 'CLOSED'


class ConnectionManager:
    """Owns the socket, the heartbeat, reconnection and listener dispatch"""

    def __init__(self, transport, scheduler, settings: Optional[ConnectionSettings] = None,
                 builder: Optional[MessageBuilder] = None, friendly_id: Optional[str] = None,
                 force_connect: bool = False):
        self.transport = transport
        self.scheduler = scheduler
        self.settings = settings or ConnectionSettings()
        self.builder = builder or MessageBuilder()
        self.friendly_id = friendly_id or new_id()
        self.force_connect = force_connect
        self.events = EventRegistry()

        self.state = ConnectionState.IDLE
        self.reconnecting = False
        self.reconnect_attempts = 0
        self.resend_queue: Deque[str] = deque()
        self.lost_messages: List[str] = []
        self.ping_sent_at = 0.0
        self.pong_received_at = 0.0
        self.address = None
        self.url = None
        self.last_error = None
        self.taken_over = False
        self.denied = False
        self.gave_up = False

        self._closing_locally = False
        self._heartbeat_timer = None
        self._reconnect_timer = None
        self._flush_timer = None

        # Socket callbacks arrive on the transport's thread; run them on the scheduler
        self.transport.on_open = lambda: self.scheduler.call_soon(self._handle_open)
        self.transport.on_message = lambda text: self.scheduler.call_soon(self.receive, text)
        self.transport.on_error = lambda error: self.scheduler.call_soon(self._handle_error, error)
        self.transport.on_close = lambda code, reason: self.scheduler.call_soon(self._handle_close, code, reason)

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------

    def on(self, key: str, callback: Callable) -> Listener:
        return self.events.on(key, callback)

    def once(self, key: str, callback: Callable) -> Listener:
        return self.events.once(key, callback)

    def remove_listener(self, key: str, callback) -> bool:
        return self.events.remove_listener(key, callback)

    def remove_listeners(self, handles: Iterable) -> int:
        return self.events.remove_listeners(handles)

    def listener_count(self, key: str) -> int:
        return self.events.listener_count(key)

    # ------------------------------------------------------------------
    # Opening and closing
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.OPEN

    @property
    def closed_locally(self) -> bool:
        return self._closing_locally

    def decorate_address(self, address: str) -> str:
        """Add the caller identity and the takeover flag to the address"""
        parts = urlsplit(address)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                 if k not in ('friendlyId', 'forceConnect')]
        query.append(('friendlyId', self.friendly_id))
        query.append(('forceConnect', 'true' if self.force_connect else 'false'))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    def open(self, address: str):
        if address == self.address and self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug(f"Already connecting/connected to {address}")
            return
        self.address = address
        self.url = self.decorate_address(address)
        self._closing_locally = False
        self.taken_over = False
        self.denied = False
        self.gave_up = False
        self.reconnect_attempts = 0
        self.lost_messages = []
        self._cancel_reconnect()
        self._connect()

    def close(self, notify_peer: bool = True):
        """Best-effort SHUTDOWN to the peer, then always close the socket"""
        self._closing_locally = True
        self._cancel_reconnect()
        self._cancel_flush()
        self._stop_heartbeat()

        if notify_peer and self.transport.state == SocketState.OPEN:
            try:
                self.transport.send(self.builder.build_shutdown().to_json())
            except ConnectionError as e:
                logger.warning(f"Could not send shutdown to device: {e}")

        if self.resend_queue:
            logger.info(f"Discarding {len(self.resend_queue)} queued messages on close")
            self.resend_queue.clear()
        if self.state not in (ConnectionState.IDLE, ConnectionState.CLOSED):
            self.state = ConnectionState.CLOSING
        self.transport.close()

    def _connect(self):
        self._stop_heartbeat()
        self.state = ConnectionState.CONNECTING
        logger.info(f"Contacting device at {self.address}")
        self.transport.connect(self.url)

    # ------------------------------------------------------------------
    # Socket events
    # ------------------------------------------------------------------

    def _handle_open(self):
        self.state = ConnectionState.OPEN
        self.reconnecting = False
        self.reconnect_attempts = 0
        now = self.scheduler.now()
        self.ping_sent_at = now
        self.pong_received_at = now
        self._start_heartbeat()
        logger.info("Communication channel open")
        try:
            self._flush_queue()
        except ConnectionError as e:
            logger.warning(f"Could not flush queued messages: {e}")
        self._cancel_flush()
        self.events.emit(events.CONNECTION_OPEN)

    def _handle_error(self, error: BaseException):
        self.last_error = error
        logger.warning(f"Socket error: {error}")

    def _handle_close(self, code: int, reason: str):
        self.state = ConnectionState.CLOSED
        self._stop_heartbeat()
        self._cancel_flush()
        logger.info(f"Connection closed (code={code}, reason={reason!r})")
        self.events.emit(events.CONNECTION_CLOSED, code, reason)

        if self._closing_locally or self.taken_over or self.denied:
            self.reconnecting = False
            return
        if not self.settings.reconnect_enabled:
            self.events.emit(events.CONNECTION_ERROR,
                             CloverError(ErrorCode.DEVICE_ERROR, f"Connection closed (code {code})",
                                         self.last_error))
            return
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self):
        if self._reconnect_timer is not None:
            return
        if self.reconnect_attempts >= self.settings.max_reconnect_attempts:
            self._give_up()
            return
        self.reconnect_attempts += 1
        self.reconnecting = True
        logger.info(
            f"Reconnecting in {self.settings.reconnect_delay}s "
            f"(attempt {self.reconnect_attempts}/{self.settings.max_reconnect_attempts})"
        )
        self._reconnect_timer = self.scheduler.call_later(self.settings.reconnect_delay,
                                                          self._attempt_reconnect)

    def _attempt_reconnect(self):
        self._reconnect_timer = None
        if self._closing_locally or self.taken_over or self.denied:
            self.reconnecting = False
            return
        logger.info("Attempting reconnect...")
        self._connect()

    def _cancel_reconnect(self):
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        self.reconnecting = False

    def _give_up(self):
        attempts = self.reconnect_attempts
        self.reconnecting = False
        self.gave_up = True
        self.reconnect_attempts = 0
        self.lost_messages = list(self.resend_queue)
        self.resend_queue.clear()
        logger.error(f"Exceeded {attempts} reconnect attempts, giving up")
        if self.lost_messages:
            logger.error(f"{len(self.lost_messages)} queued messages were not delivered")
        self.events.emit(events.DEVICE_ERROR,
                         CloverError(ErrorCode.DEVICE_ERROR,
                                     f"Could not reconnect to device after {attempts} attempts",
                                     self.last_error))

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(self, message: Union[Envelope, str]):
        """Send now, or queue until the socket is open. Raises CloverError when disconnected for good."""
        text = message.to_json() if isinstance(message, Envelope) else message
        self._echo('sending', text)

        if self.state == ConnectionState.OPEN:
            try:
                self._flush_queue()
                self.transport.send(text)
            except ConnectionError as e:
                logger.warning(f"Send failed, queueing message: {e}")
                self.last_error = e
                if not self.settings.reconnect_enabled:
                    raise CloverError(ErrorCode.DEVICE_ERROR, "Device disconnected", e) from e
                self.resend_queue.append(text)
            return

        if self.state == ConnectionState.CONNECTING:
            self.resend_queue.append(text)
            self._schedule_flush()
            return

        if self.settings.reconnect_enabled and self.url and not (
                self._closing_locally or self.taken_over or self.denied or self.gave_up):
            self.resend_queue.append(text)
            if not self.reconnecting:
                self.reconnecting = True
                self._connect()
            return

        if self.state not in (ConnectionState.IDLE, ConnectionState.CLOSED):
            self.close(notify_peer=False)
        raise CloverError(ErrorCode.DEVICE_ERROR, "Device disconnected")

    def _flush_queue(self):
        while self.resend_queue:
            text = self.resend_queue.popleft()
            try:
                self.transport.send(text)
            except ConnectionError:
                self.resend_queue.appendleft(text)
                raise

    def _schedule_flush(self):
        if self._flush_timer is None:
            self._flush_timer = self.scheduler.call_every(self.settings.heartbeat_interval,
                                                          self._flush_tick)

    def _flush_tick(self):
        if self.state == ConnectionState.CONNECTING:
            return
        self._cancel_flush()
        if self.state == ConnectionState.OPEN:
            try:
                self._flush_queue()
            except ConnectionError as e:
                logger.warning(f"Could not flush queued messages: {e}")

    def _cancel_flush(self):
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def receive(self, raw_text: str):
        try:
            envelope = decode(raw_text)
        except MessageDecodeError as e:
            logger.warning(f"Dropping unusable message: {e}")
            return

        if envelope.type != MessageType.PONG:
            self._echo('received', raw_text)

        if envelope.type == MessageType.PONG:
            self.pong_received_at = self.scheduler.now()
        elif envelope.type == MessageType.PING:
            self._send_pong(envelope.id)
        elif envelope.type == MessageType.FORCE:
            self._handle_exclusivity(ErrorCode.CONNECTION_STOLEN,
                                     "Connection was taken over by another client")

        if envelope.method == LanMethod.ERROR and self._is_denial(envelope):
            self._handle_exclusivity(ErrorCode.CONNECTION_DENIED,
                                     "Device is already connected to another client")

        if envelope.method:
            self.events.emit(envelope.method, envelope)
        self.events.emit(events.ALL_MESSAGES, envelope)

    def _send_pong(self, id: Optional[str]):
        try:
            self.send(self.builder.build_pong(id))
        except CloverError as e:
            logger.warning(f"Could not answer ping: {e}")

    @staticmethod
    def _is_denial(envelope: Envelope) -> bool:
        try:
            payload = envelope.payload_object()
        except ValueError:
            return False
        return payload.get('code') == ErrorCode.CONNECTION_DENIED

    def _handle_exclusivity(self, code: str, message: str):
        if code == ErrorCode.CONNECTION_STOLEN:
            self.taken_over = True
        else:
            self.denied = True
        self._cancel_reconnect()
        logger.error(message)
        self.events.emit(events.CONNECTION_ERROR, CloverError(code, message))
        self.transport.close()

    def _echo(self, direction: str, text: str):
        if self.settings.echo_all_messages:
            logger.info(f"{direction} message: {text}")
        else:
            logger.debug(f"{direction} message: {text}")

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self):
        self._stop_heartbeat()
        self._heartbeat_timer = self.scheduler.call_every(self.settings.heartbeat_interval,
                                                          self._heartbeat)

    def _stop_heartbeat(self):
        if self._heartbeat_timer is not None:
            self._heartbeat_timer.cancel()
            self._heartbeat_timer = None

    def _heartbeat(self):
        if not self.check_dead_connection():
            return
        self.ping()

    def check_dead_connection(self) -> bool:
        """Classify pong silence; returns False when the connection was force-closed"""
        if self.pong_received_at >= self.ping_sent_at:
            return True

        silence = self.scheduler.now() - self.pong_received_at
        settings = self.settings
        if silence >= settings.shutdown_threshold:
            message = f"Connection appears dead, no response in {silence:.1f}s; closing"
            logger.error(message)
            self._stop_heartbeat()
            # Treated like a local close: the caller decides whether to open again
            self._closing_locally = True
            self._cancel_reconnect()
            self.events.emit(events.CONNECTION_ERROR, CloverError(ErrorCode.DEVICE_ERROR, message))
            self.transport.close(1001, 'no pong')
            return False
        if silence >= settings.error_threshold:
            logger.error(f"Connection appears to be dead...no response in {silence:.1f}s")
            self.events.emit(events.HEARTBEAT_ERROR, silence)
        elif silence >= settings.warn_threshold:
            logger.warning(f"Connection is slow...no response in {silence:.1f}s")
            self.events.emit(events.HEARTBEAT_WARNING, silence)
        return True

    def ping(self):
        self.ping_sent_at = self.scheduler.now()
        try:
            self.send(self.builder.build_ping())
        except CloverError as e:
            logger.warning(f"Could not send ping: {e}")
