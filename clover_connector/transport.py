# Transport - WebSocket link to the terminal
# A reader thread per connection; events are handed to the on_* callbacks set by the owner

import json
import logging
import ssl
import threading
from typing import Callable, List, Optional
from urllib.parse import urlsplit, urlunsplit

import requests
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.sync.client import connect as ws_connect

from .messages import Envelope, decode

logger = logging.getLogger(__name__)

ABNORMAL_CLOSURE = 1006


class SocketState:
    CONNECTING = 'CONNECTING'
    OPEN = 'OPEN'
    CLOSING = 'CLOSING'
    CLOSED = 'CLOSED'


def preflight_url(ws_url: str) -> str:
    """http(s) form of a ws(s) address"""
    parts = urlsplit(ws_url)
    scheme = {'ws': 'http', 'wss': 'https'}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


class WebSocketTransport:
    """WebSocket client built on websockets' threaded API"""

    def __init__(self, preflight: bool = True, preflight_timeout: float = 5.0,
                 open_timeout: float = 10.0, close_timeout: float = 2.0,
                 verify=True, session: Optional[requests.Session] = None):
        self.preflight = preflight
        self.preflight_timeout = preflight_timeout
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self.verify = verify
        self.session = session or requests.Session()

        self.on_open: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[BaseException], None]] = None
        self.on_close: Optional[Callable[[int, str], None]] = None

        self.url = None
        self.state = SocketState.CLOSED
        self._ws = None
        self._generation = 0
        self._lock = threading.Lock()
        self.thread = None

    def connect(self, url: str):
        """Open a new connection in the background"""
        with self._lock:
            self._generation += 1
            generation = self._generation
            self.url = url
            self._ws = None
            self.state = SocketState.CONNECTING
        self.thread = threading.Thread(
            target=self._run,
            args=(url, generation),
            name=f"clover-socket-{generation}",
            daemon=True
        )
        self.thread.start()

    def preflight_check(self, url: str):
        """Cheap request that fails fast on certificate or routing problems"""
        check_url = preflight_url(url)
        logger.debug(f"Pre-flight check {check_url}")
        # Any HTTP answer means the host is reachable
        self.session.get(check_url, timeout=self.preflight_timeout, verify=self.verify)

    def send(self, text: str):
        ws = self._ws
        if ws is None or self.state != SocketState.OPEN:
            raise ConnectionError("Socket is not open")
        try:
            ws.send(text)
        except (ConnectionClosed, WebSocketException) as e:
            raise ConnectionError(f"Send failed: {e}") from e

    def close(self, code: int = 1000, reason: str = ''):
        with self._lock:
            ws = self._ws
            if self.state == SocketState.CLOSED:
                return
            if ws is None:
                # Still connecting: abandon that attempt
                self._generation += 1
                self.state = SocketState.CLOSED
                abandoned = True
            else:
                self.state = SocketState.CLOSING
                abandoned = False

        if abandoned:
            self._fire(self._generation, 'on_close', code, 'closed before open')
            return
        try:
            ws.close(code, reason)
        except (OSError, WebSocketException) as e:
            logger.debug(f"Error while closing socket: {e}")

    def _ssl_context(self):
        if self.verify is False:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            return context
        if isinstance(self.verify, str):
            return ssl.create_default_context(cafile=self.verify)
        return None

    def _fire(self, generation: int, name: str, *args):
        if generation != self._generation:
            return
        handler = getattr(self, name)
        if handler:
            handler(*args)

    def _run(self, url: str, generation: int):
        try:
            if self.preflight:
                self.preflight_check(url)
            kwargs = {'open_timeout': self.open_timeout, 'close_timeout': self.close_timeout}
            context = self._ssl_context() if url.startswith('wss') else None
            if context is not None:
                kwargs['ssl'] = context
            ws = ws_connect(url, **kwargs)
        except (requests.exceptions.RequestException, OSError, WebSocketException) as e:
            logger.warning(f"Could not connect to {url}: {e}")
            with self._lock:
                if generation == self._generation:
                    self.state = SocketState.CLOSED
            self._fire(generation, 'on_error', e)
            self._fire(generation, 'on_close', ABNORMAL_CLOSURE, str(e))
            return

        with self._lock:
            if generation != self._generation:
                stale = True
            else:
                stale = False
                self._ws = ws
                self.state = SocketState.OPEN
        if stale:
            ws.close()
            return

        self._fire(generation, 'on_open')
        code, reason = ABNORMAL_CLOSURE, ''
        try:
            while True:
                message = ws.recv()
                if isinstance(message, bytes):
                    message = message.decode('utf-8', errors='replace')
                self._fire(generation, 'on_message', message)
        except ConnectionClosedOK as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
            else:
                code = 1000
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
            self._fire(generation, 'on_error', e)
        except (OSError, WebSocketException) as e:
            logger.error(f"Socket read error: {e}")
            self._fire(generation, 'on_error', e)
        finally:
            with self._lock:
                if generation == self._generation:
                    self.state = SocketState.CLOSED
                    self._ws = None
            self._fire(generation, 'on_close', code, reason)


# Stub implementation for testing
class StubTransport:
    """In-memory transport; tests drive the socket events by hand"""

    def __init__(self):
        self.on_open = None
        self.on_message = None
        self.on_error = None
        self.on_close = None

        self.url = None
        self.urls: List[str] = []
        self.state = SocketState.CLOSED
        self.sent: List[str] = []
        self.close_codes: List[int] = []
        self.fail_sends = False

    def connect(self, url: str):
        self.url = url
        self.urls.append(url)
        self.state = SocketState.CONNECTING

    def send(self, text: str):
        if self.state != SocketState.OPEN or self.fail_sends:
            raise ConnectionError("Socket is not open")
        self.sent.append(text)

    def close(self, code: int = 1000, reason: str = ''):
        if self.state == SocketState.CLOSED:
            return
        self.state = SocketState.CLOSED
        self.close_codes.append(code)
        if self.on_close:
            self.on_close(code, reason)

    # Simulation helpers

    def simulate_open(self):
        self.state = SocketState.OPEN
        if self.on_open:
            self.on_open()

    def deliver(self, message):
        """Push an inbound message (text, dict or Envelope)"""
        if isinstance(message, Envelope):
            message = message.to_json()
        elif isinstance(message, dict):
            message = json.dumps(message)
        if self.on_message:
            self.on_message(message)

    def simulate_error(self, error: Optional[BaseException] = None):
        self.state = SocketState.CLOSED
        if self.on_error:
            self.on_error(error or ConnectionError("stub socket error"))
        if self.on_close:
            self.on_close(ABNORMAL_CLOSURE, '')

    def simulate_close(self, code: int = 1000, reason: str = ''):
        self.state = SocketState.CLOSED
        if self.on_close:
            self.on_close(code, reason)

    def sent_envelopes(self) -> List[Envelope]:
        return [decode(text) for text in self.sent]

    def sent_methods(self, include_pings: bool = False) -> List[Optional[str]]:
        return [
            envelope.method for envelope in self.sent_envelopes()
            if include_pings or envelope.type not in ('PING', 'PONG')
        ]

    def clear(self):
        self.sent.clear()
