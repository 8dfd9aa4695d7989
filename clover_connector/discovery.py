# Discovery - application-level handshake after the socket opens
# Probes with DISCOVERY_REQUEST until the terminal answers or the probe ceiling is passed

import logging
from typing import Any, Dict, Optional

from . import events
from .connection import ConnectionManager
from .errors import CloverError, ErrorCode
from .messages import Envelope, LanMethod

logger = logging.getLogger(__name__)


class DiscoveryState:
    UNACKNOWLEDGED = 'UNACKNOWLEDGED'
    PROBING = 'PROBING'
    ACKNOWLEDGED = 'ACKNOWLEDGED'
    FAILED = 'FAILED'


class DiscoveryController:
    """Tracks whether the terminal's application layer has answered on this connection"""

    def __init__(self, connection: ConnectionManager):
        self.connection = connection
        self.settings = connection.settings
        self.state = DiscoveryState.UNACKNOWLEDGED
        self.probes_sent = 0
        self.device_info: Optional[Dict[str, Any]] = None
        self._timer = None

        connection.on(events.CONNECTION_OPEN, self._on_open)
        connection.on(events.CONNECTION_CLOSED, self._on_closed)
        connection.on(LanMethod.DISCOVERY_RESPONSE, self._on_response)

    @property
    def acknowledged(self) -> bool:
        return self.state == DiscoveryState.ACKNOWLEDGED

    def is_open(self) -> bool:
        return self.connection.is_connected and self.acknowledged

    def _on_open(self):
        self._stop()
        self.state = DiscoveryState.PROBING
        self.probes_sent = 0
        self._timer = self.connection.scheduler.call_every(
            self.settings.discovery_interval, self._probe, first_delay=0
        )

    def _on_closed(self, code=None, reason=None):
        self._stop()
        if self.state != DiscoveryState.FAILED:
            self.state = DiscoveryState.UNACKNOWLEDGED

    def _probe(self):
        if self.state != DiscoveryState.PROBING:
            self._stop()
            return
        logger.info("Sending 'discovery' message to device")
        try:
            self.connection.send(self.connection.builder.build_discovery_request())
        except CloverError as e:
            logger.warning(f"Could not send discovery request: {e}")
        self.probes_sent += 1

        if self.probes_sent > self.settings.max_discovery_probes:
            self._fail()

    def _fail(self):
        self._stop()
        self.state = DiscoveryState.FAILED
        message = (f"No discovery response after {self.probes_sent} requests; "
                   "shutting down the connection")
        logger.error(message)
        self.connection.close(notify_peer=False)
        self.connection.events.emit(events.DISCOVERY_TIMEOUT,
                                    CloverError(ErrorCode.DISCOVERY_TIMEOUT, message))

    def _on_response(self, envelope: Envelope):
        if self.state != DiscoveryState.PROBING:
            logger.debug("Ignoring discovery response outside of probing")
            return
        self._stop()
        self.state = DiscoveryState.ACKNOWLEDGED
        try:
            self.device_info = envelope.payload_object()
        except ValueError:
            self.device_info = {}
        logger.info(f"Device has responded to discovery message after {self.probes_sent} requests")
        self.connection.events.emit(events.DEVICE_READY, envelope)

    def _stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
