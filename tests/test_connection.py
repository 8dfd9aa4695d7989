# Tests for the connection manager

from urllib.parse import parse_qs, urlsplit

import pytest
from clover_connector import events
from clover_connector.config import ConnectionSettings
from clover_connector.connection import ConnectionManager, ConnectionState
from clover_connector.errors import CloverError, ErrorCode
from clover_connector.messages import LanMethod, MessageBuilder, MessageType
from clover_connector.scheduler import ManualScheduler
from clover_connector.transport import StubTransport

ADDRESS = 'ws://192.168.1.20:12345/remote_pay'


class ConnectionTestBase:

    settings = None

    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.transport = StubTransport()
        self.builder = MessageBuilder()
        self.connection = ConnectionManager(self.transport, self.scheduler,
                                            settings=self.settings or ConnectionSettings(),
                                            friendly_id='register-1')
        self.emitted = []
        for key in (events.CONNECTION_OPEN, events.CONNECTION_CLOSED, events.CONNECTION_ERROR,
                    events.DEVICE_ERROR, events.HEARTBEAT_WARNING, events.HEARTBEAT_ERROR):
            self.connection.on(key, lambda *args, key=key: self.emitted.append((key, args)))

    def open(self):
        self.connection.open(ADDRESS)
        self.transport.simulate_open()

    def keys(self):
        return [key for key, _ in self.emitted]


class TestOpenAndClose(ConnectionTestBase):
    """Test opening and closing"""

    def test_address_is_decorated(self):
        """friendlyId and forceConnect are added to the query"""
        self.connection.open(ADDRESS)

        query = parse_qs(urlsplit(self.transport.url).query)
        assert query['friendlyId'] == ['register-1']
        assert query['forceConnect'] == ['false']

    def test_open_is_idempotent(self):
        """A second open of the same address does not reconnect"""
        self.open()
        self.connection.open(ADDRESS)

        assert len(self.transport.urls) == 1

    def test_open_emits_connection_open(self):
        """Opening resets the counter and emits CONNECTION_OPEN"""
        self.open()

        assert self.connection.state == ConnectionState.OPEN
        assert self.connection.reconnect_attempts == 0
        assert self.keys() == [events.CONNECTION_OPEN]

    def test_close_sends_shutdown_and_does_not_reconnect(self):
        """close() notifies the peer and suppresses reconnection"""
        self.open()

        self.connection.close()
        self.scheduler.advance(10)

        assert self.transport.sent_methods() == [LanMethod.SHUTDOWN]
        assert self.connection.state == ConnectionState.CLOSED
        assert len(self.transport.urls) == 1

    def test_close_survives_failed_shutdown(self):
        """The socket is closed even when SHUTDOWN cannot be sent"""
        self.open()
        self.transport.fail_sends = True

        self.connection.close()

        assert self.transport.close_codes == [1000]

    def test_send_after_close_raises(self):
        """After an explicit close, sending reports the device as disconnected"""
        self.open()
        self.connection.close()

        with pytest.raises(CloverError) as excinfo:
            self.connection.send(self.builder.build_show_welcome_screen())

        assert excinfo.value.code == ErrorCode.DEVICE_ERROR


class TestResendQueue(ConnectionTestBase):
    """Test queueing while the socket is not open"""

    def test_messages_queued_while_connecting_flush_in_order(self):
        """Queued messages go out oldest first, before newer ones"""
        self.connection.open(ADDRESS)
        self.connection.send(self.builder.build_show_welcome_screen())
        self.connection.send(self.builder.build_show_thank_you_screen())

        self.transport.simulate_open()
        self.connection.send(self.builder.build_show_receipt_screen())

        assert self.transport.sent_methods() == [
            LanMethod.SHOW_WELCOME_SCREEN,
            LanMethod.SHOW_THANK_YOU_SCREEN,
            LanMethod.SHOW_RECEIPT_SCREEN,
        ]

    def test_queue_survives_reconnect(self):
        """A message sent while disconnected is delivered after the reconnect"""
        self.open()
        self.transport.simulate_close(1006)
        self.connection.send(self.builder.build_terminal_message('hello'))

        assert self.transport.sent_methods() == []

        self.scheduler.advance(3)
        assert len(self.transport.urls) == 2

        self.transport.simulate_open()
        assert self.transport.sent_methods() == [LanMethod.TERMINAL_MESSAGE]
        assert not self.connection.resend_queue


class TestReceive(ConnectionTestBase):
    """Test inbound dispatch"""

    def test_ping_is_answered_with_pong(self):
        """PONG echoes the PING id"""
        self.open()

        self.transport.deliver({'type': MessageType.PING, 'id': 'p-1'})

        pong = self.transport.sent_envelopes()[-1]
        assert pong.type == MessageType.PONG
        assert pong.id == 'p-1'

    def test_dispatch_by_method_and_all_messages(self):
        """Listeners of the method and of ALL_MESSAGES both receive the envelope"""
        received = []
        self.connection.on(LanMethod.UI_STATE, lambda envelope: received.append(('method', envelope.method)))
        self.connection.on(events.ALL_MESSAGES, lambda envelope: received.append(('all', envelope.method)))
        self.open()

        self.transport.deliver(self.builder.build(LanMethod.UI_STATE, payload={'uiState': 'IDLE'}))

        assert received == [('method', 'UI_STATE'), ('all', 'UI_STATE')]

    def test_undecodable_message_is_dropped(self):
        """Garbage does not break the connection"""
        received = []
        self.connection.on(events.ALL_MESSAGES, received.append)
        self.open()

        self.transport.deliver('not json')

        assert received == []
        assert self.connection.state == ConnectionState.OPEN

    def test_takeover_stops_reconnecting(self):
        """FORCE surfaces CONNECTION_STOLEN and no reconnect follows"""
        self.open()

        self.transport.deliver({'type': MessageType.FORCE})
        self.scheduler.advance(30)

        errors = [args[0] for key, args in self.emitted if key == events.CONNECTION_ERROR]
        assert [e.code for e in errors] == [ErrorCode.CONNECTION_STOLEN]
        assert len(self.transport.urls) == 1

    def test_denied_connection_is_not_retried(self):
        """An ERROR with CONNECTION_DENIED stops retries"""
        self.open()

        self.transport.deliver(self.builder.build(LanMethod.ERROR, payload={'code': 'CONNECTION_DENIED'}))
        self.scheduler.advance(30)

        errors = [args[0] for key, args in self.emitted if key == events.CONNECTION_ERROR]
        assert [e.code for e in errors] == [ErrorCode.CONNECTION_DENIED]
        assert self.connection.denied
        assert len(self.transport.urls) == 1


class TestHeartbeat(ConnectionTestBase):
    """Test pong silence classification"""

    def test_thresholds(self):
        """Warnings from 2x, errors from 4x and a forced close at 8x the interval"""
        self.open()

        self.scheduler.advance(20)

        warnings = [args[0] for key, args in self.emitted if key == events.HEARTBEAT_WARNING]
        errors = [args[0] for key, args in self.emitted if key == events.HEARTBEAT_ERROR]
        assert warnings == [5.0, 7.5]
        assert errors == [10.0, 12.5, 15.0, 17.5]
        assert events.CONNECTION_ERROR in self.keys()
        assert self.transport.close_codes == [1001]

    def test_dead_connection_is_not_reconnected(self):
        """A forced close leaves reopening to the caller"""
        self.open()

        self.scheduler.advance(60)

        assert len(self.transport.urls) == 1
        assert self.connection.state == ConnectionState.CLOSED

    def test_pongs_keep_connection_healthy(self):
        """Answered pings never warn"""
        self.open()

        for _ in range(10):
            self.scheduler.advance(2.5)
            self.transport.deliver({'type': MessageType.PONG})

        assert self.keys() == [events.CONNECTION_OPEN]
        assert self.transport.sent_methods(include_pings=True).count(None) == 10


class TestReconnect(ConnectionTestBase):
    """Test the bounded reconnect loop"""

    def test_gives_up_after_max_attempts(self):
        """21 consecutive socket errors with a ceiling of 20 surface DEVICE_ERROR once"""
        self.connection.open(ADDRESS)

        for _ in range(21):
            self.transport.simulate_error()
            self.scheduler.advance(3)

        device_errors = [args[0] for key, args in self.emitted if key == events.DEVICE_ERROR]
        assert len(device_errors) == 1
        assert device_errors[0].code == ErrorCode.DEVICE_ERROR
        assert len(self.transport.urls) == 21
        assert not self.connection.reconnecting

    def test_successful_open_resets_attempts(self):
        """The attempt counter restarts after an open"""
        self.connection.open(ADDRESS)
        self.transport.simulate_error()
        self.scheduler.advance(3)
        self.transport.simulate_error()
        assert self.connection.reconnect_attempts == 2

        self.scheduler.advance(3)
        self.transport.simulate_open()

        assert self.connection.reconnect_attempts == 0
        assert self.connection.state == ConnectionState.OPEN

    def test_lost_messages_reported_on_give_up(self):
        """Queued messages are handed back when retries run out"""
        self.connection.open(ADDRESS)
        self.transport.simulate_error()
        self.connection.send(self.builder.build_show_welcome_screen())

        for _ in range(20):
            self.scheduler.advance(3)
            self.transport.simulate_error()

        assert len(self.connection.lost_messages) == 1
        assert not self.connection.resend_queue

    def test_send_after_give_up_raises(self):
        """Once retries ran out a send fails instead of starting a new reconnect cycle"""
        self.connection.open(ADDRESS)
        for _ in range(21):
            self.transport.simulate_error()
            self.scheduler.advance(3)
        assert self.connection.gave_up

        with pytest.raises(CloverError) as excinfo:
            self.connection.send(self.builder.build_show_welcome_screen())

        assert excinfo.value.code == ErrorCode.DEVICE_ERROR
        assert len(self.transport.urls) == 21
        assert not self.connection.resend_queue

    def test_open_after_give_up_clears_flag(self):
        """An explicit open starts over"""
        self.connection.open(ADDRESS)
        for _ in range(21):
            self.transport.simulate_error()
            self.scheduler.advance(3)

        self.connection.open(ADDRESS)
        self.transport.simulate_open()

        assert not self.connection.gave_up
        assert self.connection.state == ConnectionState.OPEN


class TestReconnectDisabled(ConnectionTestBase):
    """Test behaviour with reconnection switched off"""

    settings = ConnectionSettings(reconnect_enabled=False)

    def test_send_when_closed_raises(self):
        """Without reconnection a send on a closed socket raises"""
        with pytest.raises(CloverError):
            self.connection.send(self.builder.build_show_welcome_screen())

    def test_unexpected_close_emits_connection_error(self):
        """A dropped socket is reported instead of retried"""
        self.open()

        self.transport.simulate_close(1006)
        self.scheduler.advance(10)

        assert events.CONNECTION_ERROR in self.keys()
        assert len(self.transport.urls) == 1


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
