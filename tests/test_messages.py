# Tests for the envelope codec and message builders

import json

import pytest
from clover_connector.errors import MessageDecodeError
from clover_connector.messages import (LAN_PACKAGE, WEBSOCKET_PACKAGE, Envelope, LanMethod,
                                       MessageBuilder, MessageType, decode, encode)


class TestEncode:
    """Test envelope encoding"""

    def test_defaults_to_command(self):
        """Type defaults to COMMAND and the package to the LAN dialect"""
        envelope = encode(LanMethod.SHOW_WELCOME_SCREEN)

        assert envelope.type == MessageType.COMMAND
        assert envelope.package_name == LAN_PACKAGE

    def test_synthesizes_method_payload(self):
        """A method without payload gets {"method": method}"""
        envelope = encode(LanMethod.DISCOVERY_REQUEST)

        assert json.loads(envelope.payload) == {'method': 'DISCOVERY_REQUEST'}

    def test_payload_is_copied_with_method_mirror(self):
        """The caller's dict is not mutated"""
        payload = {'text': 'hello'}

        envelope = encode(LanMethod.TERMINAL_MESSAGE, payload=payload)

        assert payload == {'text': 'hello'}
        assert envelope.payload_object() == {'text': 'hello', 'method': 'TERMINAL_MESSAGE'}

    def test_ping_has_no_method_or_payload(self):
        """PING carries only type and package"""
        message = json.loads(MessageBuilder().build_ping().to_json())

        assert message == {'type': 'PING', 'packageName': LAN_PACKAGE}

    def test_wire_field_names(self):
        """packageName and id use the wire spelling"""
        envelope = encode(LanMethod.PRINT_TEXT, payload={'textLines': ['a']}, id='ABC')

        message = json.loads(envelope.to_json())

        assert message['packageName'] == LAN_PACKAGE
        assert message['id'] == 'ABC'
        assert isinstance(message['payload'], str)


class TestDecode:
    """Test envelope decoding"""

    def test_round_trip(self):
        """Decoding an encoded envelope gives back the same fields"""
        envelope = encode(LanMethod.TX_START, payload={'payIntent': {'amount': 100}}, id='X1')

        decoded = decode(envelope.to_json())

        assert decoded == envelope
        assert decoded.payload_object()['payIntent'] == {'amount': 100}

    def test_accepts_bytes(self):
        """Binary frames are decoded as UTF-8"""
        decoded = decode(b'{"type": "PONG"}')

        assert decoded.type == MessageType.PONG
        assert decoded.method is None

    def test_unknown_method_is_accepted(self):
        """Methods outside the vocabulary still decode"""
        decoded = decode('{"type": "COMMAND", "method": "SOMETHING_NEW"}')

        assert decoded.method == 'SOMETHING_NEW'

    def test_object_payload_is_reserialized(self):
        """A relay may send the payload already decoded"""
        decoded = decode('{"type": "COMMAND", "method": "ACK", "payload": {"sourceMessageId": "A"}}')

        assert decoded.payload_object() == {'sourceMessageId': 'A'}

    @pytest.mark.parametrize('raw', ['not json', '[1, 2]', '"text"', '{"method": "ACK"}'])
    def test_rejects_unusable_text(self, raw):
        """Invalid JSON, non-objects and missing type raise MessageDecodeError"""
        with pytest.raises(MessageDecodeError):
            decode(raw)

    def test_payload_object_without_payload(self):
        """An absent payload reads as an empty dict"""
        assert Envelope(type=MessageType.PING).payload_object() == {}


class TestMessageBuilder:
    """Test the outbound message builders"""

    def setup_method(self):
        self.builder = MessageBuilder()

    def test_builders_return_fresh_envelopes(self):
        """Two calls never share an envelope"""
        first = self.builder.build_show_welcome_screen()
        second = self.builder.build_show_welcome_screen()

        assert first == second
        assert first is not second

    def test_cloud_dialect(self):
        """The package name follows the builder's dialect"""
        builder = MessageBuilder(WEBSOCKET_PACKAGE)

        assert builder.build_discovery_request().package_name == WEBSOCKET_PACKAGE

    def test_signature_verified_payment_is_json_text(self):
        """The payment travels as a JSON string inside the payload"""
        payment = {'id': 'P1', 'amount': 1000}

        payload = self.builder.build_signature_verified(payment).payload_object()

        assert payload['verified'] is True
        assert json.loads(payload['payment']) == payment

    def test_refund_request_full_and_partial(self):
        """fullRefund is set only when no amount is given"""
        full = self.builder.build_refund_request('O1', 'P1').payload_object()
        partial = self.builder.build_refund_request('O1', 'P1', 250).payload_object()

        assert full['fullRefund'] is True
        assert 'amount' not in full
        assert partial['fullRefund'] is False
        assert partial['amount'] == 250

    def test_void_payment(self):
        """Void carries the payment and the reason"""
        payload = self.builder.build_void_payment({'id': 'P1'}, 'USER_CANCEL').payload_object()

        assert payload['voidReason'] == 'USER_CANCEL'
        assert json.loads(payload['payment']) == {'id': 'P1'}

    def test_pong_echoes_id(self):
        """PONG answers with the id of the PING"""
        pong = self.builder.build_pong('abc')

        assert pong.type == MessageType.PONG
        assert pong.id == 'abc'


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
