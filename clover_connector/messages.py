# Messages - envelope codec and protocol vocabulary for the Clover connector
# Builds and parses the JSON envelopes exchanged with the terminal

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import MessageDecodeError

logger = logging.getLogger(__name__)

LAN_PACKAGE = 'com.clover.remote.protocol.lan'
WEBSOCKET_PACKAGE = 'com.clover.remote.protocol.websocket'

PAY_ACTION = 'com.clover.remote.protocol.action.START_REMOTE_PROTOCOL_PAY'


class MessageType:
    """Envelope types"""
    COMMAND = 'COMMAND'
    QUERY = 'QUERY'
    EVENT = 'EVENT'
    PING = 'PING'
    PONG = 'PONG'
    # Sent by the relay when another session took the terminal over
    FORCE = 'FORCE'

    ALL = (COMMAND, QUERY, EVENT, PING, PONG, FORCE)


class LanMethod:
    """Methods understood by the terminal"""
    # Transaction lifecycle
    TX_START = 'TX_START'
    FINISH_OK = 'FINISH_OK'
    FINISH_CANCEL = 'FINISH_CANCEL'
    VERIFY_SIGNATURE = 'VERIFY_SIGNATURE'
    SIGNATURE_VERIFIED = 'SIGNATURE_VERIFIED'
    TIP_ADDED = 'TIP_ADDED'
    VOID_PAYMENT = 'VOID_PAYMENT'
    PAYMENT_VOIDED = 'PAYMENT_VOIDED'
    REFUND_REQUEST = 'REFUND_REQUEST'
    REFUND_RESPONSE = 'REFUND_RESPONSE'
    CAPTURE_PREAUTH = 'CAPTURE_PREAUTH'
    CAPTURE_PREAUTH_RESPONSE = 'CAPTURE_PREAUTH_RESPONSE'
    TIP_ADJUST = 'TIP_ADJUST'
    TIP_ADJUST_RESPONSE = 'TIP_ADJUST_RESPONSE'
    VAULT_CARD = 'VAULT_CARD'
    VAULT_CARD_RESPONSE = 'VAULT_CARD_RESPONSE'
    CLOSEOUT_REQUEST = 'CLOSEOUT_REQUEST'
    CLOSEOUT_RESPONSE = 'CLOSEOUT_RESPONSE'

    # Device / session
    DISCOVERY_REQUEST = 'DISCOVERY_REQUEST'
    DISCOVERY_RESPONSE = 'DISCOVERY_RESPONSE'
    SHUTDOWN = 'SHUTDOWN'
    KEY_PRESS = 'KEY_PRESS'
    UI_STATE = 'UI_STATE'
    TX_STATE = 'TX_STATE'
    BREAK = 'BREAK'
    ACK = 'ACK'
    ERROR = 'ERROR'

    # Printing / display
    PRINT_TEXT = 'PRINT_TEXT'
    PRINT_IMAGE = 'PRINT_IMAGE'
    PRINT_PAYMENT = 'PRINT_PAYMENT'
    PRINT_PAYMENT_MERCHANT_COPY = 'PRINT_PAYMENT_MERCHANT_COPY'
    PRINT_CREDIT = 'PRINT_CREDIT'
    PRINT_PAYMENT_DECLINE = 'PRINT_PAYMENT_DECLINE'
    PRINT_CREDIT_DECLINE = 'PRINT_CREDIT_DECLINE'
    TERMINAL_MESSAGE = 'TERMINAL_MESSAGE'
    SHOW_WELCOME_SCREEN = 'SHOW_WELCOME_SCREEN'
    SHOW_THANK_YOU_SCREEN = 'SHOW_THANK_YOU_SCREEN'
    SHOW_RECEIPT_SCREEN = 'SHOW_RECEIPT_SCREEN'
    SHOW_ORDER_SCREEN = 'SHOW_ORDER_SCREEN'
    SHOW_PAYMENT_RECEIPT_OPTIONS = 'SHOW_PAYMENT_RECEIPT_OPTIONS'
    OPEN_CASH_DRAWER = 'OPEN_CASH_DRAWER'
    LAST_MSG_REQUEST = 'LAST_MSG_REQUEST'
    LAST_MSG_RESPONSE = 'LAST_MSG_RESPONSE'


class CardEntryMethods:
    """Card entry bitmask values"""
    MAG_STRIPE = 1
    ICC_CONTACT = 2
    NFC_CONTACTLESS = 4
    MANUAL = 8
    ALL = MAG_STRIPE | ICC_CONTACT | NFC_CONTACTLESS | MANUAL


class KeyPress:
    ESC = 'ESC'
    ENTER = 'ENTER'
    BACKSPACE = 'BACKSPACE'


@dataclass
class Envelope:
    """One wire-level message"""
    type: str = MessageType.COMMAND
    method: Optional[str] = None
    package_name: Optional[str] = None
    payload: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        message = {}
        if self.method:
            message['method'] = self.method
        message['type'] = self.type
        if self.package_name:
            message['packageName'] = self.package_name
        if self.payload is not None:
            message['payload'] = self.payload
        if self.id:
            message['id'] = self.id
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def payload_object(self) -> Dict[str, Any]:
        """Parse the inner payload string; an absent payload is an empty dict"""
        if not self.payload:
            return {}
        payload = json.loads(self.payload)
        if not isinstance(payload, dict):
            raise ValueError(f"{self.method} payload is not a JSON object")
        return payload


def encode(method: Optional[str], type: Optional[str] = None,
           payload: Optional[Dict[str, Any]] = None,
           package_name: Optional[str] = None, id: Optional[str] = None) -> Envelope:
    """Build an envelope; the payload is copied and serialized with a method mirror field"""
    if payload is None and method:
        payload = {'method': method}
    elif payload is not None:
        payload = dict(payload)
        if method:
            payload['method'] = method

    return Envelope(
        type=type or MessageType.COMMAND,
        method=method or None,
        package_name=package_name or LAN_PACKAGE,
        payload=json.dumps(payload) if payload is not None else None,
        id=id,
    )


def decode(raw_text) -> Envelope:
    """Parse inbound text into an envelope. Unknown methods are accepted."""
    if isinstance(raw_text, (bytes, bytearray)):
        raw_text = raw_text.decode('utf-8')
    try:
        message = json.loads(raw_text)
    except ValueError as e:
        raise MessageDecodeError(f"Message is not valid JSON: {raw_text[:200]}") from e

    if not isinstance(message, dict):
        raise MessageDecodeError(f"Message is not a JSON object: {raw_text[:200]}")
    if 'type' not in message:
        raise MessageDecodeError(f"Message has no type: {raw_text[:200]}")

    payload = message.get('payload')
    if payload is not None and not isinstance(payload, str):
        # Some relays send the payload already decoded
        payload = json.dumps(payload)

    return Envelope(
        type=message['type'],
        method=message.get('method'),
        package_name=message.get('packageName'),
        payload=payload,
        id=message.get('id'),
    )


class MessageBuilder:
    """Builds the outbound messages for one protocol dialect"""

    def __init__(self, package_name: str = LAN_PACKAGE):
        self.package_name = package_name

    def build(self, method: Optional[str], type: Optional[str] = None,
              payload: Optional[Dict[str, Any]] = None,
              package_name: Optional[str] = None, id: Optional[str] = None) -> Envelope:
        return encode(method, type, payload, package_name or self.package_name, id)

    def build_ping(self) -> Envelope:
        return self.build(None, MessageType.PING)

    def build_pong(self, id: Optional[str] = None) -> Envelope:
        return self.build(None, MessageType.PONG, id=id)

    def build_discovery_request(self) -> Envelope:
        return self.build(LanMethod.DISCOVERY_REQUEST)

    def build_shutdown(self) -> Envelope:
        return self.build(LanMethod.SHUTDOWN)

    def build_tx_start(self, pay_intent: Dict[str, Any]) -> Envelope:
        return self.build(LanMethod.TX_START, payload={'payIntent': pay_intent})

    def build_signature_verified(self, payment: Dict[str, Any], verified: bool = True) -> Envelope:
        payload = {
            'verified': verified,
            'payment': json.dumps(payment),
        }
        return self.build(LanMethod.SIGNATURE_VERIFIED, payload=payload)

    def build_void_payment(self, payment: Dict[str, Any], reason: str) -> Envelope:
        payload = {
            'payment': json.dumps(payment),
            'voidReason': reason,
        }
        return self.build(LanMethod.VOID_PAYMENT, payload=payload)

    def build_refund_request(self, order_id: str, payment_id: str,
                             amount: Optional[int] = None) -> Envelope:
        payload = {
            'orderId': order_id,
            'paymentId': payment_id,
            'fullRefund': amount is None,
        }
        if amount is not None:
            payload['amount'] = amount
        return self.build(LanMethod.REFUND_REQUEST, payload=payload)

    def build_print_text(self, lines: List[str]) -> Envelope:
        return self.build(LanMethod.PRINT_TEXT, payload={'textLines': list(lines)})

    def build_print_image(self, png_base64: str) -> Envelope:
        return self.build(LanMethod.PRINT_IMAGE, payload={'png': png_base64})

    def build_terminal_message(self, text: str) -> Envelope:
        return self.build(LanMethod.TERMINAL_MESSAGE, payload={'text': text})

    def build_show_welcome_screen(self) -> Envelope:
        return self.build(LanMethod.SHOW_WELCOME_SCREEN)

    def build_show_thank_you_screen(self) -> Envelope:
        return self.build(LanMethod.SHOW_THANK_YOU_SCREEN)

    def build_show_receipt_screen(self) -> Envelope:
        return self.build(LanMethod.SHOW_RECEIPT_SCREEN)

    def build_show_order_screen(self, order: Dict[str, Any]) -> Envelope:
        return self.build(LanMethod.SHOW_ORDER_SCREEN, payload={'order': json.dumps(order)})

    def build_show_payment_receipt_options(self, order_id: str, payment_id: str) -> Envelope:
        payload = {'orderId': order_id, 'paymentId': payment_id}
        return self.build(LanMethod.SHOW_PAYMENT_RECEIPT_OPTIONS, payload=payload)

    def build_open_cash_drawer(self, reason: str) -> Envelope:
        return self.build(LanMethod.OPEN_CASH_DRAWER, payload={'reason': reason})

    def build_key_press(self, key: str) -> Envelope:
        return self.build(LanMethod.KEY_PRESS, payload={'keyPress': key})

    def build_finish_cancel(self) -> Envelope:
        return self.build(LanMethod.FINISH_CANCEL)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)

    builder = MessageBuilder()
    envelope = builder.build_tx_start({'amount': 1000, 'tipAmount': 0})
    text = envelope.to_json()
    print(f"Encoded: {text}")
    print(f"Decoded payload: {decode(text).payload_object()}")
