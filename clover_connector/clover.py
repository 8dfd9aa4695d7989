# Clover - application-facing API of the connector
# Validates caller input, builds requests and hands them to the transaction controller

import base64
import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from . import events
from .config import DEFAULT_CONFIGURATION_NAME, CloverConfig, ConfigStore, ConnectionSettings
from .connection import ConnectionManager
from .device_resolver import DeviceResolver
from .discovery import DiscoveryController
from .errors import CloverError, ErrorCode
from .messages import Envelope, KeyPress, MessageBuilder
from .scheduler import ThreadScheduler
from .transactions import (REFUND, REFUND_PAYMENT, RECEIPT_OPTIONS, SALE, Completion,
                           TransactionController, TransactionType, build_pay_intent,
                           validate_request)
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)

Callback = Callable[[Optional[CloverError], Any], None]

DEFAULT_VOID_REASON = 'USER_CANCEL'


def encode_image(image: Union[bytes, str, Path]) -> str:
    """Base64 text of PNG bytes, or of the PNG file at the given path"""
    if isinstance(image, (bytes, bytearray)):
        data = bytes(image)
    else:
        data = Path(image).read_bytes()
    return base64.b64encode(data).decode('ascii')


class Clover:
    """
    Connection to one payment terminal.

    All callbacks are error-first: callback(error, result). They run on the
    connector's scheduler thread.
    """

    def __init__(self, configuration: Union[CloverConfig, Dict[str, Any], None] = None,
                 settings: Optional[ConnectionSettings] = None,
                 scheduler=None, transport=None, resolver=None,
                 store: Optional[ConfigStore] = None,
                 configuration_name: str = DEFAULT_CONFIGURATION_NAME,
                 call_timeout: float = 30.0):
        if isinstance(configuration, dict):
            configuration = CloverConfig.from_dict(configuration)
        if configuration is None and store is not None:
            configuration = store.load(configuration_name)
            if configuration:
                logger.info(f"Loaded persisted configuration {configuration_name}")
        self.configuration = configuration or CloverConfig()
        self.configuration_name = configuration_name
        self.store = store
        self.settings = settings or ConnectionSettings()
        self.call_timeout = call_timeout

        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or ThreadScheduler()
        self.transport = transport or WebSocketTransport(
            preflight=self.settings.preflight,
            preflight_timeout=self.settings.preflight_timeout,
            open_timeout=self.settings.open_timeout,
            verify=self.settings.verify,
        )
        self.resolver = resolver or DeviceResolver()

        self.connection = ConnectionManager(
            self.transport,
            self.scheduler,
            settings=self.settings,
            builder=MessageBuilder(),
            friendly_id=self.configuration.friendly_id,
            force_connect=self.configuration.force_connect,
        )
        self.discovery = DiscoveryController(self.connection)
        self.transactions = TransactionController(self.connection)

    @property
    def builder(self) -> MessageBuilder:
        return self.connection.builder

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def init_device_connection(self, callback: Optional[Callback] = None) -> Completion:
        """Resolve the device address, connect, and call back once discovery completes"""
        completion = Completion(callback)
        try:
            url, package_name = self.resolver.resolve(self.configuration)
        except CloverError as e:
            logger.error(f"Could not resolve device: {e}")
            if callback is None:
                raise
            completion.resolve(e, None)
            return completion

        self.connection.builder = MessageBuilder(package_name)
        if self.store is not None:
            self.store.save(self.configuration, self.configuration_name)

        self.notify_when_device_is_ready(completion.resolve)
        self._call(self.connection.open, url)
        return completion

    def is_open(self) -> bool:
        return self.discovery.is_open()

    def notify_when_device_is_ready(self, callback: Callback):
        """callback(None, device_info) when ready, or callback(error, None) if the handshake fails"""
        self._call(self._notify_when_ready, Completion(callback))

    def _notify_when_ready(self, completion: Completion):
        if self.is_open():
            completion.resolve(None, self.discovery.device_info)
            return

        handles = []

        def finish(error, result):
            self.connection.remove_listeners(handles)
            completion.resolve(error, result)

        handles.append(self.connection.on(events.DEVICE_READY,
                                          lambda envelope: finish(None, self.discovery.device_info)))
        handles.append(self.connection.on(events.DISCOVERY_TIMEOUT, lambda error: finish(error, None)))
        handles.append(self.connection.on(events.CONNECTION_ERROR, lambda error: finish(error, None)))
        handles.append(self.connection.on(events.DEVICE_ERROR, lambda error: finish(error, None)))

    def close(self):
        """Fail any pending operation, then close the connection"""
        self._call(self._close)
        if self._owns_scheduler:
            self.scheduler.stop()

    def _close(self):
        aborted = self.transactions.abort_all(CloverError(ErrorCode.DEVICE_ERROR, "Connection closed"))
        if aborted:
            logger.info(f"Closed with {aborted} operations pending")
        self.connection.close()

    def on(self, method: str, callback: Callable):
        return self.connection.on(method, callback)

    def remove_listener(self, method: str, callback) -> bool:
        return self.connection.remove_listener(method, callback)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def sale(self, request: Dict[str, Any], callback: Optional[Callback] = None) -> Optional[str]:
        """Start a payment; returns the external payment id"""
        return self._start_transaction(request, callback, TransactionType.PAYMENT, SALE)

    def refund(self, request: Dict[str, Any], callback: Optional[Callback] = None) -> Optional[str]:
        """Start a manual refund (credit); returns the external payment id"""
        return self._start_transaction(request, callback, TransactionType.CREDIT, REFUND)

    def sale_with_cashback(self, request: Optional[Dict[str, Any]] = None,
                           callback: Optional[Callback] = None):
        return self._reject(CloverError(ErrorCode.NOT_IMPLEMENTED, "Sale with cashback is not implemented"),
                            callback)

    def _start_transaction(self, request, callback, transaction_type, lifecycle) -> Optional[str]:
        error = validate_request(request)
        if error:
            return self._reject(error, callback)

        pay_intent = build_pay_intent(
            request,
            transaction_type,
            remote_print=self.configuration.remote_print,
            disable_restart_transaction_when_failed=self.configuration.disable_restart_transaction_when_failed,
        )
        auto_verify = request.get('autoVerifySignature', self.configuration.auto_verify_signature)
        external_id = pay_intent['externalPaymentId']
        logger.info(f"Starting {transaction_type} for {pay_intent['amount']} ({external_id})")

        self._call(self.transactions.start, lifecycle, self.builder.build_tx_start(pay_intent),
                   pay_intent, Completion(callback), external_id, auto_verify)
        return external_id

    def refund_payment(self, request: Dict[str, Any], callback: Optional[Callback] = None):
        """Refund a previous payment, in full unless an amount is given"""
        if not isinstance(request, dict) or not request.get('orderId') or not request.get('paymentId'):
            return self._reject(CloverError(ErrorCode.INVALID_DATA,
                                            "Refund requires 'orderId' and 'paymentId'"), callback)
        amount = request.get('amount')
        if amount is not None and (not isinstance(amount, int) or isinstance(amount, bool) or amount < 0):
            return self._reject(CloverError(ErrorCode.INVALID_DATA,
                                            "If present, 'amount' must be an integer that is not negative"),
                                callback)

        envelope = self.builder.build_refund_request(request['orderId'], request['paymentId'], amount)
        self._call(self.transactions.start, REFUND_PAYMENT, envelope, dict(request), Completion(callback))

    def void_transaction(self, payment: Dict[str, Any], reason: str = DEFAULT_VOID_REASON,
                         callback: Optional[Callback] = None):
        if not isinstance(payment, dict) or not payment.get('id'):
            return self._reject(CloverError(ErrorCode.INVALID_DATA, "Void requires a payment with an 'id'"),
                                callback)
        envelope = self.builder.build_void_payment(payment, reason)
        self._send_with_ack(envelope, callback, {'payment': payment, 'voidReason': reason})

    def accept_signature(self, payment: Dict[str, Any]):
        self._call(self.connection.send, self.builder.build_signature_verified(payment, True))

    def reject_signature(self, payment: Dict[str, Any]):
        self._call(self.connection.send, self.builder.build_signature_verified(payment, False))

    def send_cancel(self, callback: Optional[Callback] = None):
        """Press ESC on the device, backing out of the current screen"""
        self._send_with_ack(self.builder.build_key_press(KeyPress.ESC), callback, {'keyPress': KeyPress.ESC})

    # ------------------------------------------------------------------
    # Printing and display
    # ------------------------------------------------------------------

    def print(self, lines: Union[str, List[str]], callback: Optional[Callback] = None):
        if isinstance(lines, str):
            lines = [lines]
        if not lines or not all(isinstance(line, str) for line in lines):
            return self._reject(CloverError(ErrorCode.INVALID_DATA, "Print requires one or more text lines"),
                                callback)
        self._send_with_ack(self.builder.build_print_text(lines), callback, {'textLines': list(lines)})

    def print_image(self, image: Union[bytes, str, Path], callback: Optional[Callback] = None):
        try:
            png = encode_image(image)
        except OSError as e:
            return self._reject(CloverError(ErrorCode.INVALID_DATA, f"Could not read image: {e}", e), callback)
        self._send_with_ack(self.builder.build_print_image(png), callback, {'png': png})

    def print_receipt(self, payment: Dict[str, Any], callback: Optional[Callback] = None):
        """Show the receipt options for a payment and wait for the customer's choice"""
        payment = payment or {}
        order_id = payment.get('orderId') or (payment.get('order') or {}).get('id')
        payment_id = payment.get('paymentId') or payment.get('id')
        if not order_id or not payment_id:
            return self._reject(CloverError(ErrorCode.INVALID_DATA,
                                            "Receipt options require an order id and a payment id"), callback)
        envelope = self.builder.build_show_payment_receipt_options(order_id, payment_id)
        request = {'orderId': order_id, 'paymentId': payment_id}
        self._call(self.transactions.start, RECEIPT_OPTIONS, envelope, request, Completion(callback))

    def open_cash_drawer(self, reason: str = 'Cash drawer opened', callback: Optional[Callback] = None):
        self._send_with_ack(self.builder.build_open_cash_drawer(reason), callback, {'reason': reason})

    def show_welcome_screen(self):
        self._call(self.connection.send, self.builder.build_show_welcome_screen())

    def show_thank_you_screen(self):
        self._call(self.connection.send, self.builder.build_show_thank_you_screen())

    def show_receipt_screen(self):
        self._call(self.connection.send, self.builder.build_show_receipt_screen())

    def show_order_screen(self, order: Dict[str, Any]):
        self._call(self.connection.send, self.builder.build_show_order_screen(order))

    def display_message(self, text: str):
        self._call(self.connection.send, self.builder.build_terminal_message(text))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _send_with_ack(self, envelope: Envelope, callback: Optional[Callback], request: Dict[str, Any]):
        completion = Completion(callback) if callback else None
        self._call(self.transactions.send_with_ack, envelope, completion, request)

    @staticmethod
    def _reject(error: CloverError, callback: Optional[Callback]):
        logger.warning(f"Rejected request: {error}")
        if callback is None:
            raise error
        callback(error, None)
        return None

    def _call(self, fn: Callable, *args):
        """Run fn on the scheduler thread and return its result to the caller"""
        if self.scheduler.in_scheduler_thread():
            return fn(*args)

        self.scheduler.start()
        future = Future()

        def run():
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        self.scheduler.call_soon(run)
        return future.result(timeout=self.call_timeout)
