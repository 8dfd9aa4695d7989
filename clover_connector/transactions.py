# Transaction Lifecycle - one commerce operation as a short-lived state machine
# Registers its listeners, sends the request, resolves exactly once on the first terminal event

import dataclasses
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import events
from .connection import ConnectionManager
from .errors import CloverError, ErrorCode
from .events import Listener
from .ids import MAX_EXTERNAL_ID_LENGTH, new_id
from .messages import PAY_ACTION, CardEntryMethods, Envelope, LanMethod

logger = logging.getLogger(__name__)


class TransactionType:
    PAYMENT = 'PAYMENT'
    CREDIT = 'CREDIT'


class Outcome:
    SUCCESS = 'SUCCESS'
    CANCEL = 'CANCEL'
    ERROR = 'ERROR'


class Completion:
    """Error-first callback that can only be resolved once"""

    def __init__(self, callback: Optional[Callable[[Optional[CloverError], Any], None]] = None):
        self.callback = callback
        self.resolved = False
        self.error: Optional[CloverError] = None
        self.result: Any = None
        self._lock = threading.Lock()
        self._done = threading.Event()

    def resolve(self, error: Optional[CloverError], result: Any = None) -> bool:
        with self._lock:
            if self.resolved:
                logger.debug("Ignoring second resolution of a completed operation")
                return False
            self.resolved = True
            self.error = error
            self.result = result
        self._done.set()
        if self.callback:
            self.callback(error, result)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until resolved; returns False on timeout"""
        return self._done.wait(timeout)


@dataclass(frozen=True)
class Lifecycle:
    """Which inbound methods end an operation and how"""
    name: str
    success_method: Optional[str]
    cancel_method: Optional[str] = LanMethod.FINISH_CANCEL
    handles_signature: bool = False
    show_welcome: bool = True


SALE = Lifecycle('payment', LanMethod.FINISH_OK, handles_signature=True)
REFUND = Lifecycle('credit', LanMethod.FINISH_OK, handles_signature=True)
REFUND_PAYMENT = Lifecycle('refund', LanMethod.REFUND_RESPONSE, cancel_method=None, show_welcome=False)
RECEIPT_OPTIONS = Lifecycle('receipt', LanMethod.FINISH_OK)
ACKNOWLEDGED = Lifecycle('ack', LanMethod.ACK, cancel_method=None, show_welcome=False)


class TransactionState:
    BUILT = 'BUILT'
    SENT = 'SENT'
    AWAITING_SIGNATURE = 'AWAITING_SIGNATURE'
    RESOLVED = 'RESOLVED'


@dataclass
class PendingTransaction:
    lifecycle: Lifecycle
    request: Dict[str, Any]
    completion: Completion
    external_id: Optional[str] = None
    auto_verify_signature: bool = True
    listeners: List[Listener] = field(default_factory=list)
    signature: Any = None
    state: str = TransactionState.BUILT

    @property
    def resolved(self) -> bool:
        return self.state == TransactionState.RESOLVED


def _maybe_json(value):
    # Nested objects arrive as JSON strings in most dialects
    if isinstance(value, str):
        return json.loads(value)
    return value


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_request(request: Dict[str, Any]) -> Optional[CloverError]:
    """Check a sale/refund request; returns the error instead of raising it"""
    if not isinstance(request, dict):
        return CloverError(ErrorCode.INVALID_DATA, "Transaction request must be a dict")

    amount = request.get('amount')
    if amount is None or not _is_int(amount) or amount < 0:
        return CloverError(ErrorCode.INVALID_DATA,
                           "Request must include 'amount', an integer that is not negative")

    tip_amount = request.get('tipAmount')
    if tip_amount is not None and not _is_int(tip_amount):
        return CloverError(ErrorCode.INVALID_DATA, "If present, 'tipAmount' must be an integer")

    external_id = request.get('externalPaymentId')
    if external_id is not None and len(str(external_id)) > MAX_EXTERNAL_ID_LENGTH:
        return CloverError(ErrorCode.INVALID_DATA,
                           f"'externalPaymentId' is limited to {MAX_EXTERNAL_ID_LENGTH} characters")
    return None


def build_pay_intent(request: Dict[str, Any], transaction_type: str,
                     remote_print: bool = False,
                     disable_restart_transaction_when_failed: bool = False) -> Dict[str, Any]:
    """Fresh TX_START pay intent for a validated request"""
    amount = request['amount']
    if transaction_type == TransactionType.CREDIT:
        amount = -abs(amount)

    pay_intent = {
        'action': PAY_ACTION,
        'transactionType': transaction_type,
        'amount': amount,
        'tipAmount': request.get('tipAmount', 0),
        'taxAmount': 0,
        'cardEntryMethods': request.get('cardEntryMethods', CardEntryMethods.ALL),
        'externalPaymentId': request.get('externalPaymentId') or new_id(),
        'remotePrint': remote_print,
        'disableRestartTransactionWhenFailed': disable_restart_transaction_when_failed,
    }
    for key in ('employeeId', 'orderId'):
        if request.get(key) is not None:
            pay_intent[key] = request[key]
    return pay_intent


class TransactionController:
    """Runs transactions and fire-and-acknowledge requests over a connection"""

    def __init__(self, connection: ConnectionManager):
        self.connection = connection
        self.active: List[PendingTransaction] = []
        connection.on(events.DISCOVERY_TIMEOUT, self.abort_all)
        connection.on(events.CONNECTION_CLOSED, self._on_closed)

    def start(self, lifecycle: Lifecycle, envelope: Envelope, request: Dict[str, Any],
              completion: Completion, external_id: Optional[str] = None,
              auto_verify_signature: bool = True) -> PendingTransaction:
        pending = PendingTransaction(
            lifecycle=lifecycle,
            request=request,
            completion=completion,
            external_id=external_id,
            auto_verify_signature=auto_verify_signature,
        )

        on = self.connection.on
        if lifecycle.success_method:
            pending.listeners.append(on(lifecycle.success_method,
                                        lambda message: self._on_success(pending, message)))
        if lifecycle.cancel_method:
            pending.listeners.append(on(lifecycle.cancel_method,
                                        lambda message: self._on_cancel(pending, message)))
        if lifecycle.handles_signature:
            pending.listeners.append(on(LanMethod.VERIFY_SIGNATURE,
                                        lambda message: self._on_verify_signature(pending, message)))
        pending.listeners.append(on(events.DEVICE_ERROR, lambda error: self._on_error(pending, error)))
        pending.listeners.append(on(events.CONNECTION_ERROR, lambda error: self._on_error(pending, error)))
        self.active.append(pending)

        try:
            self.connection.send(envelope)
        except CloverError as e:
            self._resolve(pending, CloverError(ErrorCode.DEVICE_ERROR,
                                               f"Failure attempting to send {envelope.method}", e),
                          self._result(pending, Outcome.ERROR))
            return pending

        if not pending.resolved:
            pending.state = TransactionState.SENT
        return pending

    def send_with_ack(self, envelope: Envelope, completion: Optional[Completion],
                      request: Optional[Dict[str, Any]] = None) -> Optional[PendingTransaction]:
        """Attach a correlation id and resolve when the matching ACK arrives"""
        if completion is None:
            self.connection.send(envelope)
            return None

        ack_id = new_id()
        envelope = dataclasses.replace(envelope, id=ack_id)
        request = dict(request or {}, id=ack_id)
        return self.start(ACKNOWLEDGED, envelope, request, completion, external_id=ack_id)

    def abort_all(self, error: CloverError) -> int:
        """Resolve every pending operation with error; returns how many were pending"""
        pending_list = list(self.active)
        for pending in pending_list:
            self._resolve(pending, error, self._result(pending, Outcome.ERROR))
        return len(pending_list)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def _on_success(self, pending: PendingTransaction, envelope: Envelope):
        lifecycle = pending.lifecycle
        if lifecycle is ACKNOWLEDGED:
            self._on_ack(pending, envelope)
            return

        try:
            payload = envelope.payload_object()
            data = _maybe_json(payload.get(lifecycle.name))
        except (ValueError, TypeError) as e:
            self._resolve(pending,
                          CloverError(ErrorCode.DEVICE_ERROR,
                                      f"Could not read {envelope.method} from device", e),
                          self._result(pending, Outcome.ERROR))
            return

        if not self._belongs_to(pending, payload, data):
            logger.debug(f"Ignoring {envelope.method} for another operation")
            return

        code = payload.get('code')
        if not code and isinstance(data, dict):
            code = data.get('result')
        result = self._result(pending, code or Outcome.SUCCESS)
        result[lifecycle.name] = data
        self._resolve(pending, None, result)
        if lifecycle.show_welcome:
            self._show_welcome_screen()

    def _on_ack(self, pending: PendingTransaction, envelope: Envelope):
        try:
            source_id = envelope.payload_object().get('sourceMessageId')
        except ValueError:
            source_id = None
        if pending.external_id not in (source_id, envelope.id):
            return
        self._resolve(pending, None, self._result(pending, Outcome.SUCCESS))

    def _on_cancel(self, pending: PendingTransaction, envelope: Envelope):
        # A bare FINISH_CANCEL names no operation and cancels everything waiting on it
        try:
            payload = envelope.payload_object()
            data = _maybe_json(payload.get(pending.lifecycle.name) or payload.get('payment'))
        except (ValueError, TypeError):
            payload, data = {}, None
        if not self._belongs_to(pending, payload, data):
            logger.debug(f"Ignoring {envelope.method} for another operation")
            return
        self._resolve(pending, CloverError(ErrorCode.CANCELED, "Operation canceled on the device"),
                      self._result(pending, Outcome.CANCEL))
        if pending.lifecycle.show_welcome:
            self._show_welcome_screen()

    def _on_verify_signature(self, pending: PendingTransaction, envelope: Envelope):
        if pending.resolved:
            return
        pending.state = TransactionState.AWAITING_SIGNATURE
        try:
            payload = envelope.payload_object()
            payment = _maybe_json(payload['payment'])
            pending.signature = _maybe_json(payload.get('signature'))
            if pending.auto_verify_signature:
                self.connection.send(self.connection.builder.build_signature_verified(payment))
        except (ValueError, KeyError, TypeError, CloverError) as e:
            logger.error(f"Signature verification failed: {e}")
            self._resolve(pending,
                          CloverError(ErrorCode.DEVICE_ERROR,
                                      "Failure attempting to send signature verification", e),
                          self._result(pending, Outcome.ERROR))

    def _on_error(self, pending: PendingTransaction, error: CloverError):
        self._resolve(pending, error, self._result(pending, Outcome.ERROR))

    def _on_closed(self, code: int, reason: str):
        # Remote drops are retried by the connection; only a local close ends the operations
        if self.connection.closed_locally and self.active:
            self.abort_all(CloverError(ErrorCode.DEVICE_ERROR, f"Connection closed (code {code})"))

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _belongs_to(pending: PendingTransaction, payload: Dict[str, Any], data: Any) -> bool:
        if pending.external_id and isinstance(data, dict):
            external_id = data.get('externalPaymentId')
            if external_id and external_id != pending.external_id:
                return False
        payment_id = pending.request.get('paymentId')
        if payment_id and payload.get('paymentId') not in (None, payment_id):
            return False
        return True

    @staticmethod
    def _result(pending: PendingTransaction, code: str) -> Dict[str, Any]:
        result = {'code': code, 'request': pending.request}
        if pending.lifecycle.handles_signature:
            result['signature'] = pending.signature
        return result

    def _resolve(self, pending: PendingTransaction, error: Optional[CloverError], result: Dict[str, Any]) -> bool:
        if pending.resolved:
            return False
        pending.state = TransactionState.RESOLVED
        self.connection.remove_listeners(pending.listeners)
        if pending in self.active:
            self.active.remove(pending)
        if error is not None:
            logger.info(f"{pending.lifecycle.name} finished with {error}")
        else:
            logger.info(f"{pending.lifecycle.name} finished with code {result.get('code')}")
        return pending.completion.resolve(error, result)

    def _show_welcome_screen(self):
        try:
            self.connection.send(self.connection.builder.build_show_welcome_screen())
        except CloverError as e:
            logger.warning(f"Could not return device to the welcome screen: {e}")
